"""Benchmark configuration model, workload programs, Valgrind output filters and a suite driver."""

__version__ = "0.1.0"

__all__ = ["__version__"]