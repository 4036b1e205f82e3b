"""Small workloads used as benchmark subjects: sorting, recursion, environment and processes."""

from __future__ import annotations

import os
import subprocess
from collections.abc import Iterable, Sequence

__all__ = [
    "allocate_array_reverse",
    "bubble_sort",
    "bubble_sort_allocate",
    "fibonacci",
    "print_env",
    "run_subprocess",
    "setup_best_case_array",
    "setup_worst_case_array",
]


def setup_worst_case_array(start: int) -> list[int]:
    """Return a descending array, the worst case for bubble sort.

    A negative ``start`` yields the values from -1 down to ``start``.
    """
    if start < 0:
        return list(reversed(range(start, 0)))
    return list(reversed(range(start)))


def setup_best_case_array(start: int) -> list[int]:
    """Return an ascending array, the best case for bubble sort."""
    if start < 0:
        return list(range(start, 0))
    return list(range(start))


def allocate_array_reverse(start: int) -> list[int]:
    """Allocate a descending array of ``abs(start)`` elements."""
    return setup_worst_case_array(start)


def bubble_sort(array: Iterable[int]) -> list[int]:
    """Return a new list with the items of ``array`` sorted by bubble sort."""
    items = list(array)
    for end in range(len(items) - 1, 0, -1):
        for j in range(end):
            if items[j + 1] < items[j]:
                items[j], items[j + 1] = items[j + 1], items[j]
    return items


def bubble_sort_allocate(start: int, total: int) -> int:
    """Sort a freshly allocated reversed array and sum its first ``total`` items."""
    return sum(bubble_sort(allocate_array_reverse(start))[:total])


def fibonacci(n: int) -> int:
    """Naive recursive Fibonacci with ``fibonacci(0) == fibonacci(1) == 1``."""
    if n < 0:
        raise ValueError(f"n must not be negative: {n}")
    if n <= 1:
        return 1
    return fibonacci(n - 1) + fibonacci(n - 2)


def print_env(args: Iterable[str]) -> None:
    """Print ``KEY=VALUE`` for each argument.

    An argument ``KEY=VALUE`` requires the variable to hold exactly that value;
    a bare ``KEY`` requires the variable to be present.
    """
    for arg in args:
        key, sep, expected = arg.partition("=")
        if sep:
            if key not in os.environ:
                raise KeyError(f"Environment variable must be present: {key}")
            actual = os.environ[key]
            if actual != expected:
                raise ValueError(
                    f"Environment variable value differs: {key}={actual!r}, "
                    f"expected {expected!r}"
                )
        else:
            if arg not in os.environ:
                raise KeyError(f"Pass-through environment variable must be present: {arg}")
            actual = os.environ[arg]
        print(f"{key}={actual}")


def run_subprocess(exe: str | os.PathLike[str], args: Sequence[str]) -> subprocess.CompletedProcess:
    """Run ``exe`` with ``args`` and return its captured output."""
    return subprocess.run([os.fspath(exe), *args], capture_output=True, check=False)