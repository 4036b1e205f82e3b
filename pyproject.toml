[build-system]
requires = ["hatchling>=1.18"]
build-backend = "hatchling.build"

[project]
name = "gridbench"
version = "0.1.0"
description = "Benchmark configuration model, workload programs, Valgrind output filters and a suite driver"
requires-python = ">=3.10"
keywords = [
    "benchmark",
    "valgrind",
    "callgrind",
    "profiling",
    "regression",
    "testing",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Testing",
    "Topic :: System :: Benchmark",
]
dependencies = [
    "pyyaml>=6.0",
    "jinja2>=3.1",
    "jsonschema>=4.17",
    "termcolor>=2.3",
]

[project.optional-dependencies]
test = [
    "pytest>=7.4",
]

[project.scripts]
gridbench-bench = "gridbench.harness:main"
gridbench-valgrind-wrapper = "gridbench.valgrind_filter:main"
gridbench-cat = "gridbench.programs:cat_main"
gridbench-echo = "gridbench.programs:echo_main"
gridbench-exit = "gridbench.programs:exit_main"
gridbench-printargs = "gridbench.programs:printargs_main"
gridbench-printenv = "gridbench.programs:printenv_main"
gridbench-sort = "gridbench.programs:sort_main"
gridbench-subprocess = "gridbench.programs:subprocess_main"

[tool.hatch.build.targets.wheel]
packages = ["gridbench"]

[tool.hatch.build.targets.sdist]
include = [
    "gridbench",
    "tests",
    "pyproject.toml",
    "README.md",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
