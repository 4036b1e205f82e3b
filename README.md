# gridbench

Tools for describing, running and checking Valgrind-based benchmarks.

- **`gridbench.api`** is the benchmark configuration model. It holds
  `LibraryBenchmarkConfig`, `BinaryBenchmarkConfig`, `Tool`/`Tools`, `RawArgs`,
  `FlamegraphConfig`, `RegressionConfig`, `ExitWith` and the `EventKind`
  enumeration of Callgrind events.
- **`gridbench.workloads`** has small workloads to benchmark: `bubble_sort`,
  `fibonacci`, `setup_worst_case_array`, `setup_best_case_array`,
  `allocate_array_reverse`, `bubble_sort_allocate`, `print_env` and
  `run_subprocess`.
- **`gridbench.programs`** has the entry points of tiny command-line programs
  used as benchmark targets.
- **`gridbench.valgrind_filter`** runs a program under Valgrind and normalises
  the tool's log so that it can be compared with fixtures.
- **`gridbench.harness`** drives benchmark suites described by `*.conf.yml`
  files. It checks captured output and produced files against expectations.

## Installation

```console
pip install gridbench
```

To run the test suite:

```console
pip install "gridbench[test]"
pytest
```

## Configuration model

`update_from_all` returns a copy of a configuration, updated in turn by every
configuration that is not `None`. The update works as follows:

- Scalar settings from later levels override earlier ones.
- Callgrind arguments and environment variables are appended.
- Tools are replaced by kind. A level that sets `tools_override` replaces them
  all.

```python
from gridbench.api import (
    EventKind, LibraryBenchmarkConfig, RawArgs, RegressionConfig, Tool, Tools, ValgrindTool,
)

main_level = LibraryBenchmarkConfig(
    raw_callgrind_args=RawArgs.from_iterable(["cache-sim=yes"]),
    regression_config=RegressionConfig(limits=[(EventKind.Ir, 5.0)]),
    tools=Tools([Tool(kind=ValgrindTool.DHAT)]),
)
bench_level = LibraryBenchmarkConfig(env_clear=True)

effective = LibraryBenchmarkConfig().update_from_all([main_level, None, bench_level])
print(effective.raw_callgrind_args.args)  # ['--cache-sim=yes']
print(effective.env_clear)                # True
print(str(EventKind.EstimatedCycles))     # Estimated Cycles
```

Event lookups:

- `EventKind.from_name("Ir")` accepts Callgrind's exact event names. It raises
  `ValueError` for unknown names.
- `EventKind.from_str_ignore_case("ir")` matches member names in any case. It
  returns `None` for unknown names.
- `EventKind.is_derived()` is true for `L1hits`, `LLhits`, `RamHits`, `TotalRW`
  and `EstimatedCycles`.

`RawArgs.extend_ignore_flag` behaves as follows:

- It drops empty arguments.
- It prefixes `--` to arguments that do not start with `-`.

`resolve_envs()` returns the configured environment pairs. A pair with no
value takes its value from the current environment, and is left out when the
variable is not set.

## Filtering Valgrind output

```python
from gridbench.valgrind_filter import memcheck_filter

normalised = memcheck_filter(raw_stderr_bytes)
```

`callgrind_filter(path, data)`, `memcheck_filter(data)` and
`cachegrind_filter(data)` all work the same way:

1. They drop everything up to and including the line that holds
   `___START___`.
2. They strip the `==PID==` prefix from each remaining line. A line without
   the prefix raises `ValueError`.
3. They mask addresses, counts, line numbers and the binary path with
   `<__FILTER__>` or `<__NUMBER__>`, each according to its tool.
4. They collapse each backtrace into a single `<__BACKTRACE__>` line.

The wrapper command runs a binary under a Valgrind tool:

```console
gridbench-valgrind-wrapper 1 --tool=memcheck "--valgrind-args=--verbose" --bin=my-program
```

The arguments are handled as follows:

- The first argument is the expected exit code.
- `--bin` is resolved relative to the directory of the wrapper command.
- `--bin-args=...` may follow.

When the exit code matches, the wrapper writes the filtered stderr to its own
stderr. Helgrind output is written unchanged. Otherwise the wrapper prints the
command, stdout and stderr. In both cases it exits with the program's code.

The wrapper finds the Valgrind binary in this order:

1. `$GRIDBENCH_VALGRIND_PATH/valgrind`.
2. `/target/valgrind/<target>/bin/valgrind`. `<target>` is taken from
   `GRIDBENCH_CROSS_TARGET`, or is derived from the current platform.

## Running benchmark suites

```console
gridbench-bench [BENCH_NAME ...]
```

This command uses `cargo` (or `$CARGO`) to work and stops at the first
failure:

1. It asks `cargo metadata` for the workspace layout.
2. It collects `benches/*.conf.yml` from the `benchmark-tests` package
   directory, or from `$CARGO_MANIFEST_DIR`. It selects the named suites, or
   all of them when no names are given.
3. It builds the `gridbench-runner` package with `cargo build --release`.
4. It runs each suite's runs with `cargo bench`. A suite with a `template`
   first renders its bench source with Jinja2.

Each run is checked as follows:

- The captured stdout is checked after `filter_stdout` has masked event
  numbers. The captured stderr is compared as it is.
- The files left under `<target>/gridbench/benchmark-tests/<bench>` must match
  the expected runs.
- Any `summary.json` found is validated against
  `gridbench-runner/schemas/summary.v2.schema.json`.

The exit status is 1 on failure and 0 on success.

The library API is also available:

- `load_bench_config(path)` and `load_expected_runs(path)` read the YAML files
  and raise `ValueError` on malformed input.
- `ExpectedRun.verify` raises `VerificationError` when a directory does not
  hold exactly the expected files.

## Workload programs

These commands are installed for use as benchmark targets:

```console
gridbench-cat FILE                 # print a file's bytes
gridbench-echo ARG ... FIXTURE     # print ARGs, checked against FIXTURE's lines
gridbench-exit CODE                # exit with CODE
gridbench-printargs ARG ...        # print program name and arguments
gridbench-printenv KEY[=VALUE] ... # print (and check) environment variables
gridbench-sort [START] [SUM]       # bubble sort START items, print sum of first SUM (4000, 2000)
gridbench-subprocess EXE [ARG ...] # run EXE with ARGs
```

## What is not included

- gridbench does not profile anything itself. It has no code that turns
  configurations into Callgrind runs, writes summaries or draws flamegraphs.
- `gridbench-bench` relies on an external cargo workspace that provides those
  bench targets and the `gridbench-runner` package.
- There is no support for Valgrind client requests.