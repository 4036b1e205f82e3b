"""Run benchmark configurations and check their output and result files."""

from __future__ import annotations

import difflib
import json
import os
import re
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Sequence

import jinja2
import yaml
from jsonschema.validators import validator_for
from termcolor import colored

__all__ = [
    "PACKAGE",
    "TEMPLATE_BENCH_NAME",
    "Benchmark",
    "BenchConfig",
    "BenchmarkOutput",
    "BenchmarkRunner",
    "ExpectedConfig",
    "ExpectedGlob",
    "ExpectedRun",
    "GroupConfig",
    "Metadata",
    "RunConfig",
    "VerificationError",
    "filter_stdout",
    "load_bench_config",
    "load_expected_runs",
    "main",
]

PACKAGE = "benchmark-tests"
RUNNER_PACKAGE = "gridbench-runner"
OUTPUT_DIR_NAME = "gridbench"
TEMPLATE_BENCH_NAME = "test_bench"
CONFIG_SUFFIX = ".conf.yml"
SUMMARY_FILE_NAME = "summary.json"

_NUMBERS_RE = re.compile(
    r"""
    (?P<desc>\s+.+:\s*)(?P<comp1>[0-9]+|N/A)\|(?P<comp2>[0-9]+|N/A)
    (?P<diff>
        (?P<diff_percent>(?P<white1>\s*)(?P<percent>\(.*\)))
        (?P<diff_factor>(?P<white2>\s*)(?P<factor>\[.*\]))?
    )?
    """,
    re.VERBOSE,
)

_UNRELIABLE_EVENTS = ("  RAM Hits", "  Estimated Cycles")
_NO_BASELINE = "(*********)"
_MASKED_DIFF = "(         )"


class VerificationError(AssertionError):
    """A benchmark run did not produce what was expected."""


def _print_info(message: object) -> None:
    print(f"{colored('bench', 'magenta', attrs=['bold'])}: {message}", file=sys.stderr)


def _print_error(message: object) -> None:
    print(
        f"{colored('bench', 'magenta', attrs=['bold'])}: "
        f"{colored('Error', 'red', attrs=['bold'])}: {message}",
        file=sys.stderr,
    )


def _write_bytes(stream, data: bytes) -> None:
    stream.flush()
    buffer = getattr(stream, "buffer", None)
    if buffer is None:
        stream.write(data.decode("utf-8", "replace"))
        stream.flush()
    else:
        buffer.write(data)
        buffer.flush()


def _lines(text: str) -> list[str]:
    if not text:
        return []
    parts = text.split("\n")
    if parts[-1] == "":
        parts.pop()
    return [part[:-1] if part.endswith("\r") else part for part in parts]


def _is_float(text: str) -> bool:
    if not text or text != text.strip() or "_" in text:
        return False
    try:
        float(text)
    except ValueError:
        return False
    return True


def _mask_number(value: str) -> str:
    return " " * len(value) if _is_float(value) else value


def _mask_diff(value: str, opening: str, closing: str) -> str:
    number = value[1:-2]
    if _is_float(number):
        return f"{opening}{number[0]}{' ' * (len(number) - 1)}{closing}"
    return value


def _filter_line(line: str) -> str:
    match = _NUMBERS_RE.search(line)
    if match is None:
        return line
    desc = match["desc"]
    parts = [desc, _mask_number(match["comp1"]), "|", _mask_number(match["comp2"])]
    if desc.startswith(_UNRELIABLE_EVENTS):
        # These events differ too much between systems to compare their changes.
        if match["diff_percent"] is not None:
            percent = match["percent"]
            parts += [match["white1"], percent if percent == _NO_BASELINE else _MASKED_DIFF]
    else:
        if match["diff_percent"] is not None:
            parts += [match["white1"], _mask_diff(match["percent"], "(", "%)")]
        if match["diff_factor"] is not None:
            parts += [match["white2"], _mask_diff(match["factor"], "[", "x]")]
    return "".join(parts)


def filter_stdout(stdout: bytes | str) -> str:
    """Blank out the numbers of event lines so that output compares across systems."""
    text = stdout.decode("utf-8") if isinstance(stdout, bytes) else stdout
    return "".join(f"{_filter_line(line)}\n" for line in _lines(text))


def _mapping(value: Any, what: str) -> dict:
    if not isinstance(value, dict):
        raise ValueError(f"{what}: expected a mapping, found {type(value).__name__}")
    return value


def _required(data: dict, key: str, what: str) -> Any:
    if key not in data:
        raise ValueError(f"{what}: missing field `{key}`")
    return data[key]


def _string(value: Any, what: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{what}: expected a string, found {value!r}")
    return value


def _string_list(value: Any, what: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{what}: expected a sequence, found {value!r}")
    return [_string(item, what) for item in value]


def _optional_path(value: Any, what: str) -> Optional[Path]:
    return None if value is None else Path(_string(value, what))


def _path_list(value: Any, what: str) -> list[Path]:
    return [Path(item) for item in _string_list(value, what)]


@dataclass
class ExpectedGlob:
    pattern: str
    count: int

    @classmethod
    def from_dict(cls, data: Any) -> "ExpectedGlob":
        data = _mapping(data, "glob")
        count = _required(data, "count", "glob")
        if isinstance(count, bool) or not isinstance(count, int) or count < 0:
            raise ValueError(f"glob: `count` must be a non-negative integer, found {count!r}")
        return cls(_string(_required(data, "pattern", "glob"), "glob pattern"), count)


@dataclass
class ExpectedRun:
    """The files a single benchmark is expected to leave in its output directory."""

    group: str
    function: str
    id: Optional[str] = None
    files: list[Path] = field(default_factory=list)
    globs: list[ExpectedGlob] = field(default_factory=list)
    summary: Optional[Any] = None

    @classmethod
    def from_dict(cls, data: Any) -> "ExpectedRun":
        data = _mapping(data, "expected run")
        expected = _mapping(_required(data, "expected", "expected run"), "expected")
        run_id = data.get("id")
        return cls(
            group=_string(_required(data, "group", "expected run"), "group"),
            function=_string(_required(data, "function", "expected run"), "function"),
            id=None if run_id is None else _string(run_id, "id"),
            files=_path_list(expected.get("files"), "files"),
            globs=[ExpectedGlob.from_dict(item) for item in expected.get("globs") or []],
            summary=expected.get("summary"),
        )

    def verify(
        self,
        base_dir: Path,
        validator: Optional[Any],
        template_data: Optional[dict] = None,
    ) -> None:
        """Check the benchmark directory below ``base_dir`` holds exactly the expected files."""
        function = jinja2.Environment().from_string(self.function).render(template_data or {})
        name = f"{function}.{self.id}" if self.id is not None else function
        directory = Path(base_dir) / self.group / name
        _print_info(f"Running assertions in directory '{directory}'")

        if not directory.exists():
            raise VerificationError(f"Expected benchmark directory '{directory}' to exist")

        real_files = set(directory.glob("*"))
        summary: Optional[Path] = None

        for file in (directory / name for name in self.files):
            if file.name == SUMMARY_FILE_NAME:
                summary = file
            if file not in real_files:
                raise VerificationError(f"Expected file '{file}' does not exist")
            real_files.remove(file)

        for expected_glob in self.globs:
            pattern = directory / expected_glob.pattern
            files = list(directory.glob(expected_glob.pattern))
            if len(files) != expected_glob.count:
                raise VerificationError(
                    f"Expected file count for glob '{pattern}' was {expected_glob.count} "
                    f"but found {len(files)} files"
                )
            for file in files:
                if file.name == SUMMARY_FILE_NAME:
                    summary = file
                real_files.discard(file)

        if summary is not None and validator is not None:
            _print_info(f"Validating summary {summary}")
            instance = json.loads(summary.read_text(encoding="utf-8"))
            for error in validator.iter_errors(instance):
                _print_error(f"{summary}: Validation error: {error.message}")

        if real_files:
            listing = "\n".join(f"    {path}" for path in sorted(real_files))
            raise VerificationError(
                f"Expected no other files in directory '{directory}' but found:\n{listing}"
            )


def load_expected_runs(path: str | Path) -> list[ExpectedRun]:
    """Load the ``data`` list of expected runs from a YAML file."""
    path = Path(path)
    with path.open(encoding="utf-8") as handle:
        try:
            data = _mapping(yaml.safe_load(handle), "expected runs")
            runs = _required(data, "data", "expected runs")
            if not isinstance(runs, list):
                raise ValueError("expected runs: `data` must be a sequence")
            return [ExpectedRun.from_dict(item) for item in runs]
        except (ValueError, yaml.YAMLError) as error:
            raise ValueError(f"Failed to deserialize '{path}': {error}") from error


@dataclass
class ExpectedConfig:
    files: Optional[Path] = None
    stdout: Optional[Path] = None
    stderr: Optional[Path] = None

    @classmethod
    def from_dict(cls, data: Any) -> "ExpectedConfig":
        data = _mapping(data, "expected")
        return cls(
            files=_optional_path(data.get("files"), "files"),
            stdout=_optional_path(data.get("stdout"), "stdout"),
            stderr=_optional_path(data.get("stderr"), "stderr"),
        )


@dataclass
class Metadata:
    """Where the workspace, build output and benchmark configurations live."""

    workspace_root: Path
    target_directory: Path
    benches_dir: Path
    benchmarks: list["Benchmark"] = field(default_factory=list)

    @classmethod
    def discover(cls, benches: Sequence[str]) -> "Metadata":
        """Ask cargo for the workspace layout and collect the selected configurations."""
        cargo = os.environ.get("CARGO", "cargo")
        completed = subprocess.run(
            [cargo, "metadata", "--no-deps", "--format-version", "1"],
            capture_output=True,
            check=True,
            text=True,
        )
        data = json.loads(completed.stdout)
        workspace_root = Path(data["workspace_root"])
        target_directory = Path(data["target_directory"])
        package_dir = Path(os.environ.get("CARGO_MANIFEST_DIR") or workspace_root / PACKAGE)
        benches_dir = package_dir / "benches"
        selected = set(benches)
        benchmarks = [
            Benchmark.from_path(path, target_directory)
            for path in sorted(benches_dir.glob(f"*{CONFIG_SUFFIX}"))
            if not selected or path.name[: -len(CONFIG_SUFFIX)] in selected
        ]
        return cls(workspace_root, target_directory, benches_dir, benchmarks)

    def get_file(self, file_name: str | Path) -> Path:
        return self.benches_dir / file_name

    def get_bench_file(self, bench_name: str) -> Path:
        return self.get_file(f"{bench_name}.rs")


def _compare(actual: str, expected: str, label: str) -> None:
    if actual == expected:
        return
    diff = "".join(
        difflib.unified_diff(
            expected.splitlines(keepends=True),
            actual.splitlines(keepends=True),
            fromfile=f"expected {label}",
            tofile=f"actual {label}",
        )
    )
    raise VerificationError(f"Assertion failed: {label} differs\n{diff}")


@dataclass
class BenchmarkOutput:
    """Captured output of one benchmark run."""

    stdout: bytes
    stderr: bytes

    def verify(self, meta: Metadata, expected: ExpectedConfig) -> None:
        """Echo the output and compare it with the expected stdout and stderr files."""
        print("STDERR:", file=sys.stderr)
        _write_bytes(sys.stderr, self.stderr)
        print("STDOUT:")
        _write_bytes(sys.stdout, self.stdout)

        if expected.stderr is not None:
            wanted = meta.get_file(expected.stderr).read_bytes().decode("utf-8", "replace")
            _compare(self.stderr.decode("utf-8", "replace"), wanted, "stderr")

        if expected.stdout is not None:
            wanted = meta.get_file(expected.stdout).read_bytes().decode("utf-8", "replace")
            _compare(filter_stdout(self.stdout), wanted, "stdout")


@dataclass
class RunConfig:
    args: list[str] = field(default_factory=list)
    template_data: dict = field(default_factory=dict)
    expected: Optional[ExpectedConfig] = None

    @classmethod
    def from_dict(cls, data: Any) -> "RunConfig":
        data = _mapping(data, "run")
        expected = data.get("expected")
        return cls(
            args=_string_list(data.get("args"), "args"),
            template_data=dict(_mapping(data.get("template_data") or {}, "template_data")),
            expected=None if expected is None else ExpectedConfig.from_dict(expected),
        )

    @property
    def captures_output(self) -> bool:
        return self.expected is not None and (
            self.expected.stdout is not None or self.expected.stderr is not None
        )

    def verify(
        self,
        meta: Metadata,
        output: Optional[BenchmarkOutput],
        validator: Optional[Any],
        dest_dir: Path,
        template_data: Optional[dict] = None,
    ) -> None:
        """Check the run's output and the files it produced below ``dest_dir``."""
        if self.expected is None:
            return
        if output is not None:
            output.verify(meta, self.expected)
        if self.expected.files is not None:
            for expected_run in load_expected_runs(meta.get_file(self.expected.files)):
                expected_run.verify(dest_dir, validator, template_data)


@dataclass
class GroupConfig:
    runs: list[RunConfig] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "GroupConfig":
        data = _mapping(data, "group")
        runs = _required(data, "runs", "group")
        if not isinstance(runs, list):
            raise ValueError("group: `runs` must be a sequence")
        return cls([RunConfig.from_dict(run) for run in runs])


@dataclass
class BenchConfig:
    groups: list[GroupConfig] = field(default_factory=list)
    template: Optional[Path] = None

    @classmethod
    def from_dict(cls, data: Any) -> "BenchConfig":
        data = _mapping(data, "config")
        groups = _required(data, "groups", "config")
        if not isinstance(groups, list):
            raise ValueError("config: `groups` must be a sequence")
        return cls(
            groups=[GroupConfig.from_dict(group) for group in groups],
            template=_optional_path(data.get("template"), "template"),
        )


def load_bench_config(path: str | Path) -> BenchConfig:
    """Load a ``*.conf.yml`` benchmark configuration."""
    path = Path(path)
    with path.open(encoding="utf-8") as handle:
        try:
            return BenchConfig.from_dict(yaml.safe_load(handle))
        except (ValueError, yaml.YAMLError) as error:
            raise ValueError(f"Failed to deserialize '{path}': {error}") from error


@dataclass
class Benchmark:
    """A benchmark configuration together with the bench target it runs."""

    name: str
    bench_name: str
    config: BenchConfig
    dest_dir: Path

    @classmethod
    def from_path(cls, path: str | Path, target_dir: str | Path) -> "Benchmark":
        path = Path(path)
        if not path.name.endswith(CONFIG_SUFFIX):
            raise ValueError(f"Benchmark configuration must end with {CONFIG_SUFFIX}: {path}")
        config = load_bench_config(path)
        name = path.name[: -len(CONFIG_SUFFIX)]
        bench_name = TEMPLATE_BENCH_NAME if config.template is not None else name
        return cls(
            name=name,
            bench_name=bench_name,
            config=config,
            dest_dir=Path(target_dir) / OUTPUT_DIR_NAME / PACKAGE / bench_name,
        )

    def clean(self) -> None:
        """Remove the output of earlier runs."""
        if self.dest_dir.is_dir():
            shutil.rmtree(self.dest_dir)

    def run_bench(self, args: Sequence[str], capture: bool) -> Optional[BenchmarkOutput]:
        """Run the bench target with cargo; return its output if ``capture`` is set."""
        env = {**os.environ, "GRIDBENCH_COLOR": "never" if capture else "auto"}
        command = [
            os.environ.get("CARGO", "cargo"),
            "bench",
            "--package",
            PACKAGE,
            "--bench",
            self.bench_name,
        ]
        if args:
            command += ["--", *args]
        stream = subprocess.PIPE if capture else None
        completed = subprocess.run(command, stdout=stream, stderr=stream, env=env, check=False)
        if completed.returncode != 0:
            raise VerificationError("Expected run to be successful")
        if not capture:
            return None
        return BenchmarkOutput(completed.stdout or b"", completed.stderr or b"")

    def run_template(
        self,
        template_path: str | Path,
        args: Sequence[str],
        template_data: dict,
        meta: Metadata,
        capture: bool,
    ) -> Optional[BenchmarkOutput]:
        """Render the bench source from a template, then run it."""
        source = meta.get_file(template_path).read_text(encoding="utf-8")
        template = jinja2.Environment().from_string(source)
        meta.get_bench_file(self.bench_name).write_text(
            template.render(template_data), encoding="utf-8"
        )
        return self.run_bench(args, capture)

    def run(
        self,
        group: GroupConfig,
        meta: Metadata,
        validator: Optional[Any],
        template_data: Optional[dict] = None,
    ) -> None:
        """Run every run of ``group`` in order and verify each one."""
        self.clean()
        total = len(group.runs)
        for number, run in enumerate(group.runs, start=1):
            _print_info(f"Running {self.name}: ({number}/{total})")
            if run.args:
                _print_info(f"Benchmark arguments: {' '.join(run.args)}")

            capture = run.captures_output
            if self.config.template is not None:
                output = self.run_template(
                    self.config.template, run.args, run.template_data, meta, capture
                )
            else:
                output = self.run_bench(run.args, capture)

            run.verify(meta, output, validator, self.dest_dir, template_data)


@dataclass
class BenchmarkRunner:
    """Build the runner and run all collected benchmarks."""

    metadata: Metadata
    template_data: dict = field(default_factory=dict)

    def run(self) -> None:
        os.environ["GRIDBENCH_SAVE_SUMMARY"] = "json"
        os.environ["GRIDBENCH_RUNNER"] = str(
            self.metadata.target_directory / "release" / RUNNER_PACKAGE
        )
        schema_path = (
            self.metadata.workspace_root / RUNNER_PACKAGE / "schemas" / "summary.v2.schema.json"
        )
        schema = json.loads(schema_path.read_text(encoding="utf-8"))
        validator = validator_for(schema)(schema)

        _build_runner()

        for bench in self.metadata.benchmarks:
            for group in bench.config.groups:
                bench.run(group, self.metadata, validator, self.template_data)


def _build_runner() -> None:
    _print_info(f"Building {RUNNER_PACKAGE}")
    completed = subprocess.run(
        [os.environ.get("CARGO", "cargo"), "build", "--package", RUNNER_PACKAGE, "--release"],
        check=False,
    )
    if completed.returncode != 0:
        raise VerificationError(f"Building {RUNNER_PACKAGE} failed")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the named benchmark configurations, or all of them when none are named."""
    benches = list(sys.argv[1:] if argv is None else argv)
    try:
        metadata = Metadata.discover(benches)
        template_data = {
            "target_dir_sanitized": str(metadata.target_directory).replace("/", "_")
        }
        BenchmarkRunner(metadata, template_data).run()
    except (VerificationError, ValueError, OSError, subprocess.CalledProcessError) as error:
        _print_error(error)
        return 1
    return 0