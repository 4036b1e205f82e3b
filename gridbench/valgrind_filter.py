"""Run a program under valgrind and normalise the tool's log for comparisons."""

from __future__ import annotations

import os
import platform
import re
import shlex
import subprocess
import sys
from collections.abc import Iterator
from enum import Enum
from pathlib import Path
from typing import Optional, Sequence

__all__ = [
    "MARKER",
    "FilterTool",
    "cachegrind_filter",
    "callgrind_filter",
    "main",
    "memcheck_filter",
    "valgrind_command",
]

MARKER = "___START___"
FILTER = "<__FILTER__>"
BACKTRACE = "<__BACKTRACE__>"
NUMBER = "<__NUMBER__>"

_STRIP_PREFIX_RE = re.compile(
    r"^\s*(==|--|\*\*)([0-9:.]+\s+)?[0-9]+(==|--|\*\*)\s*(?P<rest>.*)$"
)
_CALLGRIND_EXCLUDED_LINES_RE = re.compile(r"^(For interactive control,)")
_CALLGRIND_RM_DUMP_TO_RE = re.compile(r"^(Dump to).*$")
_CALLGRIND_RM_BB_NUM_RE = re.compile(r"(at BB\s+)([0-9]+)(\s+.*)$")
_CALLGRIND_RM_ADDR_RE = re.compile(r"((at|by)\s+)(0x[0-9A-Za-z]+\s*:.*)$")
_CALLGRIND_RM_NUM_REFS_RE = re.compile(r"((I|D|LL)\s*refs:)[ 0-9,()+rdw]*$")
_CALLGRIND_RM_NUM_MISS_RE = re.compile(
    r"((I1|D1|LL|LLi|LLd)\s*(misses|miss rate):)[ 0-9,()+rdw%.]*$"
)
_CALLGRIND_RM_NUM_RATE_RE = re.compile(
    r"((Branches|Mispredicts|Mispred rate):)[ 0-9,()+condi%.]*$"
)
_CALLGRIND_RM_NUM_COLLECTED_RE = re.compile(r"^(Collected\s*:)[ 0-9]*$")
_CALLGRIND_RM_LINE_NUM_RE = re.compile(r"(\(.*:)([0-9]+)(\))\s*$")
_BACKTRACE_RE = re.compile(r"^((at|by)\s*0x[0-9A-Za-z]+\s*:)")
_MEMCHECK_CHECKED_RE = re.compile(r"^(\s*Checked\s*)([0-9,.]+)(\s*bytes)\s*$")
_MEMCHECK_TOTAL_HEAP_USAGE_RE = re.compile(r"^(?i:(\s*total heap usage:\s*))(.*)$")
_MEMCHECK_LEAK_SUMMARY_RE = re.compile(
    r"(?i:(\s*(definitely lost|indirectly lost|possibly lost|still reachable|suppressed):\s*))"
    r"([ 0-9,()+.]*)(\s*bytes in\s*)([ 0-9,()+.]*)(\s*blocks\s*)$"
)
_MEMCHECK_RM_NUMBERS_RE = re.compile(r"[+-]?[0-9][0-9,.]*")
_MEMORY_ADDRESS_RE = re.compile(r"0x[0-9A-Za-z]+")
_CACHEGRIND_NUM_REFS_RE = re.compile(r"((I|D|LL)\s*refs:\s*)([ 0-9,()+rdw]*)\s*$")

_CALLGRIND_SUMMARY_RES = (
    _CALLGRIND_RM_NUM_REFS_RE,
    _CALLGRIND_RM_NUM_MISS_RE,
    _CALLGRIND_RM_NUM_RATE_RE,
    _CALLGRIND_RM_NUM_COLLECTED_RE,
    _CALLGRIND_RM_DUMP_TO_RE,
)


class FilterTool(Enum):
    """Valgrind tools whose output can be filtered."""

    CALLGRIND = "callgrind"
    MEMCHECK = "memcheck"
    HELGRIND = "helgrind"
    CACHEGRIND = "cachegrind"

    @classmethod
    def parse(cls, value: str) -> "FilterTool":
        """Parse a tool name, ignoring case."""
        lowered = value.lower()
        try:
            return cls(lowered)
        except ValueError:
            raise ValueError(f"Unsupported tool: {lowered}") from None

    def __str__(self) -> str:
        return self.value


def _lines(data: bytes) -> list[str]:
    text = data.decode("utf-8")
    if not text:
        return []
    parts = text.split("\n")
    if parts[-1] == "":
        parts.pop()
    return [part[:-1] if part.endswith("\r") else part for part in parts]


def _body(data: bytes, label: str) -> Iterator[str]:
    """Yield the log lines after the marker line, with the valgrind prefix removed."""
    in_body = False
    for line in _lines(data):
        if not in_body:
            in_body = MARKER in line
            continue
        match = _STRIP_PREFIX_RE.match(line)
        if match is None:
            raise ValueError(
                f"{label} output line should be a valid output line: was {line}"
            )
        yield match.group("rest")


def _join(lines: Iterator[str]) -> str:
    return "".join(f"{line}\n" for line in lines)


def _callgrind_lines(path: Path, data: bytes) -> Iterator[str]:
    path_re = re.compile(f"({re.escape(str(path))})")
    in_backtrace = False
    for rest in _body(data, "Callgrind"):
        if rest.startswith("Symbol match:"):
            continue
        if _BACKTRACE_RE.search(rest):
            if not in_backtrace:
                yield BACKTRACE
                in_backtrace = True
            continue
        in_backtrace = False

        rest = path_re.sub(FILTER, rest)
        rest = _CALLGRIND_RM_ADDR_RE.sub(rf"\g<1>{FILTER}", rest)
        rest = _CALLGRIND_RM_BB_NUM_RE.sub(rf"\g<1>{FILTER}\g<3>", rest)
        rest = _CALLGRIND_RM_LINE_NUM_RE.sub(rf"\g<1>{FILTER}\g<3>", rest)
        if _CALLGRIND_EXCLUDED_LINES_RE.search(rest):
            continue
        for regex in _CALLGRIND_SUMMARY_RES:
            match = regex.search(rest)
            if match:
                yield match.group(1)
                break
        else:
            yield rest


def callgrind_filter(path: str | Path, data: bytes) -> str:
    """Normalise callgrind log output, masking the binary path, addresses and counts."""
    return _join(_callgrind_lines(Path(path), data))


def _memcheck_lines(data: bytes) -> Iterator[str]:
    in_backtrace = False
    for rest in _body(data, "Memcheck"):
        if _BACKTRACE_RE.search(rest):
            if not in_backtrace:
                yield BACKTRACE
                in_backtrace = True
            continue
        in_backtrace = False

        rest = _MEMCHECK_CHECKED_RE.sub(rf"\g<1>{FILTER}\g<3>", rest)
        rest = _MEMCHECK_TOTAL_HEAP_USAGE_RE.sub(rf"\g<1>{FILTER}", rest)
        rest = _MEMCHECK_LEAK_SUMMARY_RE.sub(
            rf"\g<1>{FILTER} \g<4>{FILTER} \g<6>", rest
        )
        rest = _MEMORY_ADDRESS_RE.sub(FILTER, rest)
        yield _MEMCHECK_RM_NUMBERS_RE.sub(NUMBER, rest)


def memcheck_filter(data: bytes) -> str:
    """Normalise memcheck log output, masking addresses, sizes and numbers."""
    return _join(_memcheck_lines(data))


def cachegrind_filter(data: bytes) -> str:
    """Normalise cachegrind log output, masking the reference counts."""
    return _join(
        _CACHEGRIND_NUM_REFS_RE.sub(rf"\g<1>{FILTER}", rest)
        for rest in _body(data, "Cachegrind")
    )


def _cross_target() -> str:
    return os.environ.get("GRIDBENCH_CROSS_TARGET") or (
        f"{platform.machine()}-unknown-{platform.system().lower()}-gnu"
    )


def valgrind_command() -> list[str]:
    """Return the command prefix that starts valgrind."""
    directory = os.environ.get("GRIDBENCH_VALGRIND_PATH")
    if directory is not None:
        valgrind = Path(directory) / "valgrind"
    else:
        valgrind = Path("/target/valgrind") / _cross_target() / "bin" / "valgrind"
    if not valgrind.exists():
        raise FileNotFoundError(f"Valgrind binary not found: {valgrind}")
    return [str(valgrind)]


def _strip_required(arg: str, prefix: str) -> str:
    if not arg.startswith(prefix):
        raise ValueError(f"Expected argument starting with {prefix!r}: {arg!r}")
    return arg[len(prefix):]


def _write_bytes(stream, data: bytes) -> None:
    stream.flush()
    buffer = getattr(stream, "buffer", None)
    if buffer is None:
        stream.write(data.decode("utf-8", "replace"))
        stream.flush()
    else:
        buffer.write(data)
        buffer.flush()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run a binary under valgrind and print its filtered log to stderr.

    Arguments: EXPECTED_EXIT_CODE --tool=TOOL --valgrind-args=ARGS --bin=BIN [--bin-args=ARGS]
    """
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) < 4:
        raise ValueError(
            "usage: EXPECTED_EXIT_CODE --tool=TOOL --valgrind-args=ARGS --bin=BIN "
            "[--bin-args=ARGS]"
        )
    base_dir = Path(sys.argv[0]).resolve().parent if sys.argv and sys.argv[0] else Path.cwd()

    expected_exit_code = int(args[0])
    tool = FilterTool.parse(_strip_required(args[1], "--tool="))
    valgrind_args = shlex.split(_strip_required(args[2], "--valgrind-args="))
    binary = base_dir / _strip_required(args[3], "--bin=")
    bin_args = shlex.split(_strip_required(args[4], "--bin-args=")) if len(args) > 4 else []

    cmd = [*valgrind_command(), f"--tool={tool}", *valgrind_args, str(binary), *bin_args]
    output = subprocess.run(cmd, capture_output=True, check=False)
    code = output.returncode

    if code < 0:
        print(repr(output), file=sys.stderr)
        return -1

    if code == expected_exit_code:
        if tool is FilterTool.CALLGRIND:
            sys.stderr.write(callgrind_filter(binary, output.stderr))
        elif tool is FilterTool.CACHEGRIND:
            sys.stderr.write(cachegrind_filter(output.stderr))
        elif tool is FilterTool.MEMCHECK:
            sys.stderr.write(memcheck_filter(output.stderr))
        else:
            _write_bytes(sys.stderr, output.stderr)
        sys.stderr.flush()
    else:
        print(
            f"Unexpected exit code '{code}' when running {shlex.join(cmd)}",
            file=sys.stderr,
        )
        print("STDOUT:", file=sys.stderr)
        _write_bytes(sys.stderr, output.stdout)
        print("STDERR:", file=sys.stderr)
        _write_bytes(sys.stderr, output.stderr)
    return code