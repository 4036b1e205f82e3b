"""Entry points of the small helper programs used as binary benchmark subjects."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional, Sequence

from gridbench.workloads import bubble_sort_allocate, print_env, run_subprocess

__all__ = [
    "FILE_WITH_CONTENT",
    "FILE_WITHOUT_CONTENT",
    "cat",
    "cat_main",
    "echo_main",
    "exit_main",
    "printargs_main",
    "printenv_main",
    "sort_main",
    "subprocess_main",
]

FILE_WITH_CONTENT = "fixtures/file_with_content.txt"
FILE_WITHOUT_CONTENT = "fixtures/file_without_content.txt"
FILE_WITH_CONTENT_EXPECTED = b"one\ntwo\n"

DEFAULT_SORT_START = 4000
DEFAULT_SORT_TOTAL = 2000


def _args(argv: Optional[Sequence[str]]) -> list[str]:
    return list(sys.argv[1:] if argv is None else argv)


def _write_stdout(data: bytes) -> None:
    sys.stdout.flush()
    buffer = getattr(sys.stdout, "buffer", None)
    if buffer is None:
        sys.stdout.write(data.decode("utf-8", "replace"))
        sys.stdout.flush()
    else:
        buffer.write(data)
        buffer.flush()


def _text_lines(text: str) -> list[str]:
    if not text:
        return []
    parts = text.split("\n")
    if parts[-1] == "":
        parts.pop()
    return [part[:-1] if part.endswith("\r") else part for part in parts]


def cat(path: str | Path) -> bytes:
    """Return the whole content of ``path``."""
    return Path(path).read_bytes()


def cat_main(argv: Optional[Sequence[str]] = None) -> int:
    """Write the named file to stdout, checking the content of known fixtures."""
    args = _args(argv)
    if not args:
        raise ValueError("Argument with filename to print to stdout")
    file = args[0]
    actual = cat(file)
    if file == FILE_WITH_CONTENT and actual != FILE_WITH_CONTENT_EXPECTED:
        raise ValueError(f"Unexpected content of {file}: {actual!r}")
    if file == FILE_WITHOUT_CONTENT and actual:
        raise ValueError(f"Expected {file} to be empty: {actual!r}")
    _write_stdout(actual)
    return 0


def echo_main(argv: Optional[Sequence[str]] = None) -> int:
    """Print the arguments, checking them against the lines of the fixture given last."""
    args = _args(argv)
    if not args:
        raise ValueError("Expected a fixture file as last argument")
    fixture = args.pop()
    expected = _text_lines(Path(fixture).read_text(encoding="utf-8"))
    if len(args) < len(expected):
        raise ValueError(
            f"Expected at least {len(expected)} arguments but got {len(args)}"
        )
    for actual, line in zip(args, expected):
        if actual != line:
            raise ValueError(f"Argument {actual!r} differs from expected {line!r}")
        print(actual)
    return 0


def exit_main(argv: Optional[Sequence[str]] = None) -> int:
    """Return the exit status given as the first argument."""
    args = _args(argv)
    if not args:
        raise ValueError("Exit status")
    try:
        return int(args[0])
    except ValueError:
        raise ValueError(f"Valid status code expected: {args[0]!r}") from None


def printargs_main(argv: Optional[Sequence[str]] = None) -> int:
    """Print the program name and then every argument, one per line."""
    program = sys.argv[0] if sys.argv else ""
    for arg in [program, *_args(argv)]:
        print(arg)
    return 0


def printenv_main(argv: Optional[Sequence[str]] = None) -> int:
    """Print and check environment variables named by the arguments."""
    print_env(_args(argv))
    return 0


def sort_main(argv: Optional[Sequence[str]] = None) -> int:
    """Bubble sort a reversed array and print the sum of its first items."""
    args = _args(argv)
    start = int(args[0]) if len(args) > 0 else DEFAULT_SORT_START
    total = int(args[1]) if len(args) > 1 else DEFAULT_SORT_TOTAL
    if total < 0:
        raise ValueError(f"The number of items to sum must not be negative: {total}")
    print(bubble_sort_allocate(start, total))
    return 0


def subprocess_main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the executable given first with the remaining arguments."""
    args = _args(argv)
    if not args:
        raise ValueError("Expected an executable to run")
    run_subprocess(args[0], args[1:])
    return 0