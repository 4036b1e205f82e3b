"""Configuration model shared between benchmark definitions and the runner."""

from __future__ import annotations

import copy
import os
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, TypeVar

T = TypeVar("T")

__all__ = [
    "Arg",
    "Assistant",
    "BinaryBenchmark",
    "BinaryBenchmarkConfig",
    "BinaryBenchmarkGroup",
    "Cmd",
    "Direction",
    "EventKind",
    "ExitWith",
    "Fixtures",
    "FlamegraphConfig",
    "FlamegraphKind",
    "LibraryBenchmark",
    "LibraryBenchmarkBench",
    "LibraryBenchmarkBenches",
    "LibraryBenchmarkConfig",
    "LibraryBenchmarkGroup",
    "RawArgs",
    "RegressionConfig",
    "Run",
    "Tool",
    "Tools",
    "ValgrindTool",
    "update_option",
]


def update_option(first: Optional[T], other: Optional[T]) -> Optional[T]:
    """Return ``other`` if it is set, otherwise ``first``."""
    return other if other is not None else first


@dataclass
class Arg:
    id: Optional[str] = None
    args: list[str] = field(default_factory=list)


@dataclass
class Assistant:
    id: str
    name: str
    bench: bool = False


@dataclass
class Cmd:
    display: str
    cmd: str


class Direction(Enum):
    """The direction in which a flamegraph grows."""

    TOP_TO_BOTTOM = "TopToBottom"
    BOTTOM_TO_TOP = "BottomToTop"

    @classmethod
    def default(cls) -> "Direction":
        return cls.BOTTOM_TO_TOP


class EventKind(Enum):
    """Events produced by callgrind plus a few derived ones.

    The value of each member is the name callgrind uses in its output.
    """

    Ir = "Ir"
    SysCount = "sysCount"
    SysTime = "sysTime"
    SysCpuTime = "sysCpuTime"
    Ge = "Ge"
    Dr = "Dr"
    Dw = "Dw"
    I1mr = "I1mr"
    ILmr = "ILmr"
    D1mr = "D1mr"
    DLmr = "DLmr"
    D1mw = "D1mw"
    DLmw = "DLmw"
    L1hits = "L1hits"
    LLhits = "LLhits"
    RamHits = "RamHits"
    TotalRW = "TotalRW"
    EstimatedCycles = "EstimatedCycles"
    Bc = "Bc"
    Bcm = "Bcm"
    Bi = "Bi"
    Bim = "Bim"
    ILdmr = "ILdmr"
    DLdmr = "DLdmr"
    DLdmw = "DLdmw"
    AcCost1 = "AcCost1"
    AcCost2 = "AcCost2"
    SpLoss1 = "SpLoss1"
    SpLoss2 = "SpLoss2"

    def is_derived(self) -> bool:
        """Return True if this event is computed from native callgrind events."""
        return self in _DERIVED_EVENTS

    @classmethod
    def from_str_ignore_case(cls, value: str) -> Optional["EventKind"]:
        """Look up an event by its member name, ignoring case; None if unknown."""
        return _EVENTS_BY_LOWER_NAME.get(value.lower())

    @classmethod
    def from_name(cls, value: str) -> "EventKind":
        """Look up an event by the exact name callgrind uses."""
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown event type: {value}") from None

    def to_name(self) -> str:
        return self.name

    def __str__(self) -> str:
        return _DISPLAY_NAMES.get(self, self.name)


_DERIVED_EVENTS = frozenset(
    {
        EventKind.L1hits,
        EventKind.LLhits,
        EventKind.RamHits,
        EventKind.TotalRW,
        EventKind.EstimatedCycles,
    }
)

_EVENTS_BY_LOWER_NAME = {kind.name.lower(): kind for kind in EventKind}

_DISPLAY_NAMES = {
    EventKind.Ir: "Instructions",
    EventKind.L1hits: "L1 Hits",
    EventKind.LLhits: "L2 Hits",
    EventKind.RamHits: "RAM Hits",
    EventKind.TotalRW: "Total read+write",
    EventKind.EstimatedCycles: "Estimated Cycles",
}


@dataclass(frozen=True)
class ExitWith:
    """Expected outcome of a benchmarked command: success, failure or a given code."""

    kind: str
    code: Optional[int] = None

    def __post_init__(self) -> None:
        if self.kind not in ("success", "failure", "code"):
            raise ValueError(f"Invalid exit kind: {self.kind}")
        if (self.kind == "code") != (self.code is not None):
            raise ValueError("An exit code is required exactly when kind is 'code'")

    @classmethod
    def success(cls) -> "ExitWith":
        return cls("success")

    @classmethod
    def failure(cls) -> "ExitWith":
        return cls("failure")

    @classmethod
    def with_code(cls, code: int) -> "ExitWith":
        return cls("code", code)


@dataclass
class Fixtures:
    path: Path
    follow_symlinks: bool = False


class FlamegraphKind(Enum):
    REGULAR = "Regular"
    DIFFERENTIAL = "Differential"
    ALL = "All"
    NONE = "None"


@dataclass
class FlamegraphConfig:
    kind: Optional[FlamegraphKind] = None
    negate_differential: Optional[bool] = None
    normalize_differential: Optional[bool] = None
    event_kinds: Optional[list[EventKind]] = None
    direction: Optional[Direction] = None
    title: Optional[str] = None
    subtitle: Optional[str] = None
    min_width: Optional[float] = None


@dataclass
class RawArgs:
    """Raw command-line arguments for a valgrind tool."""

    args: list[str] = field(default_factory=list)

    def extend_ignore_flag(self, args: Iterable[str]) -> None:
        """Append non-empty arguments, prefixing ``--`` where no leading dash is present."""
        self.args.extend(
            arg if arg.startswith("-") else f"--{arg}" for arg in args if arg
        )

    @classmethod
    def from_iterable(cls, args: Iterable[str]) -> "RawArgs":
        raw = cls()
        raw.extend_ignore_flag(args)
        return raw

    @classmethod
    def from_command_line_args(cls, args: Iterable[str]) -> "RawArgs":
        """Take the arguments verbatim, dropping a trailing ``--bench``."""
        collected = list(args)
        if collected and collected[-1] == "--bench":
            collected.pop()
        return cls(collected)


@dataclass
class RegressionConfig:
    limits: list[tuple[EventKind, float]] = field(default_factory=list)
    fail_fast: Optional[bool] = None


class ValgrindTool(Enum):
    MEMCHECK = "Memcheck"
    HELGRIND = "Helgrind"
    DRD = "DRD"
    MASSIF = "Massif"
    DHAT = "DHAT"
    BBV = "BBV"


@dataclass
class Tool:
    kind: ValgrindTool
    enable: Optional[bool] = None
    raw_args: RawArgs = field(default_factory=RawArgs)
    outfile_modifier: Optional[str] = None
    show_log: Optional[bool] = None


@dataclass
class Tools:
    """An ordered collection holding at most one tool of each kind."""

    tools: list[Tool] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.tools

    def update(self, tool: Tool) -> None:
        """Add ``tool``, replacing any tool of the same kind, and move it to the end."""
        self.tools = [t for t in self.tools if t.kind != tool.kind]
        self.tools.append(tool)

    def update_all(self, tools: Iterable[Tool]) -> None:
        for tool in tools:
            self.update(tool)

    def update_from_other(self, tools: "Tools") -> None:
        self.update_all(copy.deepcopy(tool) for tool in tools.tools)


def _resolve_envs(envs: list[tuple[str, Optional[str]]]) -> list[tuple[str, str]]:
    resolved = []
    for key, value in envs:
        if value is None:
            value = os.environ.get(key)
            if value is None:
                continue
        resolved.append((key, value))
    return resolved


def _merge_tools(target, other) -> None:
    if other.tools_override is not None:
        target.tools = copy.deepcopy(other.tools_override)
    elif not other.tools.is_empty():
        target.tools.update_from_other(other.tools)


@dataclass
class BinaryBenchmarkConfig:
    sandbox: Optional[bool] = None
    fixtures: Optional[Fixtures] = None
    env_clear: Optional[bool] = None
    current_dir: Optional[Path] = None
    entry_point: Optional[str] = None
    exit_with: Optional[ExitWith] = None
    raw_callgrind_args: RawArgs = field(default_factory=RawArgs)
    envs: list[tuple[str, Optional[str]]] = field(default_factory=list)
    flamegraph_config: Optional[FlamegraphConfig] = None
    regression_config: Optional[RegressionConfig] = None
    tools: Tools = field(default_factory=Tools)
    tools_override: Optional[Tools] = None

    def update_from_all(
        self, others: Iterable[Optional["BinaryBenchmarkConfig"]]
    ) -> "BinaryBenchmarkConfig":
        """Return a copy of this config updated in turn by every non-None config."""
        result = copy.deepcopy(self)
        for other in others:
            if other is None:
                continue
            other = copy.deepcopy(other)
            result.sandbox = update_option(result.sandbox, other.sandbox)
            result.fixtures = update_option(result.fixtures, other.fixtures)
            result.env_clear = update_option(result.env_clear, other.env_clear)
            result.current_dir = update_option(result.current_dir, other.current_dir)
            result.entry_point = update_option(result.entry_point, other.entry_point)
            result.exit_with = update_option(result.exit_with, other.exit_with)
            result.raw_callgrind_args.extend_ignore_flag(other.raw_callgrind_args.args)
            result.envs.extend(other.envs)
            result.flamegraph_config = update_option(
                result.flamegraph_config, other.flamegraph_config
            )
            result.regression_config = update_option(
                result.regression_config, other.regression_config
            )
            _merge_tools(result, other)
        return result

    def resolve_envs(self) -> list[tuple[str, str]]:
        """Return the environment pairs, filling pass-through values from os.environ."""
        return _resolve_envs(self.envs)


@dataclass
class Run:
    cmd: Optional[Cmd] = None
    args: list[Arg] = field(default_factory=list)
    config: BinaryBenchmarkConfig = field(default_factory=BinaryBenchmarkConfig)


@dataclass
class BinaryBenchmarkGroup:
    id: Optional[str] = None
    cmd: Optional[Cmd] = None
    config: Optional[BinaryBenchmarkConfig] = None
    benches: list[Run] = field(default_factory=list)
    assists: list[Assistant] = field(default_factory=list)


@dataclass
class BinaryBenchmark:
    config: BinaryBenchmarkConfig = field(default_factory=BinaryBenchmarkConfig)
    groups: list[BinaryBenchmarkGroup] = field(default_factory=list)
    command_line_args: list[str] = field(default_factory=list)


@dataclass
class LibraryBenchmarkConfig:
    env_clear: Optional[bool] = None
    raw_callgrind_args: RawArgs = field(default_factory=RawArgs)
    envs: list[tuple[str, Optional[str]]] = field(default_factory=list)
    flamegraph_config: Optional[FlamegraphConfig] = None
    regression_config: Optional[RegressionConfig] = None
    tools: Tools = field(default_factory=Tools)
    tools_override: Optional[Tools] = None

    def update_from_all(
        self, others: Iterable[Optional["LibraryBenchmarkConfig"]]
    ) -> "LibraryBenchmarkConfig":
        """Return a copy of this config updated in turn by every non-None config."""
        result = copy.deepcopy(self)
        for other in others:
            if other is None:
                continue
            other = copy.deepcopy(other)
            result.raw_callgrind_args.extend_ignore_flag(other.raw_callgrind_args.args)
            result.env_clear = update_option(result.env_clear, other.env_clear)
            result.envs.extend(other.envs)
            result.flamegraph_config = update_option(
                result.flamegraph_config, other.flamegraph_config
            )
            result.regression_config = update_option(
                result.regression_config, other.regression_config
            )
            _merge_tools(result, other)
        return result

    def resolve_envs(self) -> list[tuple[str, str]]:
        """Return the environment pairs, filling pass-through values from os.environ."""
        return _resolve_envs(self.envs)


@dataclass
class LibraryBenchmarkBench:
    bench: str = ""
    id: Optional[str] = None
    args: Optional[str] = None
    config: Optional[LibraryBenchmarkConfig] = None


@dataclass
class LibraryBenchmarkBenches:
    config: Optional[LibraryBenchmarkConfig] = None
    benches: list[LibraryBenchmarkBench] = field(default_factory=list)


@dataclass
class LibraryBenchmarkGroup:
    id: Optional[str] = None
    config: Optional[LibraryBenchmarkConfig] = None
    compare: bool = False
    benches: list[LibraryBenchmarkBenches] = field(default_factory=list)


@dataclass
class LibraryBenchmark:
    config: LibraryBenchmarkConfig = field(default_factory=LibraryBenchmarkConfig)
    groups: list[LibraryBenchmarkGroup] = field(default_factory=list)
    command_line_args: list[str] = field(default_factory=list)