"""Messages flowing through the engine.

Commands are queued on the engine inbox by the query pool and the poller
and applied by the inbox dispatcher. View events are what the engine hands
to its :class:`ViewSink`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol, Union

from ompbrowser.models import ServerKey, ServerRecord, StatusReply
from ompbrowser.pipeline import SortMode


# Commands (inbox)


@dataclass(frozen=True)
class ProbeOutcome:
    """A record finished in a refresh cycle, probed or skipped."""

    cycle: int
    index: int
    key: ServerKey
    skipped: bool
    status: Optional[StatusReply] = None
    rules: Optional[dict[str, str]] = None
    probed_at: Optional[datetime] = None


@dataclass(frozen=True)
class ProgressReport:
    cycle: int
    completed: int
    skipped: int
    failed: int
    total: int


@dataclass(frozen=True)
class PollResult:
    """One successful tick of the selection poller."""

    generation: int
    key: ServerKey
    status: StatusReply
    probed_at: datetime
    rules: Optional[dict[str, str]]
    players: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SnapshotReplaced:
    """Install a new record list; outcomes from other cycles are dropped."""

    cycle: int
    records: tuple[ServerRecord, ...]


Command = Union[SnapshotReplaced, ProbeOutcome, ProgressReport, PollResult]


# View events (sink)


@dataclass(frozen=True)
class StatusChanged:
    text: str


@dataclass(frozen=True)
class ProgressChanged:
    completed: int
    skipped: int
    failed: int
    total: int


@dataclass(frozen=True)
class ViewChanged:
    rows: tuple[ServerRecord, ...]
    sort_mode: SortMode
    filters: frozenset[str]
    search: str
    filter_text: str


@dataclass(frozen=True)
class RowChanged:
    index: int
    record: ServerRecord


@dataclass(frozen=True)
class PingHistoryChanged:
    samples: tuple[int, ...]


@dataclass(frozen=True)
class PlayersChanged:
    names: tuple[str, ...]
    count: int


@dataclass(frozen=True)
class RulesChanged:
    rules: dict[str, str]


@dataclass(frozen=True)
class SelectionCleared:
    pass


ViewEvent = Union[
    StatusChanged,
    ProgressChanged,
    ViewChanged,
    RowChanged,
    PingHistoryChanged,
    PlayersChanged,
    RulesChanged,
    SelectionCleared,
]


class ViewSink(Protocol):
    """Single consumer of engine output; called on the event loop."""

    def handle_engine_event(self, event: ViewEvent) -> None:
        ...
