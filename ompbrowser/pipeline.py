"""Filter and sort pipeline producing the visible server list."""

from __future__ import annotations

from enum import Enum
from typing import AbstractSet, Iterable, Optional

from ompbrowser.models import ServerRecord

SERVER_VERSION_037 = "0.3.7"
SERVER_VERSION_03DL = "0.3.DL"
SERVER_VERSION_OPENMP = "open.mp"

# Filter tag -> substring looked up in rules["version"]
VERSION_TAGS: dict[str, str] = {
    SERVER_VERSION_037: "0.3.7",
    SERVER_VERSION_03DL: "0.3.DL",
    SERVER_VERSION_OPENMP: "omp",
}


class SortMode(Enum):
    NONE = "none"
    PING = "ping"
    PLAYERS = "players"

    def next(self) -> "SortMode":
        order = list(SortMode)
        return order[(order.index(self) + 1) % len(order)]

    @property
    def label(self) -> str:
        if self is SortMode.PING:
            return "Ping ↓"
        if self is SortMode.PLAYERS:
            return "Players ↓"
        return ""


def version_tag(record: ServerRecord) -> Optional[str]:
    """The first known version tag found in the record's rules, if any."""
    if not record.rules:
        return None
    version = record.rules.get("version", "")
    for tag, needle in VERSION_TAGS.items():
        if needle in version:
            return tag
    return None


def matches_search(record: ServerRecord, query: str) -> bool:
    if not query:
        return True
    return query in record.name.lower() or query in record.address.lower()


def matches_filters(record: ServerRecord, filters: AbstractSet[str]) -> bool:
    if not filters:
        return True
    if not record.rules:
        return False
    version = record.rules.get("version")
    if version is None:
        return False
    return any(
        needle in version and tag in filters for tag, needle in VERSION_TAGS.items()
    )


def sort_records(records: list[ServerRecord], mode: SortMode) -> list[ServerRecord]:
    """Stable sort; unknown (zero) pings always go last."""
    if mode is SortMode.PING:
        return sorted(records, key=lambda r: (r.ping == 0, r.ping))
    if mode is SortMode.PLAYERS:
        return sorted(records, key=lambda r: -r.players)
    return list(records)


def build_view(
    records: Iterable[ServerRecord],
    search: str,
    filters: AbstractSet[str],
    sort_mode: SortMode,
) -> list[ServerRecord]:
    """Compute the ordered visible subset. Pure; ``records`` is not modified."""
    query = search.strip().lower()
    visible = [
        record
        for record in records
        if matches_search(record, query) and matches_filters(record, filters)
    ]
    return sort_records(visible, sort_mode)


def describe_filters(search: str, filters: AbstractSet[str]) -> str:
    parts = []
    if search:
        parts.append(f'Search: "{search}"')
    active = [tag for tag in VERSION_TAGS if tag in filters]
    if active:
        parts.append(f"Version: {', '.join(active)}")
    if not parts:
        return "No filters active"
    return "Filters: " + " | ".join(parts)
