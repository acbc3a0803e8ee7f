"""Data model shared by the fetcher, cache, query pool and poller."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from ompbrowser.address import format_address

ServerKey = tuple[str, int]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """RFC3339 with a ``Z`` suffix for UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class StatusReply:
    """Result of a successful status probe."""

    name: str
    players: int
    max_players: int
    passworded: bool
    ping: float  # seconds, 0 when the ping exchange failed


@dataclass
class ServerRecord:
    """One entry of the server directory.

    ``(host, port)`` identifies a server across fetch cycles. Probes mutate
    a record in place so fields a probe does not touch survive.
    """

    host: str
    port: int
    name: str = ""
    players: int = 0
    max_players: int = 0
    ping: float = 0.0
    passworded: bool = False
    rules: Optional[dict[str, str]] = None
    last_updated: Optional[datetime] = None
    loading: bool = field(default=False, compare=False)

    @property
    def key(self) -> ServerKey:
        return (self.host, self.port)

    @property
    def address(self) -> str:
        return format_address(self.host, self.port)

    @property
    def ping_ms(self) -> int:
        return int(self.ping * 1000)

    def apply_status(self, reply: StatusReply, when: datetime) -> None:
        self.name = reply.name
        self.players = reply.players
        self.max_players = reply.max_players
        self.passworded = reply.passworded
        self.ping = reply.ping
        self.last_updated = when
        self.loading = False

    def apply_rules(self, rules: dict[str, str]) -> None:
        self.rules = dict(rules)

    def to_dict(self) -> dict[str, Any]:
        """Serialise for the result cache. ``loading`` is never persisted."""
        return {
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "players": self.players,
            "max_players": self.max_players,
            "ping": self.ping,
            "passworded": self.passworded,
            "rules": self.rules,
            "last_updated": (
                format_timestamp(self.last_updated) if self.last_updated else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ServerRecord":
        last_updated = data.get("last_updated")
        rules = data.get("rules")
        return cls(
            host=str(data["host"]),
            port=int(data["port"]),
            name=str(data.get("name") or ""),
            players=int(data.get("players") or 0),
            max_players=int(data.get("max_players") or 0),
            ping=float(data.get("ping") or 0.0),
            passworded=bool(data.get("passworded", False)),
            rules=dict(rules) if isinstance(rules, dict) else None,
            last_updated=parse_timestamp(last_updated) if last_updated else None,
        )
