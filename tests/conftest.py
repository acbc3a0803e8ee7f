"""Shared test fixtures."""

import asyncio
from datetime import datetime, timezone

import httpx
import orjson
import pytest

from ompbrowser.config import Settings
from ompbrowser.errors import ProbeFailure
from ompbrowser.models import StatusReply

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def reply(name="Server", players=1, max_players=50, ping=0.05, passworded=False):
    return StatusReply(
        name=name,
        players=players,
        max_players=max_players,
        passworded=passworded,
        ping=ping,
    )


class FakeProbe:
    """Scripted probe client.

    Keys missing from ``status`` fail; keys in ``delays`` sleep first, which
    lets a test trip the caller's timeout.
    """

    def __init__(self):
        self.status = {}
        self.rules = {}
        self.players = {}
        self.delays = {}
        self.calls = []

    def count(self, kind, key):
        return sum(1 for call in self.calls if call == (kind, key))

    async def _answer(self, kind, table, host, port):
        key = (host, port)
        self.calls.append((kind, key))
        delay = self.delays.get(key)
        if delay:
            await asyncio.sleep(delay)
        if key not in table:
            raise ProbeFailure(f"{host}:{port} did not answer")
        return table[key]

    async def probe_status(self, host, port, timeout):
        return await self._answer("status", self.status, host, port)

    async def probe_rules(self, host, port, timeout):
        return await self._answer("rules", self.rules, host, port)

    async def probe_players(self, host, port, timeout):
        return await self._answer("players", self.players, host, port)


class RecordingSink:
    def __init__(self):
        self.events = []

    def handle_engine_event(self, event):
        self.events.append(event)

    def of_type(self, event_type):
        return [event for event in self.events if isinstance(event, event_type)]


def directory_client(entries, status_code=200):
    """An AsyncClient whose every GET answers with ``entries`` as JSON."""

    def handler(request):
        return httpx.Response(status_code, content=orjson.dumps(entries))

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        master_server="https://directory.test/servers",
        fallback_file=str(tmp_path / "servers.json"),
        cache_file=str(tmp_path / "servers_cache.json"),
        concurrency=4,
        probe_timeout=0.2,
        query_timeout=0.2,
        cycle_deadline=2.0,
        debounce=0.05,
        poll_interval=0.05,
        startup_delay=0.01,
        view_rebuild_interval=0.0,
    )
