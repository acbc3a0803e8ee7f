"""Retrieval of the raw server list from a master directory."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import httpx
import orjson
from loguru import logger

from ompbrowser.address import DEFAULT_PORT, parse_address, parse_port
from ompbrowser.errors import (
    DirectoryUnavailable,
    EmptyDirectory,
    FetchError,
    InvalidAddress,
    TransportFailure,
)
from ompbrowser.models import ServerRecord

MAX_BODY_BYTES = 50 * 1024 * 1024


def _dedupe(records: list[ServerRecord]) -> list[ServerRecord]:
    """Keep the first record for each (host, port)."""
    seen: set = set()
    unique = []
    for record in records:
        if record.key in seen:
            continue
        seen.add(record.key)
        unique.append(record)
    return unique


def _record_from_entry(entry: Any) -> Optional[ServerRecord]:
    """Convert one master-list entry; ``None`` when it has no usable address."""
    if not isinstance(entry, dict):
        return None
    ip = entry.get("ip")
    if not ip or not isinstance(ip, str):
        return None
    try:
        host, port = parse_address(ip)
    except ValueError as e:
        logger.debug(f"Dropping directory entry {ip!r}: {e}")
        return None
    try:
        players = int(entry.get("pc") or 0)
        max_players = int(entry.get("pm") or 0)
    except (TypeError, ValueError):
        players = max_players = 0
    return ServerRecord(
        host=host,
        port=port,
        name=str(entry.get("hn") or ""),
        players=players,
        max_players=max_players,
        passworded=bool(entry.get("pa", False)),
        loading=True,
    )


class DirectoryFetcher:
    """Fetches the master list over HTTP with a local-file fallback.

    A shared ``httpx.AsyncClient`` may be passed in (tests use one with a
    ``MockTransport``); otherwise a short-lived client is opened per call.
    """

    def __init__(
        self,
        fallback_path: Optional[Path] = None,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.fallback_path = fallback_path
        self.timeout = timeout
        self._client = client

    async def _get(self, url: str) -> bytes:
        try:
            if self._client is not None:
                response = await self._client.get(url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(
                    follow_redirects=True,
                    timeout=httpx.Timeout(self.timeout),
                ) as client:
                    response = await client.get(url)
        except httpx.HTTPError as e:
            raise TransportFailure(f"failed to connect: {type(e).__name__}") from e

        if response.status_code != 200:
            raise TransportFailure(f"API returned status {response.status_code}")
        body = response.content
        if len(body) > MAX_BODY_BYTES:
            raise TransportFailure("API response too large")
        return body

    async def _get_entries(self, url: str) -> list:
        if not url:
            raise TransportFailure("URL cannot be empty")
        body = await self._get(url)
        try:
            data = orjson.loads(body)
        except orjson.JSONDecodeError as e:
            raise TransportFailure(f"failed to parse API response: {e}") from e
        if not isinstance(data, list):
            raise TransportFailure("API response is not a JSON array")
        return data

    async def fetch(self, url: str) -> list[ServerRecord]:
        """Fetch and decode the directory at ``url``.

        Raises:
            TransportFailure: network, status or decode problems.
            EmptyDirectory: no entry carried a usable address.
        """
        entries = await self._get_entries(url)
        records = _dedupe(
            [r for r in map(_record_from_entry, entries) if r is not None]
        )
        dropped = len(entries) - len(records)
        if dropped:
            logger.debug(f"Dropped {dropped} unusable or duplicate directory entries")
        if not records:
            raise EmptyDirectory("API returned zero servers")
        logger.info(f"Fetched {len(records)} servers from {url}")
        return records

    def load_fallback(self, path: Optional[Path] = None) -> list[ServerRecord]:
        """Read the local ``[{name, host, port}, ...]`` server file."""
        path = path or self.fallback_path
        if path is None:
            raise FileNotFoundError("no fallback file configured")
        raw = orjson.loads(Path(path).read_bytes())
        if not isinstance(raw, list):
            raise ValueError("fallback file is not a JSON array")

        records = []
        for entry in raw:
            if not isinstance(entry, dict) or not entry.get("host"):
                continue
            host = str(entry["host"]).strip()
            port = entry.get("port")
            try:
                port = DEFAULT_PORT if port in (None, "") else parse_port(str(port))
            except InvalidAddress as e:
                logger.debug(f"Dropping fallback entry {host!r}: {e}")
                continue
            records.append(
                ServerRecord(
                    host=host,
                    port=port,
                    name=str(entry.get("name") or ""),
                    loading=True,
                )
            )
        if not records:
            raise ValueError("fallback file lists no servers")
        return _dedupe(records)

    async def fetch_with_fallback(self, url: str) -> list[ServerRecord]:
        """Remote directory first, local file second.

        Raises:
            DirectoryUnavailable: both sources failed; carries the remote error.
        """
        try:
            return await self.fetch(url)
        except FetchError as remote_err:
            logger.warning(f"Master list fetch failed ({remote_err}), trying fallback")
            try:
                records = self.load_fallback()
            except (OSError, ValueError, TypeError, orjson.JSONDecodeError) as e:
                logger.error(f"Fallback server list unavailable: {e}")
                raise DirectoryUnavailable(str(remote_err), remote_err) from e
            logger.info(f"Loaded {len(records)} servers from fallback {self.fallback_path}")
            return records

    async def test_master(self, url: str) -> int:
        """Check that ``url`` serves a usable master list; returns its size."""
        entries = await self._get_entries(url)
        if not entries:
            raise EmptyDirectory("server list is empty (no servers returned)")
        first = entries[0]
        if not isinstance(first, dict) or not first.get("ip"):
            raise TransportFailure("invalid format: missing 'ip' field")
        return len(entries)
