"""Server query capability consumed by the query pool and the poller.

The engine only depends on :class:`ProbeClient`. :class:`SampQueryProbe`
is the production implementation backed by the ``samp-query`` library,
which speaks the SA-MP/open.mp UDP query protocol on trio. Each exchange
runs in its own trio loop on a thread from the probe's own executor, so
a full query cycle never waits behind the default executor's small pool
and the asyncio side stays responsive.
"""

from __future__ import annotations

import asyncio
import struct
from concurrent.futures import ThreadPoolExecutor
from typing import Awaitable, Callable, Protocol, TypeVar

import trio
from loguru import logger
from samp_query import Client

from ompbrowser.errors import ProbeFailure
from ompbrowser.models import StatusReply

T = TypeVar("T")

# Replies that do not match the wire format surface as one of these.
DECODE_ERRORS = (ValueError, EOFError, IndexError, struct.error, AssertionError)

# The optional ping may use at most this share of the status timeout and
# must give up before the last PING_MARGIN share of it.
PING_SHARE = 0.5
PING_MARGIN = 0.1


def backstop(timeout: float) -> float:
    """Outer bound for a call that enforces ``timeout`` itself."""
    return timeout * 2


class ProbeClient(Protocol):
    """Idempotent, individually time-boxed server queries.

    Every method raises :class:`ProbeFailure` when the server does not
    answer within ``timeout`` seconds or answers with garbage.
    """

    async def probe_status(self, host: str, port: int, timeout: float) -> StatusReply:
        ...

    async def probe_rules(self, host: str, port: int, timeout: float) -> dict[str, str]:
        ...

    async def probe_players(self, host: str, port: int, timeout: float) -> list[str]:
        ...


class SampQueryProbe:
    """:class:`ProbeClient` over ``samp_query.Client``.

    ``max_workers`` caps how many exchanges run at once; size it to the
    query pool's concurrency plus one for the selection poller.
    """

    def __init__(self, max_workers: int = 65):
        self.max_workers = max(1, max_workers)
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="samp-query"
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    async def _run(
        self,
        host: str,
        port: int,
        timeout: float,
        exchange: Callable[[Client, float], Awaitable[T]],
    ) -> T:
        async def _trio_main() -> T:
            with trio.fail_after(timeout):
                client = Client(ip=host, port=port)
                return await exchange(client, timeout)

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, trio.run, _trio_main)
        except trio.TooSlowError as e:
            raise ProbeFailure(f"{host}:{port} timed out after {timeout}s") from e
        except OSError as e:
            logger.debug(f"{host}:{port} query error: {type(e).__name__}: {e}")
            raise ProbeFailure(f"{host}:{port}: {e}") from e
        except DECODE_ERRORS as e:
            logger.debug(f"{host}:{port} malformed reply: {type(e).__name__}: {e}")
            raise ProbeFailure(f"{host}:{port}: malformed reply") from e

    async def probe_status(self, host: str, port: int, timeout: float) -> StatusReply:
        async def exchange(client: Client, timeout: float) -> StatusReply:
            info = await client.info()
            # ping is optional; 0 means unknown
            ping = 0.0
            give_up = min(
                trio.current_time() + timeout * PING_SHARE,
                trio.current_effective_deadline() - timeout * PING_MARGIN,
            )
            with trio.move_on_at(give_up):
                try:
                    ping = await client.ping()
                except (OSError, trio.TooSlowError, *DECODE_ERRORS) as e:
                    logger.debug(f"{host}:{port} ping failed: {type(e).__name__}")
            return StatusReply(
                name=info.name,
                players=info.players,
                max_players=info.max_players,
                passworded=bool(info.password),
                ping=float(ping),
            )

        return await self._run(host, port, timeout, exchange)

    async def probe_rules(self, host: str, port: int, timeout: float) -> dict[str, str]:
        async def exchange(client: Client, timeout: float) -> dict[str, str]:
            rule_list = await client.rules()
            return {rule.name: rule.value for rule in rule_list.rules}

        return await self._run(host, port, timeout, exchange)

    async def probe_players(self, host: str, port: int, timeout: float) -> list[str]:
        async def exchange(client: Client, timeout: float) -> list[str]:
            player_list = await client.players()
            return [player.name for player in player_list.players]

        return await self._run(host, port, timeout, exchange)
