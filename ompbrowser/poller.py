"""Continuous polling of the selected server."""

from __future__ import annotations

import asyncio
from contextlib import suppress
from datetime import datetime
from typing import Callable, Optional

from loguru import logger

from ompbrowser.events import PollResult
from ompbrowser.models import ServerKey, utcnow
from ompbrowser.probe import ProbeClient, backstop
from ompbrowser.query import PROBE_ERRORS


class SelectionPoller:
    """Polls at most one server at a time.

    Every :meth:`select` or :meth:`clear` bumps a generation counter and
    replaces the running task. Results carry the generation they were
    produced under; the consumer drops any whose generation is no longer
    current, so a stale tick can never land on a newer selection.

    A new selection waits ``debounce`` seconds before its first probe and
    then ticks every ``interval`` seconds at a fixed rate.
    """

    def __init__(
        self,
        probe: ProbeClient,
        submit: Callable[[PollResult], None],
        debounce: float = 0.5,
        interval: float = 1.0,
        timeout: float = 1.5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._probe = probe
        self._submit = submit
        self.debounce = debounce
        self.interval = interval
        self.timeout = timeout
        self._clock = clock
        self._generation = 0
        self._target: Optional[ServerKey] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def target(self) -> Optional[ServerKey]:
        return self._target

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def is_current(self, generation: int, key: ServerKey) -> bool:
        return generation == self._generation and key == self._target

    def select(self, key: ServerKey) -> bool:
        """Start polling ``key``. Returns False if it is already the target."""
        if key == self._target and self.active:
            return False
        self._cancel()
        self._generation += 1
        self._target = key
        self._task = asyncio.get_running_loop().create_task(
            self._run(key, self._generation)
        )
        logger.debug(f"Polling {key[0]}:{key[1]} (generation {self._generation})")
        return True

    def clear(self) -> None:
        self._cancel()
        self._generation += 1
        self._target = None

    async def stop(self) -> None:
        task = self._task
        self.clear()
        if task is not None:
            with suppress(asyncio.CancelledError):
                await task

    def _cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self, key: ServerKey, generation: int) -> None:
        await asyncio.sleep(self.debounce)
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while generation == self._generation:
            try:
                await self._tick(key, generation)
            except Exception:
                logger.exception(f"{key[0]}:{key[1]}: unexpected poll error")
            next_tick += self.interval
            await asyncio.sleep(max(0.0, next_tick - loop.time()))

    async def _tick(self, key: ServerKey, generation: int) -> None:
        host, port = key
        try:
            status = await asyncio.wait_for(
                self._probe.probe_status(host, port, self.timeout),
                backstop(self.timeout),
            )
        except PROBE_ERRORS as e:
            logger.debug(f"{host}:{port}: poll failed: {type(e).__name__}")
            return
        probed_at = self._clock()

        rules = None
        try:
            rules = await asyncio.wait_for(
                self._probe.probe_rules(host, port, self.timeout),
                backstop(self.timeout),
            )
        except PROBE_ERRORS as e:
            logger.debug(f"{host}:{port}: rules poll failed: {type(e).__name__}")

        players: list[str] = []
        try:
            players = await asyncio.wait_for(
                self._probe.probe_players(host, port, self.timeout),
                backstop(self.timeout),
            )
        except PROBE_ERRORS as e:
            logger.debug(f"{host}:{port}: players poll failed: {type(e).__name__}")

        if generation != self._generation:
            return
        self._submit(
            PollResult(
                generation=generation,
                key=key,
                status=status,
                probed_at=probed_at,
                rules=rules,
                players=list(players),
            )
        )
