"""Bounded-concurrency probing of a whole directory snapshot."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from loguru import logger

from ompbrowser.errors import ProbeFailure
from ompbrowser.events import Command, ProbeOutcome, ProgressReport
from ompbrowser.models import ServerRecord, utcnow
from ompbrowser.probe import ProbeClient, backstop

PROBE_ERRORS = (ProbeFailure, asyncio.TimeoutError, OSError)


@dataclass
class PoolStats:
    total: int
    completed: int = 0
    skipped: int = 0
    failed: int = 0
    abandoned: int = 0
    timed_out: bool = False

    @property
    def finished(self) -> int:
        return self.completed + self.skipped + self.failed


class BoundedQueryPool:
    """Fans a record list out to a fixed number of probe workers.

    Workers claim indices from one shared queue, so every index is handled
    exactly once. Outcomes and progress reports are handed to ``emit``; the
    pool never touches the records itself.

    Records updated within ``skip_window`` are skipped unless the cycle is
    forced. When ``deadline`` elapses workers stop claiming work; probes
    still in flight are left to finish on their own and their results are
    dropped.
    """

    def __init__(
        self,
        probe: ProbeClient,
        concurrency: int = 64,
        probe_timeout: float = 3.0,
        deadline: float = 10.0,
        skip_window: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ):
        self._probe = probe
        self.concurrency = max(1, concurrency)
        self.probe_timeout = probe_timeout
        self.deadline = deadline
        self.skip_window = skip_window
        self._clock = clock
        self._stragglers: set[asyncio.Task] = set()

    def should_skip(self, record: ServerRecord, force_refresh: bool) -> bool:
        if force_refresh or record.last_updated is None:
            return False
        return self._clock() - record.last_updated < self.skip_window

    async def _probe_record(
        self, cycle: int, index: int, record: ServerRecord
    ) -> Optional[ProbeOutcome]:
        host, port = record.key
        try:
            status = await asyncio.wait_for(
                self._probe.probe_status(host, port, self.probe_timeout),
                backstop(self.probe_timeout),
            )
        except PROBE_ERRORS as e:
            logger.debug(f"{record.address}: status probe failed: {type(e).__name__}")
            return None
        probed_at = self._clock()

        rules = None
        try:
            rules = await asyncio.wait_for(
                self._probe.probe_rules(host, port, self.probe_timeout),
                backstop(self.probe_timeout),
            )
        except PROBE_ERRORS as e:
            logger.debug(f"{record.address}: rules probe failed: {type(e).__name__}")

        return ProbeOutcome(
            cycle=cycle,
            index=index,
            key=record.key,
            skipped=False,
            status=status,
            rules=rules,
            probed_at=probed_at,
        )

    async def run(
        self,
        records: Sequence[ServerRecord],
        force_refresh: bool,
        emit: Callable[[Command], None],
        cycle: int = 0,
    ) -> PoolStats:
        """Probe ``records`` and return the cycle's counters.

        Returns once every worker finished or the deadline elapsed,
        whichever comes first.
        """
        total = len(records)
        stats = PoolStats(total=total)
        jobs: asyncio.Queue[int] = asyncio.Queue()
        for index in range(total):
            jobs.put_nowait(index)
        closed = False

        async def worker() -> None:
            while not closed:
                try:
                    index = jobs.get_nowait()
                except asyncio.QueueEmpty:
                    return
                record = records[index]

                if self.should_skip(record, force_refresh):
                    outcome = ProbeOutcome(
                        cycle=cycle, index=index, key=record.key, skipped=True
                    )
                else:
                    try:
                        outcome = await self._probe_record(cycle, index, record)
                    except Exception:
                        logger.exception(f"{record.address}: unexpected query error")
                        outcome = None

                if closed:
                    # deadline passed while this probe was in flight
                    return
                if outcome is None:
                    stats.failed += 1
                else:
                    if outcome.skipped:
                        stats.skipped += 1
                    else:
                        stats.completed += 1
                    emit(outcome)
                emit(
                    ProgressReport(
                        cycle=cycle,
                        completed=stats.completed,
                        skipped=stats.skipped,
                        failed=stats.failed,
                        total=total,
                    )
                )

        workers = [
            asyncio.create_task(worker()) for _ in range(min(self.concurrency, total))
        ]
        if not workers:
            return stats

        done, pending = await asyncio.wait(workers, timeout=self.deadline)
        if pending:
            closed = True
            stats.timed_out = True
            stats.abandoned = total - stats.finished
            logger.info(
                f"Query cycle deadline reached after {self.deadline}s, "
                f"abandoning {stats.abandoned} servers"
            )
            for task in pending:
                self._stragglers.add(task)
                task.add_done_callback(self._stragglers.discard)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error(f"Query worker crashed: {task.exception()!r}")
        return stats

    def cancel_stragglers(self) -> None:
        for task in list(self._stragglers):
            task.cancel()
