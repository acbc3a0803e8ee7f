"""The directory engine: single owner of the server snapshot.

All state changes funnel through one asyncio queue (the inbox). The query
pool and the selection poller only ever submit commands to it; the
dispatcher task applies them one at a time and tells the view sink what
changed. Synchronous operations (``select``, ``set_search``, ...) run on the
same loop, so nothing else writes to the snapshot concurrently.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Coroutine, Optional

from loguru import logger

from ompbrowser.cache import ResultCache, merge_stale
from ompbrowser.config import Settings
from ompbrowser.directory import DirectoryFetcher
from ompbrowser.errors import CacheIOFailure, DirectoryUnavailable
from ompbrowser.events import (
    Command,
    PingHistoryChanged,
    PlayersChanged,
    PollResult,
    ProbeOutcome,
    ProgressChanged,
    ProgressReport,
    RowChanged,
    RulesChanged,
    SelectionCleared,
    SnapshotReplaced,
    StatusChanged,
    ViewChanged,
    ViewEvent,
    ViewSink,
)
from ompbrowser.models import ServerKey, ServerRecord, utcnow
from ompbrowser.pipeline import VERSION_TAGS, SortMode, build_view, describe_filters
from ompbrowser.poller import SelectionPoller
from ompbrowser.probe import ProbeClient
from ompbrowser.query import BoundedQueryPool, PoolStats


class DirectoryEngine:
    def __init__(
        self,
        settings: Settings,
        probe: ProbeClient,
        sink: ViewSink,
        fetcher: Optional[DirectoryFetcher] = None,
        cache: Optional[ResultCache] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self._sink = sink
        self._fetcher = fetcher or DirectoryFetcher(
            settings.fallback_path, timeout=settings.fetch_timeout
        )
        self._cache = cache or ResultCache(
            settings.cache_path,
            ttl=timedelta(minutes=settings.cache_ttl_minutes),
            clock=clock,
        )
        self._pool = BoundedQueryPool(
            probe,
            concurrency=settings.concurrency,
            probe_timeout=settings.probe_timeout,
            deadline=settings.cycle_deadline,
            skip_window=timedelta(hours=settings.skip_window_hours),
            clock=clock,
        )
        self._poller = SelectionPoller(
            probe,
            self._submit,
            debounce=settings.debounce,
            interval=settings.poll_interval,
            timeout=settings.query_timeout,
            clock=clock,
        )

        self._records: list[ServerRecord] = []
        self._index: dict[ServerKey, ServerRecord] = {}
        self._visible: list[ServerRecord] = []
        self._visible_index: dict[ServerKey, int] = {}
        self._search = settings.last_search
        self._filters: set[str] = set()
        self._sort_mode = SortMode.NONE
        self._selected: Optional[ServerRecord] = None
        self._ping_history: deque[int] = deque(maxlen=settings.history_size)

        self._inbox: asyncio.Queue[Command] = asyncio.Queue()
        self._dispatcher: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()
        self._cycle = 0
        self._refreshing = False
        self._view_dirty = False
        self._last_rebuild = 0.0
        self._flush_handle: Optional[asyncio.TimerHandle] = None

    # Read-only accessors

    @property
    def records(self) -> tuple[ServerRecord, ...]:
        return tuple(self._records)

    @property
    def visible(self) -> tuple[ServerRecord, ...]:
        return tuple(self._visible)

    @property
    def selected(self) -> Optional[ServerRecord]:
        return self._selected

    @property
    def sort_mode(self) -> SortMode:
        return self._sort_mode

    @property
    def filters(self) -> frozenset[str]:
        return frozenset(self._filters)

    @property
    def search(self) -> str:
        return self._search

    @property
    def refreshing(self) -> bool:
        return self._refreshing

    @property
    def ping_history(self) -> tuple[int, ...]:
        return tuple(self._ping_history)

    @property
    def fetcher(self) -> DirectoryFetcher:
        return self._fetcher

    # Lifecycle

    async def start(self, initial_refresh: bool = True) -> None:
        """Load the cache, then schedule a non-forced refresh."""
        self._ensure_dispatcher()
        cycle = self._cycle
        cached = await asyncio.to_thread(self._cache.load)
        if cached and (self._cycle != cycle or self._records):
            logger.debug("Directory loaded during cache read, discarding cached snapshot")
            cached = []
        if cached:
            self._submit(SnapshotReplaced(cycle=cycle, records=tuple(cached)))
            await self._inbox.join()
        if cached and self._cycle == cycle:
            self._status(f"Loaded {len(cached)} servers from cache")
            logger.info(f"Loaded {len(cached)} servers from cache")
        if initial_refresh:
            self._spawn(self._delayed_refresh())

    async def stop(self) -> None:
        await self._poller.stop()
        self._pool.cancel_stragglers()
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        tasks = list(self._tasks)
        if self._dispatcher is not None:
            tasks.append(self._dispatcher)
            self._dispatcher = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._refreshing = False

    async def _delayed_refresh(self) -> None:
        await asyncio.sleep(self.settings.startup_delay)
        self.refresh(force_refresh=False)

    # Refresh

    def refresh(self, force_refresh: bool = False) -> bool:
        """Start a refresh cycle in the background.

        Returns False, and does nothing, if a cycle is already running.
        """
        if self._refreshing:
            logger.debug("Refresh already in progress, ignoring request")
            return False
        self._refreshing = True
        self._spawn(self._refresh_cycle(force_refresh))
        return True

    async def run_refresh(self, force_refresh: bool = False) -> bool:
        """Run a refresh cycle to completion, cache save included."""
        if self._refreshing:
            return False
        self._refreshing = True
        await self._refresh_cycle(force_refresh)
        return True

    async def _refresh_cycle(self, force_refresh: bool) -> None:
        try:
            self._ensure_dispatcher()
            self._status("Refreshing servers...")
            try:
                records = await self._fetcher.fetch_with_fallback(
                    self.settings.master_server
                )
            except DirectoryUnavailable as e:
                self._status(f"Server list error: {e}")
                return

            merge_stale(records, self._records)
            cycle = self._cycle + 1
            self._submit(SnapshotReplaced(cycle=cycle, records=tuple(records)))
            await self._inbox.join()
            self._status(f"Loaded {len(records)} servers")

            stats = await self._pool.run(records, force_refresh, self._submit, cycle)
            await self._inbox.join()
            self._recompute_view()
            self._finish_cycle(stats)
            await self._save_cache()
        finally:
            self._refreshing = False

    def _finish_cycle(self, stats: PoolStats) -> None:
        summary = (
            f"Skipped {stats.skipped}, updated {stats.completed} of {stats.total} servers"
        )
        if stats.failed or stats.abandoned:
            summary += f" ({stats.failed} failed, {stats.abandoned} timed out)"
        self._emit(
            ProgressChanged(
                completed=stats.completed,
                skipped=stats.skipped,
                failed=stats.failed + stats.abandoned,
                total=stats.total,
            )
        )
        self._status(summary)
        logger.info(summary)

    async def _save_cache(self) -> None:
        snapshot = [replace(record) for record in self._records]
        try:
            await asyncio.to_thread(self._cache.save, snapshot)
        except CacheIOFailure as e:
            logger.error(f"Failed to save cache: {e}")
            self._status(f"Failed to save cache: {e}")

    # View operations

    def select(self, index: int) -> None:
        """Select the visible row at ``index``; out of range clears."""
        if index < 0 or index >= len(self._visible):
            self._clear_selection()
            return

        self._ensure_dispatcher()
        record = self._visible[index]
        if self._poller.select(record.key):
            self._ping_history.clear()
            self._emit(PingHistoryChanged(samples=()))
        self._selected = record

    def _clear_selection(self) -> None:
        if self._selected is None and self._poller.target is None:
            return
        self._poller.clear()
        self._selected = None
        self._ping_history.clear()
        self._emit(SelectionCleared())

    def set_search(self, text: str) -> None:
        self._search = text
        self._recompute_view()

    def toggle_filter(self, tag: str) -> bool:
        """Flip a version filter; returns whether it is now active."""
        if tag not in VERSION_TAGS:
            raise ValueError(f"unknown version filter {tag!r}")
        if tag in self._filters:
            self._filters.discard(tag)
        else:
            self._filters.add(tag)
        self._recompute_view()
        return tag in self._filters

    def cycle_sort(self) -> SortMode:
        self._sort_mode = self._sort_mode.next()
        self._recompute_view()
        return self._sort_mode

    # Inbox

    def _submit(self, command: Command) -> None:
        self._inbox.put_nowait(command)

    def _ensure_dispatcher(self) -> None:
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.get_running_loop().create_task(self._dispatch())

    async def _dispatch(self) -> None:
        while True:
            command = await self._inbox.get()
            try:
                self._apply(command)
            except Exception as e:
                logger.exception(f"Failed to apply {type(command).__name__}: {e}")
            finally:
                self._inbox.task_done()

    def _apply(self, command: Command) -> None:
        if isinstance(command, SnapshotReplaced):
            self._apply_snapshot(command)
        elif isinstance(command, ProbeOutcome):
            self._apply_outcome(command)
        elif isinstance(command, ProgressReport):
            if command.cycle == self._cycle:
                self._emit(
                    ProgressChanged(
                        completed=command.completed,
                        skipped=command.skipped,
                        failed=command.failed,
                        total=command.total,
                    )
                )
                self._status(
                    f"Skipped {command.skipped}, updated {command.completed} "
                    f"of {command.total} servers"
                )
        elif isinstance(command, PollResult):
            self._apply_poll(command)

    def _apply_snapshot(self, command: SnapshotReplaced) -> None:
        if command.cycle < self._cycle:
            return
        self._cycle = command.cycle
        self._records = list(command.records)
        self._index = {record.key: record for record in self._records}
        if self._selected is not None:
            self._selected = self._index.get(self._selected.key, self._selected)
        self._recompute_view()

    def _apply_outcome(self, outcome: ProbeOutcome) -> None:
        if outcome.cycle != self._cycle:
            return
        record = self._index.get(outcome.key)
        if record is None:
            return
        if outcome.skipped:
            record.loading = False
        else:
            record.apply_status(outcome.status, outcome.probed_at)
            if outcome.rules is not None:
                record.apply_rules(outcome.rules)
        self._record_changed(record)

    def _apply_poll(self, result: PollResult) -> None:
        if not self._poller.is_current(result.generation, result.key):
            return
        record = self._index.get(result.key)
        if record is None and self._selected is not None:
            if self._selected.key == result.key:
                record = self._selected
        if record is None:
            return

        record.apply_status(result.status, result.probed_at)
        if result.rules is not None:
            record.apply_rules(result.rules)
        self._ping_history.append(record.ping_ms)

        self._emit(PingHistoryChanged(samples=tuple(self._ping_history)))
        self._emit(PlayersChanged(names=tuple(result.players), count=record.players))
        self._emit(RulesChanged(rules=dict(result.rules or {})))
        if record.key in self._index:
            self._record_changed(record)

    # View

    def _record_changed(self, record: ServerRecord) -> None:
        if self._sort_mode is SortMode.NONE and not self._filters and not self._search.strip():
            index = self._visible_index.get(record.key)
            if index is not None:
                self._emit(RowChanged(index=index, record=record))
            return
        self._view_dirty = True
        loop = asyncio.get_running_loop()
        wait = self.settings.view_rebuild_interval - (loop.time() - self._last_rebuild)
        if wait <= 0:
            self._recompute_view()
        elif self._flush_handle is None:
            self._flush_handle = loop.call_later(wait, self._flush_view)

    def _flush_view(self) -> None:
        self._flush_handle = None
        if self._view_dirty:
            self._recompute_view()

    def _recompute_view(self) -> None:
        self._visible = build_view(
            self._records, self._search, self._filters, self._sort_mode
        )
        self._visible_index = {
            record.key: index for index, record in enumerate(self._visible)
        }
        self._view_dirty = False
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        try:
            self._last_rebuild = asyncio.get_running_loop().time()
        except RuntimeError:
            self._last_rebuild = 0.0
        if self._selected is not None and self._selected.key not in self._visible_index:
            self._clear_selection()
        self._emit(
            ViewChanged(
                rows=tuple(self._visible),
                sort_mode=self._sort_mode,
                filters=frozenset(self._filters),
                search=self._search,
                filter_text=describe_filters(self._search, self._filters),
            )
        )

    # Helpers

    def _emit(self, event: ViewEvent) -> None:
        self._sink.handle_engine_event(event)

    def _status(self, text: str) -> None:
        self._emit(StatusChanged(text=text))

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Engine task failed: {task.exception()!r}")
