"""
fetch_scheduler.py - Viewport fetch scheduling with adaptive backoff

Polls the grid for the visible rectangle plus a prefetch halo whenever the
viewport changes, debounced by ``base_delay + backoff``.

State machine:
    IDLE -> SCHEDULED -> IN_FLIGHT -> IDLE            (success, backoff reset)
                                   -> SCHEDULED        (429, backoff doubled)
                                   -> SCHEDULED        (other error, fixed delay)

A newer viewport only replaces the pending timer. A fetch already in flight
is left to finish and its rows are still ingested: cache entries are keyed
by absolute cell, so a stale answer costs bandwidth, not correctness.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

from milliongrid.utils.constants import (
    PREFETCH_HALO, BASE_DELAY_MS, MIN_BACKOFF_MS, MAX_BACKOFF_MS,
    ERROR_DELAY_MS, NETWORK_ERROR_DELAY_MS
)
from milliongrid.utils.utils import Cell
from milliongrid.viewer.grid_client import GridFetchError, RateLimited, NetworkError

log = logging.getLogger(__name__)


class SchedulerState(Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    IN_FLIGHT = "in-flight"


class ViewportFetchScheduler:
    """
    Args:
        fetch_rows: ``async (rect) -> list[dict]`` returning minimal rows.
        cache: ViewportTileCache the rows are ingested into.
        halo: Extra cells fetched around the visible rect.
    """

    def __init__(self, fetch_rows: Callable, cache, halo: int = PREFETCH_HALO,
                 base_delay_ms: int = BASE_DELAY_MS,
                 min_backoff_ms: int = MIN_BACKOFF_MS,
                 max_backoff_ms: int = MAX_BACKOFF_MS,
                 error_delay_ms: int = ERROR_DELAY_MS,
                 network_error_delay_ms: int = NETWORK_ERROR_DELAY_MS):
        self._fetch_rows = fetch_rows
        self.cache = cache
        self.halo = halo
        self.base_delay_ms = base_delay_ms
        self.min_backoff_ms = min_backoff_ms
        self.max_backoff_ms = max_backoff_ms
        self.error_delay_ms = error_delay_ms
        self.network_error_delay_ms = network_error_delay_ms

        self.backoff_ms = 0
        self.last_delay_ms: Optional[int] = None
        self._viewport = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._in_flight = set()
        self._listeners = []
        self._closed = False

        # Statistics
        self._fetches = 0
        self._rate_limited = 0
        self._errors = 0

    @property
    def state(self) -> SchedulerState:
        if self._in_flight:
            return SchedulerState.IN_FLIGHT
        if self._timer is not None:
            return SchedulerState.SCHEDULED
        return SchedulerState.IDLE

    @property
    def viewport(self):
        return self._viewport

    def viewport_changed(self, viewport) -> None:
        """Record the latest pan/zoom/resize and debounce a fetch for it."""
        self._viewport = viewport
        self.schedule()

    def schedule(self, extra_ms: int = 0) -> None:
        if self._closed:
            return
        if self._timer is not None:
            self._timer.cancel()
        delay = self.base_delay_ms + self.backoff_ms + extra_ms
        self.last_delay_ms = delay
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay / 1000.0, self._fire)

    def _fire(self) -> None:
        self._timer = None
        if self._viewport is None or self._closed:
            return
        task = asyncio.get_running_loop().create_task(self._run(self._viewport))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def fetch_now(self) -> None:
        """Fetch the current viewport immediately, skipping the debounce."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._viewport is None:
            return
        task = asyncio.get_running_loop().create_task(self._run(self._viewport))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        await task

    async def _run(self, viewport) -> None:
        rect = viewport.fetch_rect(self.halo)
        try:
            rows = await self._fetch_rows(rect)
        except RateLimited:
            self._rate_limited += 1
            self.backoff_ms = min(self.max_backoff_ms,
                                  max(self.min_backoff_ms, self.backoff_ms * 2))
            log.warning(f"grid fetch rate-limited (429). Backing off {self.backoff_ms} ms")
            self.schedule()
            return
        except NetworkError as e:
            self._errors += 1
            log.warning(f"grid fetch network error: {e}")
            self.schedule(self.network_error_delay_ms)
            return
        except GridFetchError as e:
            self._errors += 1
            log.warning(f"grid fetch failed: {e}")
            self.schedule(self.error_delay_ms)
            return
        except Exception:
            self._errors += 1
            log.exception("grid fetch error")
            self.schedule(self.network_error_delay_ms)
            return

        self.backoff_ms = 0
        self._fetches += 1
        self.ingest(rows)
        # Evict against the newest viewport, which may have moved on
        current = self._viewport or viewport
        self.cache.evict_outside(current.visible_rect())
        self._notify(current)

    def ingest(self, rows) -> int:
        count = 0
        for row in rows:
            try:
                cell = Cell(int(row["x"]), int(row["y"]))
                url = row["thumbUrl"]
            except (KeyError, TypeError, ValueError):
                log.debug(f"Skipping malformed row {row!r}")
                continue
            if not url:
                continue
            self.cache.ensure_thumbnail(cell, url)
            count += 1
        return count

    def subscribe(self, callback: Callable) -> Callable:
        """Call ``callback(viewport)`` after every successful ingest."""
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)
        return unsubscribe

    def _notify(self, viewport) -> None:
        for cb in list(self._listeners):
            try:
                cb(viewport)
            except Exception:
                log.exception("fetch scheduler listener failed")

    def close(self) -> None:
        self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    @property
    def stats(self) -> dict:
        return {
            "state": self.state.value,
            "backoff_ms": self.backoff_ms,
            "fetches": self._fetches,
            "rate_limited": self._rate_limited,
            "errors": self._errors,
        }
