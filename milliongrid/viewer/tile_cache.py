"""
tile_cache.py - Client-side viewport tile cache

Holds image bytes for grid cells at two resolutions (thumbnail and full)
and tracks their load state. It only ever caches what the server already
committed; an entry never means "occupied" on its own authority.

Key features:
- Explicit per-resource load states instead of load callbacks
- Idempotent ingestion: the same (cell, url) twice starts one load
- Full images are only loaded for cells that already have a thumbnail entry
- Two-tier eviction: cells in the viewport (+ margin) are pinned, everything
  else is reclaimed least-recently-used first once over the soft cap
- Loads that were superseded or evicted while in flight are discarded

Single-threaded: all methods must be called from the event loop thread.
"""

import asyncio
import itertools
import logging
from collections import OrderedDict
from enum import Enum
from typing import Callable, Optional

from milliongrid.utils.constants import GRID_W, GRID_H, CACHE_MAX_ENTRIES, KEEP_MARGIN
from milliongrid.utils.utils import Cell, Rect

log = logging.getLogger(__name__)


class ThumbState(Enum):
    UNREQUESTED = "unrequested"
    LOADING = "loading"
    READY = "ready"


class FullState(Enum):
    ABSENT = "absent"
    LOADING = "loading"
    READY = "ready"


class TileCacheEntry:
    __slots__ = ("cell", "thumb_state", "thumb_url", "thumb", "thumb_gen",
                 "full_state", "full_url", "full", "full_gen", "last_used")

    def __init__(self, cell: Cell):
        self.cell = cell
        self.thumb_state = ThumbState.UNREQUESTED
        self.thumb_url = None
        self.thumb = None
        self.thumb_gen = 0
        self.full_state = FullState.ABSENT
        self.full_url = None
        self.full = None
        self.full_gen = 0
        self.last_used = 0

    def __repr__(self):
        return (f"TileCacheEntry({self.cell.x},{self.cell.y} "
                f"thumb={self.thumb_state.value} full={self.full_state.value})")


class ViewportTileCache:
    """
    Per-session tile cache.

    Args:
        loader: ``async (url) -> bytes`` used for both resolutions.
        max_entries: Soft cap; eviction only runs above it.
        keep_margin: Cells around the viewport that are pinned as well.
    """

    def __init__(self, loader: Callable, max_entries: int = CACHE_MAX_ENTRIES,
                 keep_margin: int = KEEP_MARGIN, width: int = GRID_W, height: int = GRID_H):
        self._loader = loader
        self.max_entries = max_entries
        self.keep_margin = keep_margin
        self.width = width
        self.height = height

        # cell -> entry, ordered from least to most recently used
        self._entries: OrderedDict = OrderedDict()
        self._tick = itertools.count(1)
        self._gen = itertools.count(1)
        self._listeners = []
        self._tasks = set()

        # Statistics
        self._thumb_loads = 0
        self._full_loads = 0
        self._load_failures = 0
        self._discarded = 0
        self._evictions = 0

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def __len__(self):
        return len(self._entries)

    def __contains__(self, cell):
        return Cell(*cell) in self._entries

    def get(self, cell) -> Optional[TileCacheEntry]:
        return self._entries.get(Cell(*cell))

    def touch(self, cell) -> None:
        cell = Cell(*cell)
        e = self._entries.get(cell)
        if e is not None:
            e.last_used = next(self._tick)
            self._entries.move_to_end(cell)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ensure_thumbnail(self, cell, url: str) -> None:
        """Make sure the thumbnail at ``url`` is loaded or loading."""
        cell = Cell(*cell)
        e = self._entries.get(cell)
        if e is None:
            e = TileCacheEntry(cell)
            self._entries[cell] = e
            self._start_thumb(e, url)
        elif e.thumb_url != url:
            # Content replacement. Handles are content-derived, so this
            # should not happen, but the old full image is no longer valid.
            log.debug(f"Thumbnail URL changed for {cell}, reloading")
            e.full_state = FullState.ABSENT
            e.full = None
            e.full_url = None
            e.full_gen = next(self._gen)
            self._start_thumb(e, url)
        elif e.thumb_state is ThumbState.UNREQUESTED:
            # previous attempt failed
            self._start_thumb(e, url)
        self.touch(cell)

    def ensure_full(self, cell, url: Optional[str]) -> None:
        """Start loading the full image, unless it is loading or ready.

        No-op for cells without a thumbnail entry.
        """
        cell = Cell(*cell)
        e = self._entries.get(cell)
        if e is None or not url:
            return
        if e.full_state is not FullState.ABSENT:
            self.touch(cell)
            return
        e.full_url = url
        e.full_state = FullState.LOADING
        e.full_gen = gen = next(self._gen)
        self._full_loads += 1
        self._spawn(self._load_full(cell, url, gen))
        self.touch(cell)

    def set_full_url(self, cell, url: Optional[str]) -> None:
        """Remember the full-image URL without loading it."""
        e = self._entries.get(Cell(*cell))
        if e is not None and url and e.full_state is FullState.ABSENT:
            e.full_url = url

    def _start_thumb(self, e: TileCacheEntry, url: str) -> None:
        e.thumb_url = url
        e.thumb = None
        e.thumb_state = ThumbState.LOADING
        e.thumb_gen = gen = next(self._gen)
        self._thumb_loads += 1
        self._spawn(self._load_thumb(e.cell, url, gen))

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _load_thumb(self, cell: Cell, url: str, gen: int) -> None:
        try:
            data = await self._loader(url)
        except Exception as err:
            self._load_failures += 1
            e = self._entries.get(cell)
            if e is not None and e.thumb_gen == gen:
                e.thumb_state = ThumbState.UNREQUESTED
            log.warning(f"Thumbnail load failed for {cell} ({url}): {err}")
            return

        e = self._entries.get(cell)
        if e is None or e.thumb_gen != gen:
            self._discarded += 1
            log.debug(f"Discarding stale thumbnail load for {cell}")
            return
        e.thumb = data
        e.thumb_state = ThumbState.READY
        self.touch(cell)
        self._notify(cell)

    async def _load_full(self, cell: Cell, url: str, gen: int) -> None:
        try:
            data = await self._loader(url)
        except Exception as err:
            self._load_failures += 1
            e = self._entries.get(cell)
            if e is not None and e.full_gen == gen:
                e.full_state = FullState.ABSENT
            log.warning(f"Full image load failed for {cell} ({url}): {err}")
            return

        e = self._entries.get(cell)
        if e is None or e.full_gen != gen:
            self._discarded += 1
            log.debug(f"Discarding stale full image load for {cell}")
            return
        e.full = data
        e.full_state = FullState.READY
        self.touch(cell)
        self._notify(cell)

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def evict_outside(self, viewport_rect) -> int:
        """Trim the cache back to ``max_entries`` without touching the viewport.

        Cells inside ``viewport_rect`` expanded by ``keep_margin`` are pinned.
        The rest are evicted least-recently-used first. Returns the number of
        entries evicted; may leave the cache above the cap if the pinned set
        alone exceeds it.
        """
        excess = len(self._entries) - self.max_entries
        if excess <= 0:
            return 0

        keep = Rect(*viewport_rect).expand(self.keep_margin).clamp(self.width, self.height)
        victims = []
        for cell in self._entries:
            if len(victims) >= excess:
                break
            if not keep.contains(cell.x, cell.y):
                victims.append(cell)

        for cell in victims:
            del self._entries[cell]
        self._evictions += len(victims)

        if victims:
            log.debug(f"Tile cache evicted {len(victims)} entries ({len(self._entries)} left)")
        return len(victims)

    # ------------------------------------------------------------------
    # Notification
    # ------------------------------------------------------------------

    def subscribe(self, callback: Callable) -> Callable:
        """Call ``callback(cell)`` whenever a resource becomes ready.

        Returns a function that removes the subscription.
        """
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)
        return unsubscribe

    def _notify(self, cell: Cell) -> None:
        for cb in list(self._listeners):
            try:
                cb(cell)
            except Exception:
                log.exception(f"Tile cache listener failed for {cell}")

    async def drain(self) -> None:
        """Wait until every load started so far has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def stats(self) -> dict:
        return {
            "entries": len(self._entries),
            "thumb_loads": self._thumb_loads,
            "full_loads": self._full_loads,
            "load_failures": self._load_failures,
            "discarded": self._discarded,
            "evictions": self._evictions,
        }
