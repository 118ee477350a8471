""" module to hold the level-of-detail controller (thumbnail vs full image) """

import asyncio
import logging
import time
from enum import Enum
from typing import Callable, List, Optional, Tuple

from milliongrid.utils.constants import LOD_SWITCH_PX, LOD_SWITCH_PX_MOBILE, LOD_RETRY_MS
from milliongrid.utils.utils import Cell, Rect
from milliongrid.viewer.tile_cache import ThumbState, FullState

log = logging.getLogger(__name__)


class Resolution(Enum):
    THUMBNAIL = "thumbnail"
    FULL = "full"


def switch_px_for(mobile: bool, desktop_px: int = LOD_SWITCH_PX,
                  mobile_px: int = LOD_SWITCH_PX_MOBILE) -> int:
    """Mobile waits for a larger on-screen tile before loading originals."""
    return mobile_px if mobile else desktop_px


class LODController:
    """Chooses, per visible cell, which resolution to draw and when to fetch
    the full image.

    Full images are requested only once a cell is drawn at least
    ``switch_px`` CSS pixels wide. If the cache does not know the full-image
    URL yet, one single-cell lookup is made for it (never more than one in
    flight per cell). A cell whose load or lookup was started is not asked
    for again until ``retry_ms`` has passed or ``forget`` is called, so a
    missing or failing original does not cost a request every frame.

    Args:
        cache: ViewportTileCache.
        lookup: ``async (x, y) -> Optional[str]`` returning the original URL.
        switch_px: On-screen tile size at which full images take over.
        retry_ms: Cooldown before a cell that is still without a full image
            is requested again.
    """

    def __init__(self, cache, lookup: Callable, switch_px: int = LOD_SWITCH_PX,
                 retry_ms: int = LOD_RETRY_MS, clock: Callable = time.monotonic):
        self.cache = cache
        self._lookup = lookup
        self.switch_px = switch_px
        self.retry_ms = retry_ms
        self._clock = clock
        self._retry_at = {}  # cell -> clock time it may be requested again
        self._lookups_in_flight = set()
        self._tasks = set()
        self._lookups = 0

    def wants_full(self, tile_pixels: float) -> bool:
        return tile_pixels >= self.switch_px

    def update(self, visible_rect, tile_pixels: float) -> int:
        """Request full images for visible cells that need them.

        Returns the number of cells for which a load or lookup was started.
        """
        if not self.wants_full(tile_pixels):
            return 0
        started = 0
        now = self._clock()
        rect = Rect(*visible_rect)
        for cell in rect.cells():
            e = self.cache.get(cell)
            if e is None or e.full_state is not FullState.ABSENT:
                continue
            if cell in self._lookups_in_flight or now < self._retry_at.get(cell, now):
                continue
            self._retry_at[cell] = now + self.retry_ms / 1000.0
            if e.full_url:
                self.cache.ensure_full(cell, e.full_url)
            else:
                self._lookups_in_flight.add(cell)
                self._spawn(self._lookup_full(cell))
            started += 1
        self._prune(now)
        return started

    def forget(self, cell) -> None:
        """Let ``cell`` be requested again on the next update."""
        self._retry_at.pop(Cell(*cell), None)

    def _prune(self, now: float) -> None:
        if len(self._retry_at) <= len(self.cache):
            return
        for cell, at in list(self._retry_at.items()):
            if at <= now or cell not in self.cache:
                del self._retry_at[cell]

    def pick(self, cell, tile_pixels: float) -> Optional[Tuple[Resolution, bytes]]:
        """Highest resolution that is ready to draw, or None."""
        e = self.cache.get(cell)
        if e is None:
            return None
        if self.wants_full(tile_pixels) and e.full_state is FullState.READY:
            return Resolution.FULL, e.full
        if e.thumb_state is ThumbState.READY:
            return Resolution.THUMBNAIL, e.thumb
        return None

    def plan(self, visible_rect, tile_pixels: float) -> List[Tuple[Cell, Resolution, bytes]]:
        """Everything drawable in the rect. Drawn cells count as used."""
        self.update(visible_rect, tile_pixels)
        drawables = []
        for cell in Rect(*visible_rect).cells():
            picked = self.pick(cell, tile_pixels)
            if picked is None:
                continue
            resolution, handle = picked
            drawables.append((cell, resolution, handle))
            self.cache.touch(cell)
        return drawables

    async def _lookup_full(self, cell: Cell) -> None:
        self._lookups += 1
        try:
            url = await self._lookup(cell.x, cell.y)
        except Exception as e:
            log.warning(f"Full image lookup failed for {cell}: {e}")
            return
        finally:
            self._lookups_in_flight.discard(cell)
        if url:
            self.cache.ensure_full(cell, url)
        else:
            log.debug(f"No original for {cell}")

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def stats(self) -> dict:
        return {"lookups": self._lookups, "lookups_in_flight": len(self._lookups_in_flight),
                "cooling_down": len(self._retry_at)}
