"""
session.py - One viewer's connection to the grid

Wires the HTTP client, the tile cache, the level-of-detail controller, the
fetch scheduler, the recent feed and the live push subscription together.
A UI layer only has to call ``set_viewport`` on pan/zoom/resize and draw
whatever ``frame`` returns when ``on_redraw`` fires.
"""

import logging
from typing import Callable, Optional

from milliongrid.gridconfig import CFG
from milliongrid.viewer.feed import RecentFeed
from milliongrid.viewer.fetch_scheduler import ViewportFetchScheduler
from milliongrid.viewer.grid_client import GridClient, GridFetchError, LiveFeed
from milliongrid.viewer.lod import LODController, switch_px_for
from milliongrid.viewer.tile_cache import ViewportTileCache
from milliongrid.viewer.viewport import Viewport

log = logging.getLogger(__name__)


class GridViewerSession:

    def __init__(self, cfg=CFG, client: Optional[GridClient] = None,
                 live: Optional[LiveFeed] = None,
                 on_redraw: Optional[Callable] = None):
        vcfg = cfg.viewer
        self.server_url = vcfg.server_url
        self.client = client or GridClient(self.server_url)
        self.width = int(cfg.grid.width)
        self.height = int(cfg.grid.height)
        self.slot_size = int(cfg.grid.slot_size)

        self.cache = ViewportTileCache(
            self.client.fetch_asset,
            max_entries=int(vcfg.cache_max_entries),
            keep_margin=int(vcfg.keep_margin),
            width=self.width,
            height=self.height,
        )
        self.lod = LODController(
            self.cache,
            self.client.original_url,
            switch_px_for(bool(vcfg.mobile), int(vcfg.lod_switch_px),
                          int(vcfg.lod_switch_px_mobile)),
            retry_ms=int(vcfg.lod_retry_ms),
        )
        self.scheduler = ViewportFetchScheduler(
            self.client.fetch_grid,
            self.cache,
            halo=int(vcfg.prefetch_halo),
            base_delay_ms=int(vcfg.base_delay_ms),
            min_backoff_ms=int(vcfg.min_backoff_ms),
            max_backoff_ms=int(vcfg.max_backoff_ms),
            error_delay_ms=int(vcfg.error_delay_ms),
            network_error_delay_ms=int(vcfg.network_error_delay_ms),
        )
        self.feed = RecentFeed(int(vcfg.feed_size))
        self.live = live or LiveFeed(self.server_url, self.on_new_image, self.on_reconnect)
        self.viewport: Optional[Viewport] = None
        self._on_redraw = on_redraw

        self.cache.subscribe(lambda cell: self.redraw())
        self.scheduler.subscribe(lambda vp: self.redraw())

    async def start(self) -> None:
        """Read the grid shape and the feed, then open the live subscription."""
        try:
            grid = await self.client.fetch_config()
            self.width = int(grid.get("w", self.width))
            self.height = int(grid.get("h", self.height))
            self.slot_size = int(grid.get("slotSize", self.slot_size))
            self.cache.width = self.width
            self.cache.height = self.height
        except GridFetchError as e:
            log.warning(f"Could not read grid config, using defaults: {e}")
        try:
            self.feed.load(await self.client.fetch_feed(self.feed.size))
        except GridFetchError as e:
            log.warning(f"Could not load recent feed: {e}")
        await self.live.start()

    def set_viewport(self, origin_x: float, origin_y: float, scale: float,
                     width_px: float, height_px: float) -> Viewport:
        self.viewport = Viewport(origin_x, origin_y, scale, width_px, height_px,
                                 self.slot_size, self.width, self.height)
        self.scheduler.viewport_changed(self.viewport)
        return self.viewport

    def frame(self):
        """Drawables for the current viewport: ``[(cell, resolution, bytes)]``."""
        if self.viewport is None:
            return []
        return self.lod.plan(self.viewport.visible_rect(), self.viewport.tile_pixels)

    def on_new_image(self, row: dict) -> None:
        try:
            cell = (int(row["x"]), int(row["y"]))
        except (KeyError, TypeError, ValueError):
            log.debug(f"Ignoring new image without a cell: {row!r}")
            return
        self.cache.ensure_thumbnail(cell, row["thumbUrl"])
        self.cache.set_full_url(cell, row.get("originalUrl"))
        self.lod.forget(cell)
        self.feed.prepend(row)
        self.redraw()

    def on_reconnect(self) -> None:
        # Events missed while disconnected are not replayed
        if self.viewport is not None:
            self.scheduler.schedule()

    def redraw(self) -> None:
        if self._on_redraw is not None:
            self._on_redraw()

    async def close(self) -> None:
        self.scheduler.close()
        try:
            await self.live.stop()
        except Exception as e:
            log.debug(f"live feed stop failed: {e}")
        await self.cache.drain()
        await self.lod.drain()
        await self.client.aclose()
