""" module to hold the spatial query service and its row projections """

import logging
from typing import List

from milliongrid.utils.constants import RECENT_DEFAULT

log = logging.getLogger(__name__)


class SpatialQueryService:
    """Answers cell, rectangle and recency queries over the occupancy store.

    Rectangle rows use the minimal projection (cell and thumbnail URL only).
    Cell and recency rows use the full projection. The submitting address is
    never projected.
    """

    def __init__(self, store, assets):
        self.store = store
        self.assets = assets

    def minimal(self, placement) -> dict:
        return {
            "x": placement.x,
            "y": placement.y,
            "thumbUrl": self.assets.url(placement.thumb_key),
        }

    def full(self, placement) -> dict:
        return {
            **self.minimal(placement),
            "originalUrl": self.assets.url(placement.orig_key),
            "caption": placement.caption,
            "createdAt": placement.created_at,
        }

    def cell(self, x: int, y: int) -> List[dict]:
        placement = self.store.query_cell(x, y)
        return [self.full(placement)] if placement else []

    def rect(self, x0: int, y0: int, x1: int, y1: int) -> List[dict]:
        rows = [self.minimal(p) for p in self.store.query_rect(x0, y0, x1, y1)]
        log.debug(f"rect ({x0},{y0})-({x1},{y1}): {len(rows)} rows")
        return rows

    def recent(self, limit: int = RECENT_DEFAULT) -> List[dict]:
        return [self.full(p) for p in self.store.query_recent(limit)]
