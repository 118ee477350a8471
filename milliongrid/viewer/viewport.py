""" viewport geometry: what part of the grid is on screen """

import math
from dataclasses import dataclass

from milliongrid.utils.constants import GRID_W, GRID_H, SLOT_SIZE
from milliongrid.utils.utils import Rect


@dataclass(frozen=True)
class Viewport:
    """A pan/zoom state.

    ``origin_x``/``origin_y`` are the grid coordinates at the top-left of the
    screen, ``scale`` maps one logical slot (``slot_size`` px) to CSS pixels,
    and ``width_px``/``height_px`` are the canvas size in CSS pixels.
    """
    origin_x: float
    origin_y: float
    scale: float
    width_px: float
    height_px: float
    slot_size: int = SLOT_SIZE
    grid_w: int = GRID_W
    grid_h: int = GRID_H

    @property
    def tile_pixels(self) -> float:
        """On-screen size of one cell in CSS pixels."""
        return self.slot_size * self.scale

    def visible_rect(self) -> Rect:
        tile = self.tile_pixels
        cols = math.ceil(self.width_px / tile) + 2
        rows = math.ceil(self.height_px / tile) + 2
        x0 = max(0, math.floor(self.origin_x))
        y0 = max(0, math.floor(self.origin_y))
        x1 = min(self.grid_w - 1, x0 + cols)
        y1 = min(self.grid_h - 1, y0 + rows)
        return Rect(x0, y0, x1, y1)

    def fetch_rect(self, halo: int) -> Rect:
        """Visible rect plus a prefetch halo, clamped to the grid."""
        return self.visible_rect().expand(halo).clamp(self.grid_w, self.grid_h)

    def panned(self, dx: float, dy: float) -> "Viewport":
        return Viewport(self.origin_x + dx, self.origin_y + dy, self.scale,
                        self.width_px, self.height_px, self.slot_size,
                        self.grid_w, self.grid_h)

    def zoomed(self, scale: float) -> "Viewport":
        return Viewport(self.origin_x, self.origin_y, scale,
                        self.width_px, self.height_px, self.slot_size,
                        self.grid_w, self.grid_h)
