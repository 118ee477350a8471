""" module to hold the slot allocator """

import logging
import random
from typing import Optional, Tuple

from milliongrid.utils.constants import GRID_W, GRID_H, SAMPLING_BUDGET
from milliongrid.utils.errors import InvalidCoordinates, NoFreeSlot
from milliongrid.utils.utils import Cell, clamp, parse_int_param

log = logging.getLogger(__name__)


class SlotAllocator:
    """Picks the cell an upload will try to occupy.

    A requested cell is clamped into the grid and returned as is; whether it
    is free is decided by the store's atomic insert, not here. Without a
    request, random cells are drawn until a free one turns up or the
    sampling budget runs out. On a sparse grid the first draw almost always
    hits, so no free list is kept.
    """

    def __init__(self, store, width: int = GRID_W, height: int = GRID_H,
                 sampling_budget: int = SAMPLING_BUDGET, rng: Optional[random.Random] = None):
        self.store = store
        self.width = width
        self.height = height
        self.sampling_budget = sampling_budget
        self.rng = rng or random.Random()

    def allocate(self, requested: Optional[Tuple] = None) -> Cell:
        if requested is not None:
            return self.clamp_requested(*requested)
        return self.pick_random()

    def clamp_requested(self, x, y) -> Cell:
        try:
            gx = parse_int_param(x)
            gy = parse_int_param(y)
        except (TypeError, ValueError) as e:
            raise InvalidCoordinates("Invalid coordinates") from e
        return Cell(clamp(gx, 0, self.width - 1), clamp(gy, 0, self.height - 1))

    def pick_random(self) -> Cell:
        for attempt in range(self.sampling_budget):
            x = self.rng.randrange(self.width)
            y = self.rng.randrange(self.height)
            if not self.store.is_occupied(x, y):
                if attempt > 0:
                    log.debug(f"Random slot found after {attempt + 1} draws")
                return Cell(x, y)
        log.warning(f"No free slot after {self.sampling_budget} draws")
        raise NoFreeSlot("No free slots found")
