""" recent-uploads list shown next to the grid """

import logging
from collections import deque
from typing import List

from milliongrid.utils.constants import FEED_SIZE

log = logging.getLogger(__name__)


class RecentFeed:
    """Newest-first list of placements, capped at ``size`` rows.

    Seeded once from ``/api/feed`` and then grown from live ``new_image``
    events. A placement already listed (same cell and createdAt) is not
    added twice.
    """

    def __init__(self, size: int = FEED_SIZE):
        self.size = size
        self._rows = deque(maxlen=size)

    def __len__(self):
        return len(self._rows)

    @staticmethod
    def _key(row):
        return row.get("x"), row.get("y"), row.get("createdAt")

    def load(self, rows: List[dict]) -> None:
        """Replace the contents with server rows given oldest first."""
        self._rows.clear()
        for row in rows[-self.size:]:
            self._rows.appendleft(row)

    def prepend(self, row: dict) -> bool:
        key = self._key(row)
        if any(self._key(r) == key for r in self._rows):
            return False
        self._rows.appendleft(row)
        return True

    @property
    def rows(self) -> List[dict]:
        return list(self._rows)
