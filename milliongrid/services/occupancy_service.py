""" module to hold the occupancy store: one placed image per grid cell """

import os
import logging
import threading
from dataclasses import dataclass, asdict
from typing import List, Optional

from sqlalchemy import (
    create_engine, event, MetaData, Table, Column, Integer, BigInteger,
    Text, Index, select, insert, func
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from milliongrid.gridconfig import CFG
from milliongrid.utils.constants import GRID_W, GRID_H, RECENT_MIN, RECENT_MAX
from milliongrid.utils.errors import SlotTaken, PlacementCommitError
from milliongrid.utils.utils import Rect, clamp, now_ms

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Placement:
    x: int
    y: int
    caption: str
    created_at: int
    origin_address: str
    thumb_key: str
    orig_key: str

    def as_dict(self) -> dict:
        return asdict(self)


class OccupancyStore:
    """Durable mapping of grid cell to placement.

    The unique index on ``(x, y)`` is what guarantees a single winner when
    two requests race for the same cell. ``self._lock`` only serializes use
    of the shared SQLite connection.

    Read paths never raise: a storage fault is logged and the query answers
    empty. The write path raises.
    """

    db_name = "grid.db"

    def __init__(self, db_path: Optional[str] = None,
                 width: int = GRID_W, height: int = GRID_H):
        if db_path is None:
            data_dir = CFG.paths.data_dir
            os.makedirs(data_dir, exist_ok=True)
            db_path = os.path.join(data_dir, self.db_name)

        self.width = width
        self.height = height
        self.db_path = db_path

        if db_path == ":memory:":
            self.engine = create_engine(
                'sqlite://',
                connect_args={'check_same_thread': False},
                poolclass=StaticPool,
                echo=False
            )
        else:
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
            self.engine = create_engine(
                f'sqlite:///{db_path}',
                connect_args={'check_same_thread': False},
                pool_pre_ping=True,
                echo=False
            )
        event.listen(self.engine, "connect", _set_sqlite_pragmas)

        self.metadata = MetaData()
        self.slots_table = Table(
            'slots',
            self.metadata,
            Column('id', Integer, primary_key=True),
            Column('x', Integer, nullable=False),
            Column('y', Integer, nullable=False),
            Column('caption', Text),
            Column('created_at', BigInteger, nullable=False),
            Column('ip', Text),
            Column('thumb_key', Text, nullable=False),
            Column('orig_key', Text, nullable=False),
            Index('idx_slots_xy', 'x', 'y', unique=True),
            Index('created_at_idx', 'created_at', unique=True),
            Index('idx_slots_ip_created', 'ip', 'created_at'),
            Index('idx_slots_orig_key', 'orig_key'),
            Index('idx_slots_thumb_key', 'thumb_key'),
        )
        self.metadata.create_all(self.engine)

        self._lock = threading.RLock()
        self._stamp_lock = threading.Lock()
        self._last_created_at = self._max_created_at()
        log.info(f"OccupancyStore ready: {db_path} ({width}x{height})")

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def try_place(self, x: int, y: int, caption: str, origin_address: str,
                  thumb_key: str, orig_key: str) -> Placement:
        """Insert a placement if ``(x, y)`` is free.

        Raises SlotTaken when the cell is occupied and PlacementCommitError
        for any other failure to commit.
        """
        for _ in range(2):
            created_at = self._next_created_at()
            stmt = insert(self.slots_table).values(
                x=x,
                y=y,
                caption=caption,
                created_at=created_at,
                ip=origin_address,
                thumb_key=thumb_key,
                orig_key=orig_key,
            )
            try:
                with self._lock:
                    with self.engine.begin() as conn:
                        conn.execute(stmt)
            except IntegrityError as e:
                if self.is_occupied(x, y):
                    raise SlotTaken("Slot already taken") from e
                # Only created_at is left; someone else stamped the same ms
                log.warning(f"created_at collision at {created_at}, retrying")
                with self._stamp_lock:
                    self._last_created_at = max(self._last_created_at,
                                                self._max_created_at())
                continue
            except SQLAlchemyError as e:
                log.error(f"Placement commit failed for ({x}, {y}): {e}")
                raise PlacementCommitError(str(e)) from e

            log.debug(f"Placed ({x}, {y}) at {created_at}")
            return Placement(
                x=x, y=y, caption=caption, created_at=created_at,
                origin_address=origin_address,
                thumb_key=thumb_key, orig_key=orig_key,
            )

        raise PlacementCommitError(f"Could not assign a unique created_at for ({x}, {y})")

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def query_cell(self, x: int, y: int) -> Optional[Placement]:
        stmt = self._select().where(
            (self.slots_table.c.x == x) & (self.slots_table.c.y == y)
        )
        rows = self._safe_query(stmt)
        return self._to_placement(rows[0]) if rows else None

    def is_occupied(self, x: int, y: int) -> bool:
        stmt = select(self.slots_table.c.id).where(
            (self.slots_table.c.x == x) & (self.slots_table.c.y == y)
        )
        return bool(self._safe_query(stmt))

    def query_rect(self, x0: int, y0: int, x1: int, y1: int) -> List[Placement]:
        """All placements inside the inclusive rectangle.

        Reversed bounds give an empty list. Bounds outside the grid are
        clamped before the read.
        """
        rect = Rect(x0, y0, x1, y1)
        if rect.is_empty:
            return []
        rect = rect.clamp(self.width, self.height)
        if rect.is_empty:
            return []
        stmt = self._select().where(
            self.slots_table.c.x.between(rect.x0, rect.x1) &
            self.slots_table.c.y.between(rect.y0, rect.y1)
        )
        return [self._to_placement(r) for r in self._safe_query(stmt)]

    def query_recent(self, limit: int) -> List[Placement]:
        """The ``limit`` newest placements, oldest first."""
        limit = clamp(int(limit), RECENT_MIN, RECENT_MAX)
        stmt = (
            self._select()
            .order_by(self.slots_table.c.created_at.desc())
            .limit(limit)
        )
        rows = self._safe_query(stmt)
        return [self._to_placement(r) for r in reversed(rows)]

    def count_since(self, origin_address: str, window_ms: int) -> int:
        """Number of placements from ``origin_address`` in the last window."""
        stmt = (
            select(func.count())
            .select_from(self.slots_table)
            .where(
                (self.slots_table.c.ip == origin_address) &
                (self.slots_table.c.created_at >= now_ms() - window_ms)
            )
        )
        rows = self._safe_query(stmt)
        return int(rows[0][0]) if rows and rows[0][0] is not None else 0

    def references(self, key: str) -> bool:
        """True if any placement points at asset ``key``.

        Answers True when the store can not be read, so callers never delete
        an asset on a guess.
        """
        c = self.slots_table.c
        stmt = select(c.id).where((c.orig_key == key) | (c.thumb_key == key)).limit(1)
        try:
            with self._lock:
                with self.engine.connect() as conn:
                    return conn.execute(stmt).first() is not None
        except SQLAlchemyError as e:
            log.error(f"Reference check failed for {key}: {e}")
            return True

    def count(self) -> int:
        stmt = select(func.count()).select_from(self.slots_table)
        rows = self._safe_query(stmt)
        return int(rows[0][0]) if rows else 0

    def close(self):
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _select(self):
        c = self.slots_table.c
        return select(c.x, c.y, c.caption, c.created_at, c.ip, c.thumb_key, c.orig_key)

    def _safe_query(self, stmt) -> list:
        try:
            with self._lock:
                with self.engine.connect() as conn:
                    return conn.execute(stmt).fetchall()
        except SQLAlchemyError as e:
            log.error(f"Occupancy query failed: {e}")
            return []

    @staticmethod
    def _to_placement(row) -> Placement:
        return Placement(
            x=row.x,
            y=row.y,
            caption=row.caption or "",
            created_at=int(row.created_at),
            origin_address=row.ip or "",
            thumb_key=row.thumb_key,
            orig_key=row.orig_key,
        )

    def _max_created_at(self) -> int:
        stmt = select(func.max(self.slots_table.c.created_at))
        rows = self._safe_query(stmt)
        return int(rows[0][0]) if rows and rows[0][0] is not None else 0

    def _next_created_at(self) -> int:
        with self._stamp_lock:
            stamp = max(now_ms(), self._last_created_at + 1)
            self._last_created_at = stamp
            return stamp


def _set_sqlite_pragmas(dbapi_conn, conn_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute("PRAGMA synchronous = NORMAL")
    cursor.execute("PRAGMA busy_timeout = 5000")
    cursor.execute("PRAGMA temp_store = MEMORY")
    cursor.close()
