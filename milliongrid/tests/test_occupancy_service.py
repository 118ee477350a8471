"""
test_occupancy_service.py - Unit tests for OccupancyStore

Covers:
- Single winner per cell, including concurrent inserts
- Rectangle queries (reversed bounds, clamping, empty grid)
- Recency ordering and unique created_at
- Per-origin counting for the daily quota
- Read paths degrading to empty results on storage faults
"""

import os
import threading

import pytest
from sqlalchemy.exc import OperationalError

from milliongrid.services.occupancy_service import OccupancyStore
from milliongrid.utils.errors import SlotTaken


class TestPlacement:

    def test_place_and_query_cell(self, store, place):
        p = place(store, 7, 13, caption="hello")
        assert (p.x, p.y, p.caption) == (7, 13, "hello")

        got = store.query_cell(7, 13)
        assert got == p
        assert store.is_occupied(7, 13)
        assert not store.is_occupied(13, 7)

    def test_second_place_same_cell_is_taken(self, store, place):
        place(store, 7, 13)
        with pytest.raises(SlotTaken):
            place(store, 7, 13, digest="f" * 40)
        assert store.count() == 1
        assert store.query_cell(7, 13).thumb_key.startswith("0")

    def test_concurrent_inserts_single_winner(self, tmp_dir, place):
        """Many threads race for one cell; exactly one wins."""
        s = OccupancyStore(os.path.join(tmp_dir, "grid.db"))
        wins, losses = [], []
        barrier = threading.Barrier(8)

        def worker(i):
            barrier.wait()
            try:
                place(s, 3, 3, digest=f"{i:040x}")
                wins.append(i)
            except SlotTaken:
                losses.append(i)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(wins) == 1
        assert len(losses) == 7
        assert s.count() == 1
        s.close()

    def test_created_at_strictly_increasing(self, store, place):
        stamps = [place(store, i, 0).created_at for i in range(20)]
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == 20

    def test_created_at_continues_after_reopen(self, tmp_dir, place):
        path = os.path.join(tmp_dir, "grid.db")
        s = OccupancyStore(path)
        last = place(s, 1, 1).created_at
        s.close()

        s = OccupancyStore(path)
        assert place(s, 2, 2).created_at > last
        s.close()


class TestRectQuery:

    def test_empty_grid_full_rect(self, store, place):
        assert store.query_rect(0, 0, 999, 999) == []

    def test_rect_inclusive_bounds(self, store, place):
        for x, y in [(0, 0), (5, 5), (10, 10), (11, 10)]:
            place(store, x, y)
        cells = sorted((p.x, p.y) for p in store.query_rect(0, 0, 10, 10))
        assert cells == [(0, 0), (5, 5), (10, 10)]

    def test_reversed_bounds_empty(self, store, place):
        place(store, 5, 5)
        assert store.query_rect(10, 0, 0, 10) == []
        assert store.query_rect(0, 10, 10, 0) == []

    def test_out_of_grid_bounds_clamped(self, store, place):
        place(store, 0, 0)
        place(store, 999, 999)
        cells = sorted((p.x, p.y) for p in store.query_rect(-50, -50, 5000, 5000))
        assert cells == [(0, 0), (999, 999)]


class TestRecent:

    def test_recent_newest_n_oldest_first(self, store, place):
        placed = [place(store, i, i) for i in range(5)]
        recent = store.query_recent(3)
        assert [(p.x, p.y) for p in recent] == [(2, 2), (3, 3), (4, 4)]
        assert [p.created_at for p in recent] == sorted(p.created_at for p in placed[2:])

    def test_recent_limit_clamped(self, store, place):
        for i in range(3):
            place(store, i, 0)
        assert len(store.query_recent(0)) == 1
        assert len(store.query_recent(10_000)) == 3


class TestCountSince:

    def test_counts_only_origin(self, store, place):
        place(store, 1, 1, origin="1.2.3.4")
        place(store, 2, 2, origin="1.2.3.4")
        place(store, 3, 3, origin="5.6.7.8")
        assert store.count_since("1.2.3.4", 24 * 60 * 60 * 1000) == 2
        assert store.count_since("5.6.7.8", 24 * 60 * 60 * 1000) == 1
        assert store.count_since("9.9.9.9", 24 * 60 * 60 * 1000) == 0


class TestReferences:

    def test_references_either_key(self, store, place):
        p = place(store, 3, 4, digest="a" * 40)
        assert store.references(p.orig_key)
        assert store.references(p.thumb_key)
        assert not store.references("b" * 40 + ".orig.png")


class _BrokenEngine:
    def connect(self):
        raise OperationalError("SELECT", {}, Exception("disk I/O error"))

    def dispose(self):
        pass


class TestDegradedReads:

    def test_reads_answer_empty_on_fault(self, store, monkeypatch, place):
        place(store, 1, 1)
        monkeypatch.setattr(store, "engine", _BrokenEngine())

        assert store.query_cell(1, 1) is None
        assert store.query_rect(0, 0, 10, 10) == []
        assert store.query_recent(10) == []
        assert store.count_since("10.0.0.1", 1000) == 0
        assert not store.is_occupied(1, 1)

    def test_references_assumes_used_on_fault(self, store, monkeypatch):
        monkeypatch.setattr(store, "engine", _BrokenEngine())
        assert store.references("c" * 40 + ".orig.png")
