"""
test_upload_service.py - Unit tests for the upload commit boundary

Covers input rejection before any write, targeted and random placement,
the slot-taken path and random redraw, daily quota, and rollback of newly
created assets that no placement references.
"""

import asyncio
import os
import random
import time

import pytest

from milliongrid.services.query_service import SpatialQueryService
from milliongrid.services.upload_service import UploadRequest, UploadService
from milliongrid.utils.allocator import SlotAllocator
from milliongrid.utils.asset_store import AssetStore, asset_keys
from milliongrid.utils.errors import (
    NoFile, WrongType, TooLarge, DimensionsExceeded, InvalidCoordinates,
    CaptionTooLong, SlotTaken, DailyCapExceeded, StorageFailure,
    PlacementCommitError, AssetStoreError
)


class FakeChannel:
    def __init__(self):
        self.published = []

    def publish(self, payload):
        self.published.append(payload)


@pytest.fixture
def assets(asset_dir):
    return AssetStore(asset_dir, "/assets")


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def service(store, assets, channel):
    allocator = SlotAllocator(store, 1000, 1000, rng=random.Random(7))
    return UploadService(store, allocator, assets, SpatialQueryService(store, assets), channel)


def commit(service, data, content_type="image/png", **kw):
    return asyncio.run(service.commit(UploadRequest(data=data, content_type=content_type, **kw)))


class TestRejections:

    def test_no_file(self, service):
        with pytest.raises(NoFile):
            commit(service, None)

    def test_wrong_mime(self, service, png):
        with pytest.raises(WrongType):
            commit(service, png(), content_type="text/plain")

    def test_undecodable_image(self, service):
        with pytest.raises(WrongType):
            commit(service, b"not really a png", content_type="image/png")

    def test_too_large(self, store, assets, png):
        allocator = SlotAllocator(store, 1000, 1000)
        service = UploadService(store, allocator, assets,
                                SpatialQueryService(store, assets), max_bytes=10)
        with pytest.raises(TooLarge):
            commit(service, png())

    def test_caption_too_long(self, service, png):
        with pytest.raises(CaptionTooLong):
            commit(service, png(), caption="x" * 121)

    def test_half_coordinates(self, service, png):
        with pytest.raises(InvalidCoordinates):
            commit(service, png(), x="5")

    def test_non_integer_coordinates(self, service, png):
        with pytest.raises(InvalidCoordinates):
            commit(service, png(), x="abc", y="1")

    def test_dimensions_exceeded_writes_nothing(self, service, store, assets, channel, png):
        with pytest.raises(DimensionsExceeded):
            commit(service, png(4100, 10))
        assert os.listdir(assets.root) == []
        assert store.count() == 0
        assert channel.published == []


class TestPlacement:

    def test_targeted_upload(self, service, store, assets, channel, png):
        data = png()
        slot = commit(service, data, x="7", y="13", caption="hi", origin_address="1.2.3.4")

        orig_key, thumb_key = asset_keys(data, "image/png")
        assert slot["x"] == 7 and slot["y"] == 13
        assert slot["caption"] == "hi"
        assert slot["thumbUrl"] == f"/assets/{thumb_key}"
        assert slot["originalUrl"] == f"/assets/{orig_key}"
        assert assets.exists(orig_key) and assets.exists(thumb_key)
        assert store.query_cell(7, 13).origin_address == "1.2.3.4"
        assert channel.published == [slot]

    def test_targeted_out_of_range_is_clamped(self, service, png):
        slot = commit(service, png(), x="5000", y="-3")
        assert (slot["x"], slot["y"]) == (999, 0)

    def test_random_upload_lands_somewhere(self, service, store, png):
        slot = commit(service, png())
        assert store.is_occupied(slot["x"], slot["y"])

    def test_taken_cell_rejected_before_writes(self, service, store, assets, channel, png):
        commit(service, png(color=(1, 2, 3)), x="7", y="13")
        files = sorted(os.listdir(assets.root))

        with pytest.raises(SlotTaken):
            commit(service, png(color=(9, 9, 9)), x="7", y="13")

        assert sorted(os.listdir(assets.root)) == files
        assert store.count() == 1
        assert len(channel.published) == 1

    def test_duplicate_content_in_other_cell(self, service, store, png):
        data = png()
        a = commit(service, data, x="1", y="1")
        b = commit(service, data, x="2", y="2")
        assert a["thumbUrl"] == b["thumbUrl"]
        assert store.count() == 2

    def test_daily_cap(self, store, assets, png):
        allocator = SlotAllocator(store, 1000, 1000, rng=random.Random(3))
        service = UploadService(store, allocator, assets,
                                SpatialQueryService(store, assets), daily_cap=2)
        commit(service, png(), origin_address="1.2.3.4")
        commit(service, png(), origin_address="1.2.3.4")
        with pytest.raises(DailyCapExceeded):
            commit(service, png(), origin_address="1.2.3.4")
        # other origins are unaffected
        commit(service, png(), origin_address="5.6.7.8")


class TestRollback:

    def test_lost_race_removes_new_assets(self, service, store, assets, monkeypatch, png):
        def lose(*args, **kwargs):
            raise SlotTaken("Slot already taken")

        monkeypatch.setattr(store, "try_place", lose)
        with pytest.raises(SlotTaken):
            commit(service, png(), x="4", y="4")
        assert os.listdir(assets.root) == []

    def test_commit_failure_keeps_existing_assets(self, service, store, assets, monkeypatch, png):
        data = png()
        commit(service, data, x="1", y="1")
        orig_key, thumb_key = asset_keys(data, "image/png")

        def fail(*args, **kwargs):
            raise PlacementCommitError("database is locked")

        monkeypatch.setattr(store, "try_place", fail)
        with pytest.raises(StorageFailure):
            commit(service, data, x="2", y="2")

        # the bytes still back the placement at (1, 1)
        assert assets.exists(orig_key) and assets.exists(thumb_key)
        assert not store.is_occupied(2, 2)

    def test_asset_write_failure(self, service, store, assets, channel, monkeypatch, png):
        real_put = assets.put

        def put(key, data):
            if ".thumb." in key:
                raise AssetStoreError("disk full")
            return real_put(key, data)

        monkeypatch.setattr(assets, "put", put)
        with pytest.raises(StorageFailure):
            commit(service, png(), x="3", y="3")

        assert os.listdir(assets.root) == []
        assert store.count() == 0
        assert channel.published == []

    def test_rollback_keeps_assets_another_placement_uses(self, service, store, assets,
                                                          monkeypatch, png):
        """Same bytes committed elsewhere while this attempt was losing its cell."""
        data = png(color=(5, 6, 7))
        orig_key, thumb_key = asset_keys(data, "image/png")
        real_place = store.try_place

        def other_commit_then_lose(x, y, caption, origin, thumb, orig):
            real_place(9, 9, "", "5.6.7.8", thumb, orig)
            raise SlotTaken("Slot already taken")

        monkeypatch.setattr(store, "try_place", other_commit_then_lose)
        with pytest.raises(SlotTaken):
            commit(service, data, x="4", y="4")

        assert store.query_cell(9, 9).orig_key == orig_key
        assert assets.exists(orig_key) and assets.exists(thumb_key)

    def test_concurrent_same_bytes_loser_keeps_winner_assets(self, service, store, assets,
                                                             monkeypatch, png):
        data = png(color=(8, 8, 8))
        orig_key, thumb_key = asset_keys(data, "image/png")
        real_place = store.try_place

        def place(x, y, *args):
            if (x, y) == (4, 4):
                time.sleep(0.05)
                raise SlotTaken("Slot already taken")
            return real_place(x, y, *args)

        monkeypatch.setattr(store, "try_place", place)

        async def go():
            return await asyncio.gather(
                service.commit(UploadRequest(data=data, content_type="image/png", x="4", y="4")),
                service.commit(UploadRequest(data=data, content_type="image/png", x="9", y="9")),
                return_exceptions=True,
            )

        lost, won = asyncio.run(go())
        assert isinstance(lost, SlotTaken)
        assert (won["x"], won["y"]) == (9, 9)
        assert assets.exists(orig_key) and assets.exists(thumb_key)
        assert service._content_locks == {}


class TestRandomRedraw:

    def test_lost_random_cell_is_redrawn(self, service, store, monkeypatch, png):
        real_place = store.try_place
        tried = []

        def place(x, y, *args):
            tried.append((x, y))
            if len(tried) == 1:
                raise SlotTaken("Slot already taken")
            return real_place(x, y, *args)

        monkeypatch.setattr(store, "try_place", place)
        slot = commit(service, png())

        assert len(tried) == 2
        assert (slot["x"], slot["y"]) == tried[1]
        assert store.count() == 1

    def test_redraws_are_bounded(self, service, assets, monkeypatch, png):
        tried = []

        def always_taken(x, y, *args):
            tried.append((x, y))
            raise SlotTaken("Slot already taken")

        monkeypatch.setattr(service.store, "try_place", always_taken)
        with pytest.raises(SlotTaken):
            commit(service, png())

        assert len(tried) == 1 + service.random_retries
        assert os.listdir(assets.root) == []

    def test_targeted_cell_is_not_redrawn(self, service, monkeypatch, png):
        tried = []

        def always_taken(x, y, *args):
            tried.append((x, y))
            raise SlotTaken("Slot already taken")

        monkeypatch.setattr(service.store, "try_place", always_taken)
        with pytest.raises(SlotTaken):
            commit(service, png(), x="4", y="4")
        assert tried == [(4, 4)]
