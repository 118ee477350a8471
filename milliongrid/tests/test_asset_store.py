"""
test_asset_store.py - Unit tests for AssetStore and asset key naming
"""

import os

import pytest

from milliongrid.utils.asset_store import AssetStore, asset_keys, extension_for
from milliongrid.utils.errors import AssetStoreError
from milliongrid.utils.utils import content_hash


@pytest.fixture
def assets(asset_dir):
    return AssetStore(asset_dir, "/assets")


class TestKeys:

    def test_asset_keys_content_derived(self):
        orig, thumb = asset_keys(b"abc", "image/png")
        digest = content_hash(b"abc")
        assert orig == f"{digest}.orig.png"
        assert thumb == f"{digest}.thumb.webp"

    def test_same_bytes_same_keys(self):
        assert asset_keys(b"abc", "image/png") == asset_keys(b"abc", "image/png")
        assert asset_keys(b"abc", "image/png") != asset_keys(b"abd", "image/png")

    def test_unknown_type_extension(self):
        assert extension_for("application/x-not-a-real-type") == "bin"
        assert extension_for("") == "bin"


class TestAssetStore:

    def test_put_creates_once(self, assets):
        key, _ = asset_keys(b"data", "image/png")
        assert assets.put(key, b"data") is True
        assert assets.put(key, b"data") is False
        assert assets.read(key) == b"data"
        assert assets.stats["writes"] == 1

    def test_url(self, assets):
        key, _ = asset_keys(b"data", "image/png")
        assert assets.url(key) == f"/assets/{key}"

    def test_rejects_bad_keys(self, assets):
        with pytest.raises(ValueError):
            assets.path("../etc/passwd")
        with pytest.raises(ValueError):
            assets.put("notahash.orig.png", b"x")

    def test_delete(self, assets):
        key, _ = asset_keys(b"data", "image/png")
        assets.put(key, b"data")
        assets.delete(key)
        assert not assets.exists(key)
        # second delete is silent
        assets.delete(key)
        assert assets.stats["deletes"] == 1

    def test_failed_write_leaves_nothing(self, assets, monkeypatch):
        key, _ = asset_keys(b"data", "image/png")

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", broken_replace)
        with pytest.raises(AssetStoreError):
            assets.put(key, b"data")
        assert os.listdir(assets.root) == []
