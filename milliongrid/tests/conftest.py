"""
Shared fixtures for the grid tests.
"""

import os
import sys
import tempfile
from io import BytesIO

import pytest
from PIL import Image

# Add repository root to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))


def make_png(width=64, height=48, color=(200, 30, 30)):
    img = Image.new("RGB", (width, height), color)
    out = BytesIO()
    img.save(out, format="PNG")
    return out.getvalue()


@pytest.fixture
def png():
    """Factory for small PNG payloads. Different colors give different bytes."""
    return make_png


@pytest.fixture
def tmp_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def asset_dir(tmp_dir):
    return os.path.join(tmp_dir, "assets")


@pytest.fixture
def store():
    from milliongrid.services.occupancy_service import OccupancyStore
    s = OccupancyStore(":memory:")
    yield s
    s.close()


def _place(store, x, y, caption="", origin="10.0.0.1", digest=None):
    """Insert a placement with well-formed asset keys."""
    digest = digest or f"{x:020x}{y:020x}"
    return store.try_place(x, y, caption, origin,
                           f"{digest}.thumb.webp", f"{digest}.orig.png")


@pytest.fixture
def place():
    return _place
