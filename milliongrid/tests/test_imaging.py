"""
test_imaging.py - Unit tests for header probing and thumbnail encoding
"""

from io import BytesIO

import pytest
from PIL import Image

from milliongrid.utils.errors import WrongType
from milliongrid.utils.imaging import probe_dimensions, make_thumbnail


def test_probe_dimensions(png):
    assert probe_dimensions(png(123, 45)) == (123, 45)


def test_probe_rejects_non_image():
    with pytest.raises(WrongType):
        probe_dimensions(b"this is not an image")


def test_thumbnail_is_square_webp(png):
    thumb = make_thumbnail(png(300, 100), size=40)
    with Image.open(BytesIO(thumb)) as img:
        assert img.format == "WEBP"
        assert img.size == (40, 40)


def test_thumbnail_handles_palette_images():
    img = Image.new("P", (80, 80))
    out = BytesIO()
    img.save(out, format="GIF")
    thumb = make_thumbnail(out.getvalue(), size=40)
    with Image.open(BytesIO(thumb)) as t:
        assert t.size == (40, 40)
