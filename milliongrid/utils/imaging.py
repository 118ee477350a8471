""" module to hold image probing and thumbnail encoding """

import logging
from io import BytesIO
from typing import Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from milliongrid.utils.constants import THUMB_SIZE, THUMB_FORMAT, THUMB_QUALITY
from milliongrid.utils.errors import WrongType, DimensionsExceeded

log = logging.getLogger(__name__)


def probe_dimensions(data: bytes) -> Tuple[int, int]:
    """Read width and height from the image header without decoding pixels."""
    try:
        with Image.open(BytesIO(data)) as img:
            return img.size
    except Image.DecompressionBombError as e:
        raise DimensionsExceeded("Image too large") from e
    except (UnidentifiedImageError, OSError) as e:
        raise WrongType("Invalid file type") from e


def make_thumbnail(data: bytes, size: int = THUMB_SIZE,
                   fmt: str = THUMB_FORMAT, quality: int = THUMB_QUALITY) -> bytes:
    """Cover-crop the image to ``size`` x ``size`` and re-encode it."""
    with Image.open(BytesIO(data)) as img:
        img = ImageOps.exif_transpose(img)
        if img.mode not in ("RGB", "RGBA"):
            img = img.convert("RGBA" if "A" in img.getbands() else "RGB")
        thumb = ImageOps.fit(img, (size, size), method=Image.Resampling.LANCZOS)
        out = BytesIO()
        thumb.save(out, format=fmt.upper(), quality=quality)
    return out.getvalue()
