""" module to hold utility functions used throughout the project """
import hashlib
import math
import time
from typing import NamedTuple


class Cell(NamedTuple):
    x: int
    y: int


class Rect(NamedTuple):
    """Inclusive cell rectangle. Reversed bounds describe an empty rect."""
    x0: int
    y0: int
    x1: int
    y1: int

    @property
    def is_empty(self) -> bool:
        return self.x1 < self.x0 or self.y1 < self.y0

    def contains(self, x: int, y: int) -> bool:
        return self.x0 <= x <= self.x1 and self.y0 <= y <= self.y1

    def expand(self, n: int) -> "Rect":
        return Rect(self.x0 - n, self.y0 - n, self.x1 + n, self.y1 + n)

    def clamp(self, width: int, height: int) -> "Rect":
        return Rect(
            max(0, self.x0), max(0, self.y0),
            min(width - 1, self.x1), min(height - 1, self.y1),
        )

    def cells(self):
        for x in range(self.x0, self.x1 + 1):
            for y in range(self.y0, self.y1 + 1):
                yield Cell(x, y)


def clamp(value, low, high):
    return max(low, min(high, value))


def now_ms() -> int:
    return int(time.time() * 1000)


def content_hash(data: bytes) -> str:
    """ sha1 hex digest used to name stored assets """
    return hashlib.sha1(data).hexdigest()


def parse_int_param(value) -> int:
    """Parse an integer query value.

    Accepts plain integers and integral exponent forms such as ``1e2``.
    Raises ValueError for anything else, including decimals like ``1.5``
    or ``2.0``.
    """
    if isinstance(value, bool):
        raise ValueError(f"not an integer: {value!r}")
    if isinstance(value, int):
        return value
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        pass
    if "." in text or "e" not in text.lower():
        raise ValueError(f"not an integer: {value!r}")
    f = float(text)
    if not math.isfinite(f) or not f.is_integer():
        raise ValueError(f"not an integer: {value!r}")
    return int(f)
