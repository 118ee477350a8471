"""
asset_store.py - Content-addressed blob store for uploaded images

Assets are named from the SHA-1 of the original upload plus a role suffix
(``<hash>.orig.<ext>``, ``<hash>.thumb.webp``), so a key never changes
meaning once written and URLs can be cached forever. Identical uploads map
to the same keys and share the stored bytes.

Writes are atomic (temp file + ``os.replace``) so a reader never sees a
partially written asset.
"""

import logging
import mimetypes
import os
import re
import threading
from typing import Tuple
from urllib.parse import quote

from milliongrid.utils.constants import THUMB_FORMAT
from milliongrid.utils.errors import AssetStoreError
from milliongrid.utils.utils import content_hash

log = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^[0-9a-f]{40}\.(orig|thumb)\.[a-z0-9]+$")


def extension_for(content_type: str) -> str:
    """File extension for a mime type, without the dot. ``bin`` if unknown."""
    ext = mimetypes.guess_extension(content_type or "", strict=False)
    if not ext:
        return "bin"
    return ext.lstrip(".").lower()


def asset_keys(data: bytes, content_type: str) -> Tuple[str, str]:
    """Return ``(orig_key, thumb_key)`` for an upload."""
    digest = content_hash(data)
    return (
        f"{digest}.orig.{extension_for(content_type)}",
        f"{digest}.thumb.{THUMB_FORMAT}",
    )


class AssetStore:
    """
    Local filesystem blob store.

    Thread Safety:
        ``put`` is safe to call from worker threads. Two writers of the same
        key write identical bytes, so the last ``os.replace`` wins harmlessly.
    """

    def __init__(self, root: str, public_base: str = "/assets"):
        self._root = root
        self._public_base = public_base.rstrip("/")
        self._lock = threading.Lock()
        self._writes = 0
        self._deletes = 0
        os.makedirs(self._root, exist_ok=True)
        log.info(f"AssetStore initialized: {self._root} (public={self._public_base})")

    @property
    def root(self) -> str:
        return self._root

    def path(self, key: str) -> str:
        if not _KEY_RE.match(key):
            raise ValueError(f"Invalid asset key: {key!r}")
        return os.path.join(self._root, key)

    def url(self, key: str) -> str:
        return f"{self._public_base}/{quote(key)}"

    def exists(self, key: str) -> bool:
        return os.path.exists(self.path(key))

    def put(self, key: str, data: bytes) -> bool:
        """Store ``data`` under ``key``.

        Returns True if this call created the asset, False if it already
        existed. Raises AssetStoreError if the write fails.
        """
        path = self.path(key)
        if os.path.exists(path):
            log.debug(f"Asset {key} already stored")
            return False

        tmp = path + f".tmp.{os.getpid()}.{threading.get_ident()}"
        try:
            with open(tmp, "wb") as f:
                f.write(data)
            os.replace(tmp, path)
        except OSError as e:
            try:
                os.remove(tmp)
            except OSError:
                pass
            raise AssetStoreError(f"Failed to store {key}: {e}") from e

        with self._lock:
            self._writes += 1
        log.debug(f"Asset STORE: {key} ({len(data)} bytes)")
        return True

    def read(self, key: str) -> bytes:
        with open(self.path(key), "rb") as f:
            return f.read()

    def delete(self, key: str) -> None:
        """Best-effort delete. Failures are logged, never raised."""
        try:
            os.remove(self.path(key))
            with self._lock:
                self._deletes += 1
            log.debug(f"Asset DELETE: {key}")
        except FileNotFoundError:
            pass
        except (OSError, ValueError) as e:
            log.warning(f"Failed to delete asset {key}: {e}")

    @property
    def stats(self) -> dict:
        with self._lock:
            return {"writes": self._writes, "deletes": self._deletes}
