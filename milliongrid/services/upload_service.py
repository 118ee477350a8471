"""
upload_service.py - Upload commit boundary

Turns raw upload bytes plus an optional target cell and caption into a
committed placement, or a typed rejection.

Commit order:
1. Input checks (file present, image type, size, caption, coordinates).
   Nothing has been written when one of these fails.
2. Per-origin daily quota.
3. Image header probe (side length limit) and thumbnail encode.
4. Cell choice. A targeted cell that is visibly taken is refused here,
   before any asset is written.
5. Original and thumbnail are written concurrently. Both must land.
6. Occupancy row insert. The unique cell index settles races. A random
   cell lost to a concurrent upload is redrawn a couple of times.
7. Broadcast of the new placement.

If step 5 or 6 fails, the assets this attempt created are deleted (best
effort) and the caller gets StorageFailure, or SlotTaken when another
upload won the cell in between. Assets that were already stored before the
attempt, e.g. identical bytes placed in another cell, are left alone, and
so is any key a committed placement references. Steps 5 and 6 hold a
per-content-hash lock so two uploads of the same bytes never interleave a
rollback with a commit.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import List, Optional

from milliongrid.utils.asset_store import asset_keys
from milliongrid.utils.constants import (
    MAX_UPLOAD_BYTES, MAX_IMAGE_SIDE, CAPTION_MAX_LEN, DAILY_UPLOAD_CAP,
    DAY_MS, THUMB_SIZE, RANDOM_RETRIES
)
from milliongrid.utils.errors import (
    NoFile, WrongType, TooLarge, DimensionsExceeded, InvalidCoordinates,
    CaptionTooLong, SlotTaken, NoFreeSlot, DailyCapExceeded, StorageFailure,
    PlacementCommitError
)
from milliongrid.utils.imaging import probe_dimensions, make_thumbnail

log = logging.getLogger(__name__)


@dataclass
class UploadRequest:
    data: Optional[bytes]
    content_type: str = ""
    x: Optional[object] = None
    y: Optional[object] = None
    caption: Optional[str] = None
    origin_address: str = ""

    @property
    def targeted(self) -> bool:
        return _present(self.x) or _present(self.y)


def _present(value) -> bool:
    return value is not None and value != ""


class UploadService:

    def __init__(self, store, allocator, assets, queries, channel=None,
                 max_bytes: int = MAX_UPLOAD_BYTES,
                 max_side: int = MAX_IMAGE_SIDE,
                 caption_max: int = CAPTION_MAX_LEN,
                 daily_cap: int = DAILY_UPLOAD_CAP,
                 thumb_size: int = THUMB_SIZE,
                 random_retries: int = RANDOM_RETRIES):
        self.store = store
        self.allocator = allocator
        self.assets = assets
        self.queries = queries
        self.channel = channel
        self.max_bytes = max_bytes
        self.max_side = max_side
        self.caption_max = caption_max
        self.daily_cap = daily_cap
        self.thumb_size = thumb_size
        self.random_retries = random_retries
        # content hash -> [asyncio.Lock, waiters]
        self._content_locks = {}

    def validate(self, req: UploadRequest) -> str:
        """Check the request fields. Returns the caption to store."""
        if not req.data:
            raise NoFile("No file uploaded")
        if not (req.content_type or "").startswith("image/"):
            raise WrongType("Invalid file type")
        if len(req.data) > self.max_bytes:
            raise TooLarge(f"File too large (max {self.max_bytes // (1024 * 1024)}MB)")
        caption = "" if req.caption is None else str(req.caption)
        if len(caption) > self.caption_max:
            raise CaptionTooLong(f"Caption too long (max {self.caption_max} chars)")
        if req.targeted and not (_present(req.x) and _present(req.y)):
            raise InvalidCoordinates("Both x and y are required for a targeted upload")
        return caption

    async def commit(self, req: UploadRequest) -> dict:
        caption = self.validate(req)

        daily = await asyncio.to_thread(self.store.count_since, req.origin_address, DAY_MS)
        if daily >= self.daily_cap:
            log.info(f"Daily cap reached for {req.origin_address} ({daily})")
            raise DailyCapExceeded(f"Daily upload limit reached ({self.daily_cap}/24h).")

        width, height = probe_dimensions(req.data)
        if width > self.max_side or height > self.max_side:
            raise DimensionsExceeded(f"Image too large (max {self.max_side}px side)")

        try:
            thumb = await asyncio.to_thread(make_thumbnail, req.data, self.thumb_size)
        except (OSError, ValueError) as e:
            raise WrongType("Invalid file type") from e

        if req.targeted:
            cell = self.allocator.allocate((req.x, req.y))
            if await asyncio.to_thread(self.store.is_occupied, cell.x, cell.y):
                raise SlotTaken("Slot already taken")
        else:
            cell = await asyncio.to_thread(self.allocator.allocate)

        orig_key, thumb_key = asset_keys(req.data, req.content_type)
        # One upload per content hash between first write and insert
        async with self._content_lock(orig_key.split(".", 1)[0]):
            created = await self._store_assets(((orig_key, req.data), (thumb_key, thumb)))
            placement = await self._place(req, cell, caption, orig_key, thumb_key, created)

        payload = self.queries.full(placement)
        log.info(f"Placed {orig_key} at ({placement.x}, {placement.y})")
        if self.channel is not None:
            self.channel.publish(payload)
        return payload

    async def _place(self, req: UploadRequest, cell, caption: str,
                     orig_key: str, thumb_key: str, created: List[str]):
        """Insert the occupancy row.

        A random cell lost to a concurrent upload is redrawn up to
        ``random_retries`` times. A targeted cell is never redrawn.
        """
        attempt = 0
        while True:
            try:
                return await asyncio.to_thread(
                    self.store.try_place, cell.x, cell.y, caption,
                    req.origin_address, thumb_key, orig_key
                )
            except SlotTaken:
                if req.targeted or attempt >= self.random_retries:
                    log.info(f"Lost race for ({cell.x}, {cell.y})")
                    await self._rollback(created)
                    raise
            except PlacementCommitError as e:
                await self._rollback(created)
                raise StorageFailure("Upload failed") from e

            attempt += 1
            log.info(f"Random cell ({cell.x}, {cell.y}) taken meanwhile, drawing again")
            try:
                cell = await asyncio.to_thread(self.allocator.allocate)
            except NoFreeSlot:
                await self._rollback(created)
                raise

    @contextlib.asynccontextmanager
    async def _content_lock(self, digest: str):
        entry = self._content_locks.get(digest)
        if entry is None:
            entry = self._content_locks[digest] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._content_locks[digest]

    async def _store_assets(self, items) -> List[str]:
        """Write all assets concurrently. Returns the keys newly created."""
        results = await asyncio.gather(
            *(asyncio.to_thread(self.assets.put, key, data) for key, data in items),
            return_exceptions=True
        )
        created = [key for (key, _), r in zip(items, results) if r is True]
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            log.error(f"Asset storage failed: {failures[0]}")
            await self._rollback(created)
            raise StorageFailure("Upload failed") from failures[0]
        return created

    async def _rollback(self, keys):
        """Delete assets this attempt created, unless a placement uses them."""
        removed = 0
        for key in keys:
            if await asyncio.to_thread(self.store.references, key):
                log.info(f"Keeping {key}, referenced by a placement")
                continue
            await asyncio.to_thread(self.assets.delete, key)
            removed += 1
        if removed:
            log.info(f"Rolled back {removed} assets")
