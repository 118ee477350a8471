""" HTTP and live-push client for the grid server """

import logging
from typing import Callable, List, Optional

import httpx
import socketio

from milliongrid.utils.constants import NEW_IMAGE_EVENT, RECENT_DEFAULT

log = logging.getLogger(__name__)

# Silence httpx's per-request INFO logging
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


class GridFetchError(Exception):
    """A query answered with an error status or an unreadable payload."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class RateLimited(GridFetchError):
    """The server answered 429."""


class NetworkError(GridFetchError):
    """The request never got an answer."""


class UploadFailed(Exception):
    def __init__(self, message, code=None, status_code=None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class GridClient:
    """
    Thin async wrapper over the grid HTTP API.

    Args:
        base_url: Server root, e.g. ``http://localhost:8080``.
        client: Optional preconfigured ``httpx.AsyncClient`` (tests pass one
                with a mock transport).
    """

    def __init__(self, base_url: str, timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=5.0),
        )

    async def _get(self, path: str, params: Optional[dict] = None) -> httpx.Response:
        try:
            return await self._client.get(path, params=params)
        except httpx.TransportError as e:
            raise NetworkError(f"GET {path} failed: {e}") from e

    @staticmethod
    def _json(resp: httpx.Response) -> dict:
        if resp.status_code == 429:
            raise RateLimited("rate limited", status_code=429)
        if resp.status_code != 200:
            raise GridFetchError(f"HTTP {resp.status_code}", status_code=resp.status_code)
        try:
            data = resp.json()
        except ValueError as e:
            raise GridFetchError(f"invalid JSON: {e}", status_code=resp.status_code) from e
        if not isinstance(data, dict):
            raise GridFetchError("unexpected payload", status_code=resp.status_code)
        return data

    def _rows(self, resp: httpx.Response) -> List[dict]:
        rows = self._json(resp).get("rows")
        if rows is None:
            return []
        if not isinstance(rows, list):
            raise GridFetchError("rows is not a list", status_code=resp.status_code)
        return rows

    async def fetch_config(self) -> dict:
        return self._json(await self._get("/api/config")).get("grid") or {}

    async def fetch_grid(self, rect) -> List[dict]:
        x0, y0, x1, y1 = rect
        resp = await self._get("/api/grid", {"x0": x0, "y0": y0, "x1": x1, "y1": y1})
        return self._rows(resp)

    async def fetch_cell(self, x: int, y: int) -> Optional[dict]:
        rows = self._rows(await self._get("/api/slots", {"x0": x, "y0": y}))
        return rows[0] if rows else None

    async def original_url(self, x: int, y: int) -> Optional[str]:
        row = await self.fetch_cell(x, y)
        return row.get("originalUrl") if row else None

    async def fetch_feed(self, limit: int = RECENT_DEFAULT) -> List[dict]:
        return self._rows(await self._get("/api/feed", {"limit": limit}))

    async def fetch_asset(self, url: str) -> bytes:
        resp = await self._get(url)
        if resp.status_code != 200:
            raise GridFetchError(f"asset HTTP {resp.status_code}", status_code=resp.status_code)
        return resp.content

    async def upload(self, data: bytes, filename: str, content_type: str,
                     x: Optional[int] = None, y: Optional[int] = None,
                     caption: Optional[str] = None) -> dict:
        form = {}
        if x is not None and y is not None:
            form["x"] = str(x)
            form["y"] = str(y)
        if caption is not None:
            form["caption"] = caption
        try:
            resp = await self._client.post(
                "/api/upload",
                data=form,
                files={"image": (filename, data, content_type)},
            )
        except httpx.TransportError as e:
            raise UploadFailed(f"upload failed: {e}") from e
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code != 200:
            raise UploadFailed(body.get("error") or f"HTTP {resp.status_code}",
                               code=body.get("code"), status_code=resp.status_code)
        return body.get("slot") or {}

    async def post_log(self, payload: dict) -> bool:
        try:
            resp = await self._client.post("/api/log", json=payload)
        except httpx.TransportError as e:
            log.debug(f"client log flush failed: {e}")
            return False
        return resp.status_code == 200

    async def aclose(self):
        await self._client.aclose()


class LiveFeed:
    """
    Socket.IO subscription to ``new_image`` events.

    Missed events are not replayed by the server; ``on_connect`` fires on
    every (re)connect so the owner can reconcile with a fresh poll.
    """

    def __init__(self, url: str, on_new_image: Callable, on_connect: Optional[Callable] = None,
                 sio: Optional[socketio.AsyncClient] = None):
        self.url = url
        self.sio = sio or socketio.AsyncClient(reconnection=True)
        self._on_new_image = on_new_image
        self._on_connect = on_connect
        self.connected = False
        self.sio.on("connect", self._handle_connect)
        self.sio.on("disconnect", self._handle_disconnect)
        self.sio.on("connect_error", self._handle_connect_error)
        self.sio.on(NEW_IMAGE_EVENT, self._handle_new_image)

    async def start(self):
        await self.sio.connect(self.url, transports=["websocket"])

    async def stop(self):
        await self.sio.disconnect()

    async def _handle_connect(self):
        self.connected = True
        log.info(f"socket connected {self.sio.sid}")
        if self._on_connect is not None:
            self._on_connect()

    async def _handle_disconnect(self, reason=None):
        self.connected = False
        log.info(f"socket disconnected ({reason})")

    async def _handle_connect_error(self, data=None):
        log.error(f"socket connect_error {data}")

    async def _handle_new_image(self, row):
        self.handle_new_image(row)

    def handle_new_image(self, row) -> None:
        if not isinstance(row, dict) or not row.get("thumbUrl"):
            log.debug(f"Ignoring malformed {NEW_IMAGE_EVENT} event")
            return
        self._on_new_image(row)
