#!/usr/bin/env python3

import json
import logging
from typing import Optional

from fastapi import FastAPI, Request, Depends, File, Form, UploadFile
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
import socketio

from milliongrid.gridconfig import CFG
from milliongrid.gridlogging import CLIENT_LOGGER
from milliongrid.services.live_channel import LiveUpdateChannel
from milliongrid.services.occupancy_service import OccupancyStore
from milliongrid.services.query_service import SpatialQueryService
from milliongrid.services.upload_service import UploadRequest, UploadService
from milliongrid.utils.allocator import SlotAllocator
from milliongrid.utils.asset_store import AssetStore
from milliongrid.utils.constants import RECENT_DEFAULT, RECENT_MIN, RECENT_MAX
from milliongrid.utils.errors import UploadRejected
from milliongrid.utils.rate_limit import default_limiters
from milliongrid.utils.utils import clamp, parse_int_param

log = logging.getLogger(__name__)
client_log = logging.getLogger(CLIENT_LOGGER)

CLIENT_LOG_MAX_BYTES = 256 * 1024


class BadParam(Exception):
    pass


class RateLimited(Exception):
    pass


class GridServices(object):
    """Everything one server process owns, built once and closed on exit."""

    def __init__(self, cfg=CFG, db_path: Optional[str] = None,
                 asset_dir: Optional[str] = None, sio=None, rng=None,
                 rate_limits: Optional[bool] = None):
        self.width = int(cfg.grid.width)
        self.height = int(cfg.grid.height)
        self.slot_size = int(cfg.grid.slot_size)

        self.store = OccupancyStore(db_path, self.width, self.height)
        self.assets = AssetStore(asset_dir or cfg.storage.asset_dir, cfg.storage.public_base)
        self.allocator = SlotAllocator(
            self.store, self.width, self.height,
            sampling_budget=int(cfg.upload.sampling_budget), rng=rng
        )
        self.queries = SpatialQueryService(self.store, self.assets)
        self.channel = LiveUpdateChannel(sio)
        self.uploads = UploadService(
            self.store, self.allocator, self.assets, self.queries, self.channel,
            max_bytes=int(cfg.upload.max_bytes),
            max_side=int(cfg.upload.max_side),
            caption_max=int(cfg.upload.caption_max),
            daily_cap=int(cfg.upload.daily_cap),
            thumb_size=int(cfg.grid.thumb_size),
        )
        if rate_limits is None:
            rate_limits = bool(cfg.ratelimit.enabled)
        self.limiters = default_limiters() if rate_limits else {}
        self.public_base = cfg.storage.public_base

    def close(self):
        self.store.close()


def _client_address(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else ""


def limited(name: str):
    def check(request: Request):
        limiter = request.app.state.grid.limiters.get(name)
        if limiter is not None and not limiter.hit(_client_address(request)):
            raise RateLimited(name)
    return Depends(check)


def _coord(params, name: str, upper: int, default=None) -> int:
    raw = params.get(name)
    if raw is None or raw == "":
        if default is None:
            raise BadParam(f"{name} is required")
        return default
    try:
        value = parse_int_param(raw)
    except ValueError:
        raise BadParam(f"{name} must be an integer")
    if value < 0 or value >= upper:
        raise BadParam(f"{name} out of range [0, {upper})")
    return value


def create_app(services: GridServices) -> FastAPI:
    app = FastAPI()
    app.state.grid = services

    @app.exception_handler(BadParam)
    async def bad_param_handler(request: Request, exc: BadParam):
        return JSONResponse({"error": str(exc)}, status_code=400)

    @app.exception_handler(RateLimited)
    async def rate_limited_handler(request: Request, exc: RateLimited):
        return JSONResponse({"error": "Too Many Requests"}, status_code=429)

    @app.get("/api/config", name='config')
    def config():
        log.info('GET /api/config')
        return {"grid": {"w": services.width, "h": services.height, "slotSize": services.slot_size}}

    @app.post("/api/upload", name='upload',
              dependencies=[limited("upload_burst"), limited("upload_hourly")])
    async def upload(request: Request,
                     image: Optional[UploadFile] = File(None),
                     x: Optional[str] = Form(None),
                     y: Optional[str] = Form(None),
                     caption: Optional[str] = Form(None)):
        data = None
        content_type = ""
        if image is not None:
            # one byte past the limit is enough to reject
            data = await image.read(services.uploads.max_bytes + 1)
            content_type = image.content_type or ""
        req = UploadRequest(
            data=data,
            content_type=content_type,
            x=x,
            y=y,
            caption=caption,
            origin_address=_client_address(request),
        )
        try:
            slot = await services.uploads.commit(req)
        except UploadRejected as e:
            log.info(f"upload rejected: {e.code} ({e.message})")
            return JSONResponse(e.to_dict(), status_code=e.status)
        except Exception:
            log.exception("upload error")
            return JSONResponse({"error": "Upload failed", "code": "storage-failure"}, status_code=500)
        return {"ok": True, "slot": slot}

    @app.get("/api/slots", name='slots', dependencies=[limited("slots")])
    def slots(request: Request):
        params = request.query_params
        x0 = _coord(params, "x0", services.width)
        y0 = _coord(params, "y0", services.height)
        return {"rows": services.queries.cell(x0, y0)}

    @app.get("/api/grid", name='grid', dependencies=[limited("grid")])
    def grid(request: Request):
        params = request.query_params
        x0 = _coord(params, "x0", services.width, 0)
        y0 = _coord(params, "y0", services.height, 0)
        x1 = _coord(params, "x1", services.width, services.width - 1)
        y1 = _coord(params, "y1", services.height, services.height - 1)
        return {"rows": services.queries.rect(x0, y0, x1, y1)}

    @app.get("/api/feed", name='feed', dependencies=[limited("feed")])
    def feed(request: Request):
        raw = request.query_params.get("limit")
        limit = RECENT_DEFAULT
        if raw not in (None, ""):
            try:
                limit = parse_int_param(raw)
            except ValueError:
                raise BadParam("limit must be an integer")
        limit = clamp(limit, RECENT_MIN, RECENT_MAX)
        return {"rows": services.queries.recent(limit)}

    @app.post("/api/log", name='client_log', dependencies=[limited("client_log")])
    async def ingest_client_log(request: Request):
        body = await request.body()
        if len(body) > CLIENT_LOG_MAX_BYTES:
            return JSONResponse({"ok": False}, status_code=413)
        try:
            payload = json.loads(body or b"{}")
            if not isinstance(payload, dict):
                raise ValueError("payload must be an object")
            ip = _client_address(request)
            client_log.info(json.dumps({
                "ip": ip,
                "clientTs": payload.get("ts"),
                "page": payload.get("page"),
                "ua": payload.get("ua"),
                "lang": payload.get("lang"),
                "screen": payload.get("screen"),
            }))
            for ev in payload.get("events") or []:
                client_log.info(json.dumps({"ip": ip, "ev": ev}))
        except ValueError as e:
            log.warning(f"client-log ingest error: {e}")
            return JSONResponse({"ok": False}, status_code=400)
        return {"ok": True}

    @app.get("/health", name='health')
    def health():
        return {"ok": True}

    if services.public_base.startswith("/"):
        app.mount(services.public_base, StaticFiles(directory=services.assets.root), name='assets')

    return app


def create_asgi_app(services: GridServices):
    """FastAPI with Socket.IO mounted over it as a single ASGI app."""
    return socketio.ASGIApp(services.channel.sio, other_asgi_app=create_app(services))


def run():
    from milliongrid.gridlogging import setuplogs
    setuplogs(CFG)
    services = GridServices(CFG)
    log.info(f"One Million Images: http://localhost:{CFG.server.port}")
    log.info(f"Grid: {services.width} x {services.height}")
    import uvicorn
    try:
        uvicorn.run(
            create_asgi_app(services),
            host=CFG.server.host,
            port=int(CFG.server.port),
            log_level='debug' if getattr(CFG.general, 'debug', False) else 'info',
        )
    finally:
        services.close()
        log.info("Exiting grid server ...")


def main():
    try:
        run()
    except KeyboardInterrupt:
        print("Shutdown requested.")
    print("Done!")


if __name__ == "__main__":
    main()
