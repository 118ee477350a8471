"""
test_session.py - GridViewerSession wiring with in-memory collaborators
"""

import asyncio

from milliongrid.gridconfig import CFG
from milliongrid.viewer.grid_client import GridFetchError
from milliongrid.viewer.lod import Resolution
from milliongrid.viewer.session import GridViewerSession


class FakeClient:
    def __init__(self, grid_rows=(), feed_rows=(), config_fails=False):
        self.grid_rows = list(grid_rows)
        self.feed_rows = list(feed_rows)
        self.config_fails = config_fails
        self.closed = False
        self.lookups = []

    async def fetch_config(self):
        if self.config_fails:
            raise GridFetchError("HTTP 502", 502)
        return {"w": 1000, "h": 1000, "slotSize": 40}

    async def fetch_feed(self, limit=50):
        return self.feed_rows[-limit:]

    async def fetch_grid(self, rect):
        return [r for r in self.grid_rows
                if rect.x0 <= r["x"] <= rect.x1 and rect.y0 <= r["y"] <= rect.y1]

    async def fetch_asset(self, url):
        return f"data:{url}".encode()

    async def original_url(self, x, y):
        self.lookups.append((x, y))
        return None

    async def aclose(self):
        self.closed = True


class FakeLive:
    def __init__(self):
        self.started = False
        self.stopped = False

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True


def make_session(client, redraws):
    return GridViewerSession(CFG, client=client, live=FakeLive(),
                             on_redraw=lambda: redraws.append(1))


def test_start_loads_feed_and_connects():
    feed_rows = [{"x": i, "y": 0, "createdAt": i, "thumbUrl": f"/t/{i}"} for i in range(3)]
    client = FakeClient(feed_rows=feed_rows)
    session = make_session(client, [])

    async def go():
        await session.start()
        await session.close()

    asyncio.run(go())
    assert [r["x"] for r in session.feed.rows] == [2, 1, 0]
    assert session.live.started and session.live.stopped
    assert client.closed


def test_start_survives_config_failure():
    session = make_session(FakeClient(config_fails=True), [])

    async def go():
        await session.start()
        await session.close()

    asyncio.run(go())
    assert session.width == 1000
    assert session.live.started


def test_viewport_fetch_and_frame():
    client = FakeClient(grid_rows=[{"x": 2, "y": 3, "thumbUrl": "/t/a"},
                                   {"x": 600, "y": 600, "thumbUrl": "/t/far"}])
    redraws = []
    session = make_session(client, redraws)

    async def go():
        session.set_viewport(0, 0, 1.0, 400, 400)
        await session.scheduler.fetch_now()
        await session.cache.drain()
        frame = session.frame()
        await session.close()
        return frame

    frame = asyncio.run(go())
    assert frame == [((2, 3), Resolution.THUMBNAIL, b"data:/t/a")]
    assert (600, 600) not in session.cache
    assert redraws


def test_live_new_image():
    redraws = []
    session = make_session(FakeClient(), redraws)
    row = {"x": 5, "y": 6, "thumbUrl": "/t/n", "originalUrl": "/o/n",
           "caption": "", "createdAt": 99}

    async def go():
        session.on_new_image(row)
        await session.cache.drain()
        await session.close()

    asyncio.run(go())
    e = session.cache.get((5, 6))
    assert e.thumb == b"data:/t/n"
    assert e.full_url == "/o/n"
    assert session.feed.rows[0] == row
    assert redraws


def test_new_image_reopens_full_image_lookup():
    client = FakeClient(grid_rows=[{"x": 1, "y": 1, "thumbUrl": "/t/a"}])
    session = make_session(client, [])

    async def go():
        session.set_viewport(0, 0, 5.0, 400, 400)
        await session.scheduler.fetch_now()
        await session.cache.drain()
        for _ in range(3):
            session.frame()
            await session.lod.drain()
        assert client.lookups == [(1, 1)]

        session.on_new_image({"x": 1, "y": 1, "thumbUrl": "/t/a", "originalUrl": "/o/a"})
        session.frame()
        await session.cache.drain()
        frame = session.frame()
        await session.close()
        return frame

    assert asyncio.run(go()) == [((1, 1), Resolution.FULL, b"data:/o/a")]
