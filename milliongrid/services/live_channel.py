""" module to hold the live update channel (Socket.IO push of new placements) """

import asyncio
import logging

import socketio

from milliongrid.utils.constants import NEW_IMAGE_EVENT

log = logging.getLogger(__name__)


class LiveUpdateChannel:
    """Broadcasts committed placements to every connected viewer.

    There is no backlog: a client that is not connected when a placement is
    published never receives it and catches up through its next grid poll.
    ``publish`` only schedules the emit, so a slow subscriber can not hold up
    the upload that triggered it.
    """

    def __init__(self, sio=None):
        self.sio = sio or socketio.AsyncServer(async_mode='asgi', cors_allowed_origins='*')
        self._subscribers = {}
        self._pending = set()
        self._published = 0
        self._emit_failures = 0
        self.sio.on('connect', self._handle_connect)
        self.sio.on('disconnect', self._handle_disconnect)

    # Socket.IO events (async)
    async def _handle_connect(self, sid, environ, auth=None):
        self.on_connect(sid, environ.get('REMOTE_ADDR') if environ else None)

    async def _handle_disconnect(self, sid, reason=None):
        self.on_disconnect(sid, reason)

    def on_connect(self, sid, address=None):
        self._subscribers[sid] = address
        log.info(f'client connected {{"id": "{sid}", "address": "{address}"}}')

    def on_disconnect(self, sid, reason=None):
        self._subscribers.pop(sid, None)
        log.info(f'client disconnected {{"id": "{sid}", "reason": "{reason}"}}')

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, payload: dict) -> None:
        """Schedule a ``new_image`` broadcast and return immediately.

        Must be called from inside the event loop.
        """
        task = asyncio.get_running_loop().create_task(self._emit(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        self._published += 1

    async def _emit(self, payload: dict):
        try:
            await self.sio.emit(NEW_IMAGE_EVENT, payload)
            log.debug(f"Published {NEW_IMAGE_EVENT} ({payload.get('x')}, {payload.get('y')}) "
                      f"to {self.subscriber_count} subscribers")
        except Exception:
            self._emit_failures += 1
            log.exception(f"Failed to publish {NEW_IMAGE_EVENT}")

    async def drain(self):
        """Wait for scheduled broadcasts to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def stats(self) -> dict:
        return {
            "subscribers": self.subscriber_count,
            "published": self._published,
            "emit_failures": self._emit_failures,
        }
