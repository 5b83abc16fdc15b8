"""
Mailbox Relay - HTTP сервер signaling сообщений
===============================================

[RELAY] Хранит только короткие сообщения signaling (адреса, время старта).
Трафик приложения через relay не идёт.

[API]
- POST /mailbox/{key}                 {"payload": str} -> {"seq": int}
- GET  /mailbox/{key}/latest          -> envelope | 404
- GET  /mailbox/{key}/cursor          -> {"seq": int}
- GET  /mailbox/{key}?after=N&timeout=T  long-poll -> envelope | 204

envelope = {"seq": int, "timestamp": float, "payload": str}
"""

import logging
from typing import List, Optional

from aiohttp import web

from ..errors import TraversalTimeout
from .memory import MemorySignalingHub

logger = logging.getLogger(__name__)

MAX_POLL_SECONDS = 25.0
MAX_PAYLOAD_SIZE = 16384


class MailboxRelay:
    """
    aiohttp приложение поверх MemorySignalingHub.

    [USAGE]
    ```python
    relay = MailboxRelay()
    await relay.start("0.0.0.0", 8765)
    ...
    await relay.stop()
    ```
    """

    def __init__(
        self,
        hub: Optional[MemorySignalingHub] = None,
        max_poll: float = MAX_POLL_SECONDS,
    ):
        self.hub = hub or MemorySignalingHub()
        self.max_poll = max_poll
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application(client_max_size=MAX_PAYLOAD_SIZE * 2)
        app.router.add_post("/mailbox/{key}", self.publish_handler)
        app.router.add_get("/mailbox/{key}/latest", self.latest_handler)
        app.router.add_get("/mailbox/{key}/cursor", self.cursor_handler)
        app.router.add_get("/mailbox/{key}", self.poll_handler)
        return app

    async def publish_handler(self, request: web.Request) -> web.Response:
        key = request.match_info["key"]
        try:
            data = await request.json()
        except ValueError:
            return web.Response(status=400, text="invalid JSON")

        payload = data.get("payload") if isinstance(data, dict) else None
        if not isinstance(payload, str):
            return web.Response(status=400, text="payload must be a string")
        if len(payload) > MAX_PAYLOAD_SIZE:
            return web.Response(status=413, text="payload too large")

        envelope = await self.hub.put(key, payload)
        return web.json_response({"seq": envelope.seq})

    async def latest_handler(self, request: web.Request) -> web.Response:
        envelope = self.hub.latest(request.match_info["key"])
        if envelope is None:
            return web.Response(status=404, text="no message")
        return web.json_response(envelope.to_dict())

    async def cursor_handler(self, request: web.Request) -> web.Response:
        return web.json_response({"seq": self.hub.last_seq(request.match_info["key"])})

    async def poll_handler(self, request: web.Request) -> web.Response:
        key = request.match_info["key"]
        try:
            after = int(request.query.get("after", "0"))
            timeout = float(request.query.get("timeout", str(self.max_poll)))
        except ValueError:
            return web.Response(status=400, text="invalid query")

        timeout = min(max(timeout, 0.001), self.max_poll)

        try:
            envelope = await self.hub.wait_after(key, after, timeout)
        except TraversalTimeout:
            return web.Response(status=204)
        return web.json_response(envelope.to_dict())

    async def start(self, host: str = "0.0.0.0", port: int = 8765) -> None:
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, host, port)
        await site.start()
        logger.info(f"[RELAY] Mailbox relay listening on {self.addresses}")

    @property
    def addresses(self) -> List:
        return list(self._runner.addresses) if self._runner else []

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
