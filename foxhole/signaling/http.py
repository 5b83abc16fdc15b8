"""
HTTP Signaling - клиент MailboxRelay
====================================

[SIGNALING] Реализация SignalingChannel поверх HTTP relay (relay.py):
- publish  -> POST /mailbox/{key}
- retrieve -> GET  /mailbox/{key}/latest
- listen   -> long-poll GET /mailbox/{key}?after=<cursor>

Курсор для каждого ключа хранится в канале: listen отдаёт только
сообщения, опубликованные после subscribe/первого listen.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import quote

import aiohttp

from ..errors import SignalingUnavailable, TraversalTimeout
from .base import SignalingChannel
from .relay import MAX_POLL_SECONDS

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 5.0  # seconds


class HttpSignalingChannel(SignalingChannel):
    """
    SignalingChannel через MailboxRelay.

    [USAGE]
    ```python
    channel = HttpSignalingChannel("http://relay.example:8765")
    await channel.publish("alice", "hello")
    print(await channel.retrieve("alice"))
    await channel.close()
    ```
    """

    def __init__(
        self,
        base_url: str,
        request_timeout: float = REQUEST_TIMEOUT,
        max_poll: float = MAX_POLL_SECONDS,
    ):
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self.max_poll = max_poll
        self._session: Optional[aiohttp.ClientSession] = None
        self._cursors: Dict[str, int] = {}

    def _url(self, key: str, suffix: str = "") -> str:
        return f"{self.base_url}/mailbox/{quote(key, safe='')}{suffix}"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def _request(
        self,
        method: str,
        url: str,
        timeout: float,
        **kwargs: Any,
    ) -> Optional[Dict[str, Any]]:
        """
        HTTP запрос к relay. None для 204/404.

        Raises:
            SignalingUnavailable: сеть или неожиданный статус
        """
        session = self._get_session()
        try:
            async with session.request(
                method,
                url,
                timeout=aiohttp.ClientTimeout(total=timeout),
                **kwargs,
            ) as resp:
                if resp.status in (204, 404):
                    return None
                if resp.status != 200:
                    text = await resp.text()
                    raise SignalingUnavailable(f"relay returned {resp.status}: {text}")
                return await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SignalingUnavailable(f"relay request failed: {e!r}") from e

    async def publish(self, key: str, payload: str) -> None:
        result = await self._request(
            "POST", self._url(key), self.request_timeout, json={"payload": payload}
        )
        if result is None:
            raise SignalingUnavailable(f"relay rejected message for {key[:16]}")
        logger.debug(f"[SIGNAL] Published #{result.get('seq')} to {key[:16]}")

    async def retrieve(self, key: str) -> str:
        result = await self._request("GET", self._url(key, "/latest"), self.request_timeout)
        if result is None:
            raise SignalingUnavailable(f"no message published for {key[:16]}")
        return result["payload"]

    async def subscribe(self, key: str) -> None:
        if key in self._cursors:
            return
        result = await self._request("GET", self._url(key, "/cursor"), self.request_timeout)
        self._cursors[key] = int(result["seq"]) if result else 0

    async def listen(self, key: str, timeout: float) -> str:
        await self.subscribe(key)
        deadline = time.monotonic() + timeout if timeout else None

        while True:
            poll = self.max_poll
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TraversalTimeout(f"no message for {key[:16]} within {timeout}s")
                poll = min(poll, remaining)

            result = await self._request(
                "GET",
                self._url(key),
                poll + self.request_timeout,
                params={"after": str(self._cursors[key]), "timeout": f"{poll:.3f}"},
            )
            if result is not None:
                self._cursors[key] = int(result["seq"])
                return result["payload"]

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
