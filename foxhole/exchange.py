"""
Address Exchange - обмен PeerAddress через signaling
====================================================

[EXCHANGE] PeerAddress публикуется как JSON:
{"id": ..., "ip": ..., "port": ..., "local_ip": ..., "local_port": ...}

ip/port - публичный адрес (STUN), local_ip/local_port - адрес в LAN.
Запись лежит под ID узла и после публикации не меняется; адрес,
отправленный пиру напрямую, идёт в его inbox_key(ID).
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Tuple

from .errors import ProtocolViolation, SignalingUnavailable, TraversalError
from .signaling.base import SignalingChannel, inbox_key

logger = logging.getLogger(__name__)

MAX_RETRY_WAIT = 5.0  # seconds


@dataclass(frozen=True)
class PeerAddress:
    """Адрес узла для hole punching."""

    id: str
    ip: str
    port: int
    local_ip: str = ""
    local_port: int = 0

    @property
    def public_endpoint(self) -> Tuple[str, int]:
        return (self.ip, self.port)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ip": self.ip,
            "port": self.port,
            "local_ip": self.local_ip,
            "local_port": self.local_port,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PeerAddress":
        try:
            return cls(
                id=str(data["id"]),
                ip=str(data["ip"]),
                port=int(data["port"]),
                local_ip=str(data.get("local_ip", "")),
                local_port=int(data.get("local_port", 0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolViolation(f"invalid peer address: {e}") from e

    @classmethod
    def from_json(cls, text: str) -> "PeerAddress":
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ProtocolViolation(f"peer address is not JSON: {e}") from e
        if not isinstance(data, dict):
            raise ProtocolViolation("peer address must be a JSON object")
        return cls.from_dict(data)


class AddressExchanger:
    """
    Публикация и получение PeerAddress.

    [USAGE]
    ```python
    exchanger = AddressExchanger(channel)
    await exchanger.publish(my_address)
    peer = await exchanger.retrieve("peer-id")
    ```
    """

    def __init__(self, channel: SignalingChannel):
        self.channel = channel

    async def publish(self, info: PeerAddress) -> None:
        """Опубликовать свой адрес под своим ID."""
        await self.channel.publish(info.id, info.to_json())
        logger.info(f"[EXCHANGE] Published {info.ip}:{info.port} as {info.id}")

    async def send_to(self, peer_id: str, info: PeerAddress) -> None:
        """Отправить свой адрес во входящие пира."""
        await self.channel.publish(inbox_key(peer_id), info.to_json())

    async def retrieve(self, peer_id: str) -> PeerAddress:
        """
        Последний опубликованный адрес пира.

        Raises:
            SignalingUnavailable: ничего не опубликовано
            ProtocolViolation: сообщение не является PeerAddress
        """
        payload = await self.channel.retrieve(peer_id)
        return PeerAddress.from_json(payload)

    async def retrieve_with_retry(
        self,
        peer_id: str,
        timeout: float,
        max_retries: int,
    ) -> PeerAddress:
        """
        Ждать, пока пир опубликует адрес.

        Пауза между попытками растёт на секунду, максимум MAX_RETRY_WAIT.
        """
        deadline = time.monotonic() + timeout

        for attempt in range(max_retries):
            try:
                return await self.retrieve(peer_id)
            except TraversalError as e:
                logger.debug(f"[EXCHANGE] Retrieve {peer_id} failed: {e}")

            if time.monotonic() >= deadline:
                raise SignalingUnavailable(
                    f"timeout waiting for connection info from {peer_id}"
                )

            logger.info(
                f"[EXCHANGE] Waiting for peer to publish connection info "
                f"(attempt {attempt + 1}/{max_retries})..."
            )
            await asyncio.sleep(min(float(attempt + 1), MAX_RETRY_WAIT))

        raise SignalingUnavailable(
            f"failed to retrieve connection info from {peer_id} after {max_retries} attempts"
        )

    async def listen(self, own_id: str, timeout: float) -> PeerAddress:
        """
        Дождаться адреса, присланного во входящие own_id.

        Сообщения, не являющиеся PeerAddress (например, предложения
        времени старта), пропускаются.

        Raises:
            TraversalTimeout: ничего подходящего за timeout
        """
        deadline = time.monotonic() + timeout if timeout else None

        while True:
            remaining = 0.0
            if deadline is not None:
                remaining = max(deadline - time.monotonic(), 0.001)

            payload = await self.channel.listen(inbox_key(own_id), remaining)
            try:
                info = PeerAddress.from_json(payload)
            except ProtocolViolation:
                logger.debug(f"[EXCHANGE] Skipped non-address message: {payload[:40]!r}")
                continue

            if info.id == own_id:
                continue
            return info
