"""
Memory Signaling - in-process mailbox
=====================================

[MAILBOX] Для каждого ключа хранится короткая история сообщений
с монотонным seq:
- retrieve: последнее сообщение, если оно моложе lookup_window
- listen: первое сообщение с seq больше курсора канала

MemorySignalingHub также служит хранилищем для MailboxRelay.
"""

import asyncio
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from ..config import DEFAULT_LOOKUP_WINDOW
from ..errors import SignalingUnavailable, TraversalTimeout
from .base import SignalingChannel

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 64


@dataclass(frozen=True)
class Envelope:
    """Сообщение в mailbox."""
    seq: int
    timestamp: float
    payload: str

    def to_dict(self) -> dict:
        return {"seq": self.seq, "timestamp": self.timestamp, "payload": self.payload}


class MemorySignalingHub:
    """
    Общий mailbox для нескольких каналов.

    [USAGE]
    ```python
    hub = MemorySignalingHub()
    alice, bob = hub.channel(), hub.channel()
    await alice.publish("bob", "hello")
    ```
    """

    def __init__(
        self,
        lookup_window: float = DEFAULT_LOOKUP_WINDOW,
        history_limit: int = HISTORY_LIMIT,
        clock: Callable[[], float] = time.time,
    ):
        self.lookup_window = lookup_window
        self.clock = clock
        self._boxes: Dict[str, Deque[Envelope]] = defaultdict(
            lambda: deque(maxlen=history_limit)
        )
        self._seq = 0
        self._condition = asyncio.Condition()

    def channel(self) -> "MemorySignalingChannel":
        return MemorySignalingChannel(self)

    async def put(self, key: str, payload: str) -> Envelope:
        async with self._condition:
            self._seq += 1
            envelope = Envelope(self._seq, self.clock(), payload)
            self._boxes[key].append(envelope)
            self._condition.notify_all()
        logger.debug(f"[SIGNAL] Stored #{envelope.seq} under {key[:16]}")
        return envelope

    def latest(self, key: str) -> Optional[Envelope]:
        """Последнее сообщение в окне поиска."""
        box = self._boxes.get(key)
        if not box:
            return None
        envelope = box[-1]
        if self.clock() - envelope.timestamp > self.lookup_window:
            return None
        return envelope

    def last_seq(self, key: str) -> int:
        box = self._boxes.get(key)
        return box[-1].seq if box else 0

    def next_after(self, key: str, seq: int) -> Optional[Envelope]:
        for envelope in self._boxes.get(key, ()):
            if envelope.seq > seq:
                return envelope
        return None

    async def wait_after(self, key: str, seq: int, timeout: float) -> Envelope:
        """
        Дождаться сообщения под key с seq больше заданного.

        Args:
            timeout: Секунды (0 = бесконечно)
        """
        async with self._condition:
            waiter = self._condition.wait_for(
                lambda: self.next_after(key, seq) is not None
            )
            try:
                if timeout:
                    await asyncio.wait_for(waiter, timeout=timeout)
                else:
                    await waiter
            except asyncio.TimeoutError:
                raise TraversalTimeout(
                    f"no message for {key[:16]} within {timeout}s"
                ) from None
            return self.next_after(key, seq)


class MemorySignalingChannel(SignalingChannel):
    """Канал одного участника поверх MemorySignalingHub."""

    def __init__(self, hub: MemorySignalingHub):
        self.hub = hub
        self._cursors: Dict[str, int] = {}

    async def publish(self, key: str, payload: str) -> None:
        await self.hub.put(key, payload)

    async def retrieve(self, key: str) -> str:
        envelope = self.hub.latest(key)
        if envelope is None:
            raise SignalingUnavailable(f"no message published for {key}")
        return envelope.payload

    async def subscribe(self, key: str) -> None:
        if key not in self._cursors:
            self._cursors[key] = self.hub.last_seq(key)

    async def listen(self, key: str, timeout: float) -> str:
        await self.subscribe(key)
        envelope = await self.hub.wait_after(key, self._cursors[key], timeout)
        self._cursors[key] = envelope.seq
        return envelope.payload
