"""
Synchronized Start - согласование времени начала hole punching
==============================================================

[SYNCHRONIZATION] UDP hole punch срабатывает, только если у обоих NAT
одновременно свежие исходящие mapping'и. Поэтому оба узла начинают
пробы в заранее согласованный момент.

[PROTOCOL]
1. Предлагаем epoch = now + 5s (Unix секунды)
2. Публикуем "HOLE_PUNCH_START_TIME_<epoch>" во входящие пира
3. До 8 секунд слушаем свои входящие (чтения по ~1s)
4. Пришло предложение пира -> max(своё, пира); иначе своё
5. Спим до epoch (если уже прошло - сразу)

[GUARANTEE] Принятый epoch >= собственного предложения каждой стороны.
"""

import asyncio
import logging
import time
from contextlib import suppress
from typing import Awaitable, Callable, Optional

from .errors import SignalingUnavailable, TraversalError, TraversalTimeout
from .signaling.base import SignalingChannel, inbox_key

logger = logging.getLogger(__name__)


START_TIME_TAG = "HOLE_PUNCH_START_TIME_"

START_LEAD = 5           # seconds ahead of now
NEGOTIATION_WINDOW = 8.0  # seconds
POLL_TIMEOUT = 1.0        # seconds per listen


def format_proposal(epoch: int) -> str:
    return f"{START_TIME_TAG}{epoch}"


def parse_proposal(message: str) -> Optional[int]:
    """Epoch из сообщения или None, если это не предложение."""
    index = message.find(START_TIME_TAG)
    if index < 0:
        return None
    digits = message[index + len(START_TIME_TAG):].strip()
    try:
        return int(digits)
    except ValueError:
        return None


def adopt_epoch(local: int, peer: Optional[int]) -> int:
    """Более позднее из двух предложений."""
    if peer is None:
        return local
    return max(local, peer)


def _fmt(epoch: float) -> str:
    return time.strftime("%H:%M:%S", time.localtime(epoch))


async def wait_until(
    epoch: float,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    """Спать до epoch; no-op, если он уже прошёл."""
    delay = epoch - clock()
    if delay > 0:
        logger.info(f"[SYNC] Waiting {delay:.2f}s until synchronized start...")
        await sleep(delay)


class EpochNegotiator:
    """
    Согласование synchronized epoch через signaling канал.

    [USAGE]
    ```python
    negotiator = EpochNegotiator(channel)
    epoch = await negotiator.synchronize(own_id="alice", peer_id="bob")
    # здесь time.time() >= epoch
    ```
    """

    def __init__(
        self,
        channel: SignalingChannel,
        lead: int = START_LEAD,
        window: float = NEGOTIATION_WINDOW,
        poll_timeout: float = POLL_TIMEOUT,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            channel: Signaling канал
            lead: На сколько секунд вперёд предлагать старт
            window: Сколько ждать предложение пира
            poll_timeout: Таймаут одного listen
            clock: Источник wall-clock времени
            sleep: Функция ожидания до epoch
        """
        self.channel = channel
        self.lead = lead
        self.window = window
        self.poll_timeout = poll_timeout
        self.clock = clock
        self.sleep = sleep

    def propose(self) -> int:
        return int(self.clock()) + self.lead

    async def negotiate(self, own_id: str, peer_id: str) -> int:
        """Обменяться предложениями и вернуть принятый epoch."""
        local = self.propose()
        logger.info(f"[SYNC] Proposing synchronized start time: {local} ({_fmt(local)})")

        await self.channel.subscribe(inbox_key(own_id))
        poller = asyncio.create_task(self._poll_proposal(own_id))

        try:
            try:
                await self.channel.publish(inbox_key(peer_id), format_proposal(local))
            except TraversalError as e:
                logger.warning(f"[SYNC] Failed to send start time: {e}")

            try:
                peer: Optional[int] = await asyncio.wait_for(poller, timeout=self.window)
            except asyncio.TimeoutError:
                peer = None
        finally:
            poller.cancel()
            with suppress(asyncio.CancelledError):
                await poller

        epoch = adopt_epoch(local, peer)
        if peer is None:
            logger.info(f"[SYNC] Using proposed start time: {epoch} ({_fmt(epoch)})")
        else:
            logger.info(
                f"[SYNC] Synchronized on start time: {epoch} ({_fmt(epoch)}), "
                f"peer proposed {peer}"
            )
        return epoch

    async def wait_until(self, epoch: float) -> None:
        await wait_until(epoch, self.clock, self.sleep)

    async def synchronize(self, own_id: str, peer_id: str) -> int:
        epoch = await self.negotiate(own_id, peer_id)
        await self.wait_until(epoch)
        return epoch

    async def _poll_proposal(self, own_id: str) -> int:
        """Короткие listen до первого предложения; отменяется снаружи."""
        while True:
            try:
                message = await self.channel.listen(inbox_key(own_id), self.poll_timeout)
            except TraversalTimeout:
                continue
            except SignalingUnavailable as e:
                logger.debug(f"[SYNC] Listen failed: {e}")
                await asyncio.sleep(self.poll_timeout)
                continue

            epoch = parse_proposal(message)
            if epoch is not None:
                return epoch
