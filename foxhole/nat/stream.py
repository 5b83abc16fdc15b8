"""
StreamAdapter - UDP сокет как потоковое соединение
==================================================

[ADAPTER] Оборачивает UDP сокет и один фиксированный адрес пира
в контракт Connection (read/write/close/deadline).

[GUARANTEES] Никаких:
- нет фрейминга: один read() = одна датаграмма (обрезается до n)
- нет порядка и гарантии доставки
- датаграммы от других адресов отбрасываются

[LOCKING] Все операции, касающиеся сокета (sendto, приём датаграммы,
close), сериализуются одним lock. Ожидание данных в read() идёт
вне lock, поэтому read не блокирует write.
"""

import asyncio
import logging
import socket
import threading
import time
from typing import Optional

from ..errors import TraversalTimeout
from .connection import Address, Connection

logger = logging.getLogger(__name__)

# Максимум датаграмм в очереди непрочитанного
MAX_PENDING_DATAGRAMS = 1024


class _AdapterProtocol(asyncio.DatagramProtocol):
    """Доставляет датаграммы в StreamAdapter."""

    def __init__(self) -> None:
        self.adapter: Optional["StreamAdapter"] = None

    def datagram_received(self, data: bytes, addr) -> None:
        if self.adapter is not None:
            self.adapter._on_datagram(data, addr)

    def error_received(self, exc: Exception) -> None:
        # ICMP unreachable и т.п. - для UDP не фатально
        logger.debug(f"[STREAM] Socket error: {exc}")

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if self.adapter is not None:
            self.adapter._on_lost()


class StreamAdapter(Connection):
    """
    UDP соединение с фиксированным пиром.

    Создаётся через open_stream_adapter(); после создания владеет сокетом.
    """

    transport = "udp"
    reliable = False

    def __init__(
        self,
        transport: asyncio.DatagramTransport,
        protocol: _AdapterProtocol,
        peer: Address,
    ):
        super().__init__()
        self._transport = transport
        self._peer = (peer[0], peer[1])
        self._lock = threading.Lock()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=MAX_PENDING_DATAGRAMS)
        self._closed = False
        self._local = transport.get_extra_info("sockname")[:2]
        protocol.adapter = self

    @property
    def local_address(self) -> Address:
        return self._local

    @property
    def remote_address(self) -> Address:
        return self._peer

    @property
    def closed(self) -> bool:
        return self._closed

    def _on_datagram(self, data: bytes, addr) -> None:
        with self._lock:
            if self._closed:
                return
            if (addr[0], addr[1]) != self._peer:
                logger.debug(f"[STREAM] Dropped datagram from {addr}")
                return
            try:
                self._queue.put_nowait(data)
            except asyncio.QueueFull:
                logger.debug(f"[STREAM] Queue full, dropped {len(data)} bytes")

    def _on_lost(self) -> None:
        with self._lock:
            self._closed = True
        self._wake_readers()

    def _wake_readers(self) -> None:
        # None в очереди будит ожидающий read() после close
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

    async def read(self, n: int = 65535) -> bytes:
        """Прочитать одну датаграмму от пира (до n байт)."""
        if self._closed and self._queue.empty():
            raise ConnectionError("stream adapter is closed")

        data = await self._with_deadline(
            self._queue.get(), self._read_deadline, "read"
        )
        if data is None:
            self._wake_readers()
            raise ConnectionError("stream adapter is closed")
        return data[:n]

    async def write(self, data: bytes) -> int:
        """Отправить одну датаграмму пиру."""
        deadline = self._write_deadline
        if deadline is not None and time.time() > deadline:
            raise TraversalTimeout("write deadline exceeded")

        with self._lock:
            if self._closed:
                raise ConnectionError("stream adapter is closed")
            self._transport.sendto(data, self._peer)
        return len(data)

    async def close(self) -> None:
        """Закрыть сокет. Повторный вызов - no-op."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._transport.close()
        self._wake_readers()


async def open_stream_adapter(sock: socket.socket, peer: Address) -> StreamAdapter:
    """
    Обернуть уже открытый UDP сокет.

    Сокет переходит во владение адаптера.
    """
    loop = asyncio.get_running_loop()
    sock.setblocking(False)
    transport, protocol = await loop.create_datagram_endpoint(
        _AdapterProtocol,
        sock=sock,
    )
    return StreamAdapter(transport, protocol, peer)
