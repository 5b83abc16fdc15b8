"""
Connections - Потоковые соединения после NAT traversal
======================================================

[CONNECTION] Общий контракт для результата HolePunchEngine:
- read(n) / write(data) / close()
- set_deadline / set_read_deadline / set_write_deadline (wall clock, time.time())
- local_address / remote_address

Реализации:
- TCPConnection: asyncio StreamReader/StreamWriter (надёжный поток)
- StreamAdapter (stream.py): UDP сокет + фиксированный пир (ненадёжный)
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Optional, Tuple

from ..errors import NetworkUnavailable, TraversalTimeout

logger = logging.getLogger(__name__)

Address = Tuple[str, int]


class Connection(ABC):
    """Потоковое соединение с одним пиром."""

    transport: str = ""
    reliable: bool = True

    def __init__(self) -> None:
        self._read_deadline: Optional[float] = None
        self._write_deadline: Optional[float] = None

    @property
    @abstractmethod
    def local_address(self) -> Address:
        ...

    @property
    @abstractmethod
    def remote_address(self) -> Address:
        ...

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...

    @abstractmethod
    async def read(self, n: int = 65535) -> bytes:
        """Прочитать до n байт (b"" = EOF для TCP)."""

    async def read_exactly(self, n: int) -> bytes:
        """
        Прочитать сообщение длиной n.

        По умолчанию один read(n); потоковые соединения накапливают байты.
        """
        return await self.read(n)

    @abstractmethod
    async def write(self, data: bytes) -> int:
        """Записать данные, вернуть число байт."""

    @abstractmethod
    async def close(self) -> None:
        """Закрыть соединение. Повторный вызов ничего не делает."""

    def set_deadline(self, deadline: Optional[float]) -> None:
        """Дедлайн для чтения и записи (None = без дедлайна)."""
        self._read_deadline = deadline
        self._write_deadline = deadline

    def set_read_deadline(self, deadline: Optional[float]) -> None:
        self._read_deadline = deadline

    def set_write_deadline(self, deadline: Optional[float]) -> None:
        self._write_deadline = deadline

    @staticmethod
    def _remaining(deadline: Optional[float]) -> Optional[float]:
        """Секунд до дедлайна (None = ждать без ограничения)."""
        if deadline is None:
            return None
        return max(0.0, deadline - time.time())

    async def _with_deadline(self, aw, deadline: Optional[float], what: str):
        remaining = self._remaining(deadline)
        try:
            return await asyncio.wait_for(aw, timeout=remaining)
        except asyncio.TimeoutError:
            raise TraversalTimeout(f"{what} deadline exceeded") from None

    async def __aenter__(self) -> "Connection":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__} {self.local_address} -> "
            f"{self.remote_address} closed={self.closed}>"
        )


class TCPConnection(Connection):
    """TCP соединение поверх asyncio streams."""

    transport = "tcp"
    reliable = True

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ):
        super().__init__()
        self._reader = reader
        self._writer = writer
        self._closed = False
        self._local = writer.get_extra_info("sockname")[:2]
        self._remote = writer.get_extra_info("peername")[:2]

    @property
    def local_address(self) -> Address:
        return self._local

    @property
    def remote_address(self) -> Address:
        return self._remote

    @property
    def closed(self) -> bool:
        return self._closed

    async def read(self, n: int = 65535) -> bytes:
        if self._closed:
            raise ConnectionError("connection is closed")
        return await self._with_deadline(
            self._reader.read(n), self._read_deadline, "read"
        )

    async def read_exactly(self, n: int) -> bytes:
        """
        Накопить n байт до EOF или read deadline.

        Если к дедлайну пришла только часть, возвращается она;
        если не пришло ничего - TraversalTimeout.
        """
        if self._closed:
            raise ConnectionError("connection is closed")

        buffer = bytearray()
        while len(buffer) < n:
            try:
                chunk = await self._with_deadline(
                    self._reader.read(n - len(buffer)), self._read_deadline, "read"
                )
            except TraversalTimeout:
                if buffer:
                    break
                raise
            if not chunk:
                break
            buffer.extend(chunk)
        return bytes(buffer)

    async def write(self, data: bytes) -> int:
        if self._closed:
            raise ConnectionError("connection is closed")
        self._writer.write(data)
        await self._with_deadline(
            self._writer.drain(), self._write_deadline, "write"
        )
        return len(data)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError) as e:
            logger.debug(f"[TCP] Close error for {self._remote}: {e}")


async def open_tcp_connection(
    host: str,
    port: int,
    timeout: float,
) -> TCPConnection:
    """
    TCP dial с таймаутом.

    Raises:
        NetworkUnavailable: connect не удался
        TraversalTimeout: connect не уложился в timeout
    """
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        raise TraversalTimeout(
            f"TCP connect to {host}:{port} timed out after {timeout}s"
        ) from None
    except OSError as e:
        raise NetworkUnavailable(f"TCP connect to {host}:{port} failed: {e}") from e

    return TCPConnection(reader, writer)
