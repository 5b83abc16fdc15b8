"""
STUN Client - Session Traversal Utilities for NAT
=================================================

[STUN] RFC 5389 - Обнаружение публичного адреса:
- Биндим UDP сокет на заданный локальный порт
- Отправляем один Binding Request (без ретраев)
- Получаем XOR-MAPPED-ADDRESS (или MAPPED-ADDRESS как fallback)

[PORT] Если вызывающий передал ненулевой порт, биндим ровно его.
Найденный mapping полезен для hole punching только пока используется
тот же локальный порт.

[NAT TYPES]
Грубая классификация по двум запросам с одного порта:
- OPEN: оба сервера видят одинаковый mapping
- RESTRICTED: mapping отличается
"""

import asyncio
import ipaddress
import logging
import os
import socket
import struct
from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional, Tuple

from ..config import DEFAULT_STUN_SERVER, parse_host_port
from ..errors import (
    ConfigError,
    NetworkUnavailable,
    ProtocolViolation,
    TraversalError,
    TraversalTimeout,
)

logger = logging.getLogger(__name__)


# STUN Message Types
STUN_BINDING_REQUEST = 0x0001
STUN_BINDING_RESPONSE = 0x0101
STUN_BINDING_ERROR = 0x0111

# STUN Attributes
ATTR_MAPPED_ADDRESS = 0x0001
ATTR_XOR_MAPPED_ADDRESS = 0x0020

# STUN Magic Cookie (RFC 5389)
STUN_MAGIC_COOKIE = 0x2112A442
STUN_HEADER_SIZE = 20

FAMILY_IPV4 = 0x01
FAMILY_IPV6 = 0x02

# Один запрос, без ретраев
STUN_TIMEOUT = 5.0  # seconds

ALTERNATE_STUN_SERVER = "stun2.l.google.com:19302"


class NATType(Enum):
    """Грубый тип NAT."""
    OPEN = auto()        # Одинаковый mapping для разных серверов
    RESTRICTED = auto()  # Mapping отличается


@dataclass(frozen=True)
class MappedAddress:
    """
    Публичный адрес, полученный через STUN.

    local_port - порт, с которого реально ушёл запрос.
    """
    ip: str
    port: int
    local_port: int = 0

    @property
    def endpoint(self) -> Tuple[str, int]:
        return (self.ip, self.port)


def build_binding_request(transaction_id: bytes) -> bytes:
    """
    Построить STUN Binding Request.

    [FORMAT]
    0                   1                   2                   3
    0 1 2 3 4 5 6 7 8 9 0 1 2 3 4 5 6 7 8 9 0 1 2 3 4 5 6 7 8 9 0 1
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |0 0|     STUN Message Type     |         Message Length        |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |                         Magic Cookie                          |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |                     Transaction ID (96 bits)                  |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    """
    if len(transaction_id) != 12:
        raise ValueError("transaction id must be 12 bytes")

    header = struct.pack(
        ">HHI",
        STUN_BINDING_REQUEST,
        0,  # No attributes
        STUN_MAGIC_COOKIE,
    )
    return header + transaction_id


def _decode_xor_mapped_address(
    data: bytes,
    transaction_id: bytes,
) -> Tuple[str, int]:
    """
    XOR-MAPPED-ADDRESS.

    [FORMAT]
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |x x x x x x x x|    Family     |         X-Port                |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    |                X-Address (Variable)                           |
    +-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+-+
    """
    if len(data) < 8:
        raise ProtocolViolation("XOR-MAPPED-ADDRESS too short")

    family = data[1]
    port = struct.unpack(">H", data[2:4])[0] ^ (STUN_MAGIC_COOKIE >> 16)

    if family == FAMILY_IPV4:
        xor_addr = struct.unpack(">I", data[4:8])[0]
        ip = socket.inet_ntoa(struct.pack(">I", xor_addr ^ STUN_MAGIC_COOKIE))
        return ip, port

    if family == FAMILY_IPV6:
        if len(data) < 20:
            raise ProtocolViolation("XOR-MAPPED-ADDRESS (IPv6) too short")
        mask = struct.pack(">I", STUN_MAGIC_COOKIE) + transaction_id
        raw = bytes(a ^ b for a, b in zip(data[4:20], mask))
        return str(ipaddress.IPv6Address(raw)), port

    raise ProtocolViolation(f"unknown address family 0x{family:02x}")


def _decode_mapped_address(data: bytes) -> Tuple[str, int]:
    """MAPPED-ADDRESS (legacy)."""
    if len(data) < 8:
        raise ProtocolViolation("MAPPED-ADDRESS too short")

    family = data[1]
    port = struct.unpack(">H", data[2:4])[0]

    if family == FAMILY_IPV4:
        return socket.inet_ntoa(data[4:8]), port

    if family == FAMILY_IPV6:
        if len(data) < 20:
            raise ProtocolViolation("MAPPED-ADDRESS (IPv6) too short")
        return str(ipaddress.IPv6Address(data[4:20])), port

    raise ProtocolViolation(f"unknown address family 0x{family:02x}")


def parse_binding_response(
    data: bytes,
    expected_transaction_id: bytes,
) -> Tuple[str, int]:
    """
    Парсить STUN Binding Response.

    XOR-MAPPED-ADDRESS предпочтительнее, MAPPED-ADDRESS используется только
    если XOR-варианта нет.

    Raises:
        ProtocolViolation: битый ответ или нет адреса
    """
    if len(data) < STUN_HEADER_SIZE:
        raise ProtocolViolation(f"STUN response too short ({len(data)} bytes)")

    msg_type, msg_length, magic_cookie = struct.unpack(">HHI", data[:8])
    transaction_id = data[8:20]

    if msg_type != STUN_BINDING_RESPONSE:
        raise ProtocolViolation(f"unexpected STUN message type 0x{msg_type:04x}")

    if magic_cookie != STUN_MAGIC_COOKIE:
        raise ProtocolViolation(f"invalid magic cookie 0x{magic_cookie:08x}")

    if transaction_id != expected_transaction_id:
        raise ProtocolViolation("STUN transaction ID mismatch")

    end = STUN_HEADER_SIZE + msg_length
    if end > len(data):
        raise ProtocolViolation("STUN message length exceeds datagram")

    xor_mapped = None
    mapped = None
    offset = STUN_HEADER_SIZE

    while offset + 4 <= end:
        attr_type, attr_length = struct.unpack(">HH", data[offset:offset + 4])
        offset += 4

        if offset + attr_length > end:
            raise ProtocolViolation("truncated STUN attribute")

        attr_value = data[offset:offset + attr_length]

        if attr_type == ATTR_XOR_MAPPED_ADDRESS and xor_mapped is None:
            xor_mapped = _decode_xor_mapped_address(attr_value, transaction_id)
        elif attr_type == ATTR_MAPPED_ADDRESS and mapped is None:
            mapped = _decode_mapped_address(attr_value)

        # Align to 4 bytes
        offset += attr_length
        if attr_length % 4:
            offset += 4 - (attr_length % 4)

    if xor_mapped:
        return xor_mapped
    if mapped:
        return mapped

    raise ProtocolViolation("no address attribute in STUN response")


def alternate_server_for(server: str) -> str:
    """Второй сервер для сравнения mapping'ов."""
    alternate = server.replace("stun.l.google.com", "stun1.l.google.com", 1)
    if alternate == server:
        return ALTERNATE_STUN_SERVER
    return alternate


def get_local_ip() -> str:
    """Получить локальный IP (127.0.0.1 если сети нет)."""
    try:
        # UDP connect ничего не отправляет, только выбирает маршрут
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
        finally:
            s.close()
    except OSError:
        return "127.0.0.1"


class STUNClient:
    """
    STUN Client для обнаружения публичного адреса.

    [USAGE]
    ```python
    client = STUNClient("stun.l.google.com:19302")
    ip, port = await client.get_public_address(8080)
    nat = await client.detect_nat_type()
    ```
    """

    def __init__(
        self,
        server: str = DEFAULT_STUN_SERVER,
        alternate_server: Optional[str] = None,
        timeout: float = STUN_TIMEOUT,
    ):
        """
        Args:
            server: STUN сервер "host:port"
            alternate_server: Сервер для detect_nat_type (по умолчанию выводится из server)
            timeout: Дедлайн ожидания ответа
        """
        self.server = server
        self.alternate_server = alternate_server or alternate_server_for(server)
        self.timeout = timeout

    async def get_public_address(self, local_port: int = 0) -> Tuple[str, int]:
        """
        Получить публичный (ip, port) для local_port.

        Args:
            local_port: Порт для привязки (0 = случайный)
        """
        mapped = await self.resolve(local_port)
        return mapped.endpoint

    async def resolve(self, local_port: int = 0) -> MappedAddress:
        """
        Как get_public_address, но с портом, реально занятым запросом.

        При local_port=0 MappedAddress.local_port - выбранный ОС порт.
        """
        return await self.query(self.server, local_port)

    async def detect_nat_type(self, local_port: int = 0) -> NATType:
        """
        Определить тип NAT.

        [ALGORITHM]
        1. Запрос к основному серверу -> mapping A
        2. Запрос к альтернативному серверу с того же порта -> mapping B
           (если не удался, повторяем основной)
        3. A == B -> OPEN, иначе RESTRICTED

        Это эвристика, а не полноценное определение symmetric NAT.
        """
        first = await self.query(self.server, local_port)

        try:
            second = await self.query(self.alternate_server, first.local_port)
        except TraversalError as e:
            logger.debug(f"[STUN] Alternate {self.alternate_server} failed: {e}")
            second = await self.query(self.server, first.local_port)

        if first.endpoint == second.endpoint:
            nat_type = NATType.OPEN
        else:
            nat_type = NATType.RESTRICTED

        logger.info(
            f"[STUN] NAT type {nat_type.name}: "
            f"{first.ip}:{first.port} vs {second.ip}:{second.port}"
        )
        return nat_type

    async def verify_reachability(self) -> bool:
        """Проверить, что STUN сервер отвечает нам."""
        try:
            await self.query(self.server)
            return True
        except TraversalError as e:
            logger.debug(f"[STUN] {self.server} unreachable: {e}")
            return False

    async def query(self, server: str, local_port: int = 0) -> MappedAddress:
        """
        Отправить STUN Binding Request и получить ответ.

        Raises:
            NetworkUnavailable: bind/resolve/send не удался
            TraversalTimeout: нет ответа за self.timeout
            ProtocolViolation: ответ не разобран
        """
        loop = asyncio.get_running_loop()

        try:
            host, port = parse_host_port(server)
        except ConfigError as e:
            raise NetworkUnavailable(f"bad STUN server {server!r}: {e}") from e

        try:
            infos = await loop.getaddrinfo(
                host, port, family=socket.AF_INET, type=socket.SOCK_DGRAM
            )
        except OSError as e:
            raise NetworkUnavailable(f"failed to resolve {server}: {e}") from e
        server_addr = infos[0][4]

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setblocking(False)

        try:
            try:
                sock.bind(("0.0.0.0", local_port))
            except OSError as e:
                raise NetworkUnavailable(
                    f"failed to bind UDP port {local_port}: {e}"
                ) from e

            actual_local_port = sock.getsockname()[1]

            transaction_id = os.urandom(12)
            request = build_binding_request(transaction_id)

            try:
                await loop.sock_sendto(sock, request, server_addr)
            except OSError as e:
                raise NetworkUnavailable(f"failed to send STUN request: {e}") from e

            data = await self._receive_response(sock, server, server_addr, transaction_id)
            ip, mapped_port = parse_binding_response(data, transaction_id)

            logger.info(
                f"[STUN] Mapped address: {ip}:{mapped_port} "
                f"(local port {actual_local_port}, via {server})"
            )
            return MappedAddress(ip=ip, port=mapped_port, local_port=actual_local_port)

        finally:
            sock.close()

    async def _receive_response(
        self,
        sock: socket.socket,
        server: str,
        server_addr: Tuple[str, int],
        transaction_id: bytes,
    ) -> bytes:
        """
        Ждать ответ на наш запрос до self.timeout.

        Датаграммы не от сервера и ответы на чужие транзакции пропускаются.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        expected = (server_addr[0], server_addr[1])

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TraversalTimeout(
                    f"no STUN response from {server} within {self.timeout}s"
                )

            try:
                data, addr = await asyncio.wait_for(
                    loop.sock_recvfrom(sock, 2048),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                raise TraversalTimeout(
                    f"no STUN response from {server} within {self.timeout}s"
                ) from None
            except OSError as e:
                raise NetworkUnavailable(f"failed to read STUN response: {e}") from e

            if (addr[0], addr[1]) != expected:
                logger.debug(f"[STUN] Ignored datagram from {addr[0]}:{addr[1]}")
                continue
            if len(data) >= STUN_HEADER_SIZE and data[8:20] != transaction_id:
                logger.debug("[STUN] Ignored response to another transaction")
                continue
            return data
