"""
Foxhole Test Configuration
==========================

[QA] Central pytest configuration with fixtures for all test types:
- Unit tests: one component, localhost sockets only
- Integration tests: listener and connector talking over localhost

[FIXTURES]
- stun_server: Local STUN responder (XOR-MAPPED / MAPPED / no address / silent)
- tcp_pair: Connected pair of TCPConnection objects
- udp_socket: Non-blocking UDP socket bound to 127.0.0.1
- signaling_hub: In-process mailbox shared by several channels

Usage:
    pytest tests/unit/          # Fast unit tests
    pytest tests/integration/   # Integration tests
"""

import sys
import asyncio
import socket
import struct
import logging
from pathlib import Path
from typing import AsyncGenerator, Callable, Generator, List, Optional, Tuple

import pytest
import pytest_asyncio

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests (I/O, slower)")
    config.addinivalue_line("markers", "slow: Slow tests (skip with -m 'not slow')")


def pytest_collection_modifyitems(config, items):
    """Auto-mark tests based on their path."""
    for item in items:
        if "/unit/" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


# ============================================================================
# Logging Configuration
# ============================================================================

@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    # Silence noisy loggers during tests
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


# ============================================================================
# Fake STUN Server
# ============================================================================

MAGIC_COOKIE = 0x2112A442


def xor_mapped_attr(ip: str, port: int) -> bytes:
    """XOR-MAPPED-ADDRESS (IPv4) attribute with header."""
    xport = port ^ (MAGIC_COOKIE >> 16)
    xaddr = struct.unpack(">I", socket.inet_aton(ip))[0] ^ MAGIC_COOKIE
    value = struct.pack(">BBHI", 0, 0x01, xport, xaddr)
    return struct.pack(">HH", 0x0020, len(value)) + value


def mapped_attr(ip: str, port: int) -> bytes:
    """MAPPED-ADDRESS (IPv4) attribute with header."""
    value = struct.pack(">BBH", 0, 0x01, port) + socket.inet_aton(ip)
    return struct.pack(">HH", 0x0001, len(value)) + value


def software_attr(text: bytes = b"fake") -> bytes:
    padding = b"\x00" * (-len(text) % 4)
    return struct.pack(">HH", 0x8022, len(text)) + text + padding


def binding_response(transaction_id: bytes, attributes: bytes) -> bytes:
    header = struct.pack(">HHI", 0x0101, len(attributes), MAGIC_COOKIE)
    return header + transaction_id + attributes


class FakeSTUNServer(asyncio.DatagramProtocol):
    """
    Local STUN responder.

    [MODES]
    - "xor": XOR-MAPPED-ADDRESS only
    - "mapped": MAPPED-ADDRESS only
    - "both": MAPPED-ADDRESS first, then XOR-MAPPED-ADDRESS
    - "none": Binding response without any address attribute
    - "silent": never answers

    mapping(source) decides the reported address (default: the source itself).
    delay postpones the reply; stale_first sends a reply to another
    transaction ahead of the real one.
    """

    def __init__(self, mode: str = "xor"):
        self.mode = mode
        self.mapping: Callable[[Tuple[str, int]], Tuple[str, int]] = lambda addr: addr
        self.requests: List[Tuple[str, int]] = []
        self.delay = 0.0
        self.stale_first = False
        self.transport: Optional[asyncio.DatagramTransport] = None

    @property
    def address(self) -> str:
        host, port = self.transport.get_extra_info("sockname")[:2]
        return f"{host}:{port}"

    def connection_made(self, transport):
        self.transport = transport

    def datagram_received(self, data: bytes, addr):
        self.requests.append((addr[0], addr[1]))
        if self.mode == "silent" or len(data) < 20:
            return

        transaction_id = data[8:20]
        ip, port = self.mapping((addr[0], addr[1]))

        if self.mode == "xor":
            attrs = software_attr() + xor_mapped_attr(ip, port)
        elif self.mode == "mapped":
            attrs = mapped_attr(ip, port)
        elif self.mode == "both":
            attrs = mapped_attr("198.51.100.1", 1) + xor_mapped_attr(ip, port)
        else:
            attrs = software_attr()

        replies = [binding_response(transaction_id, attrs)]
        if self.stale_first:
            replies.insert(0, binding_response(bytes(12), attrs))

        def _send():
            for reply in replies:
                self.transport.sendto(reply, addr)

        if self.delay:
            asyncio.get_running_loop().call_later(self.delay, _send)
        else:
            _send()


@pytest_asyncio.fixture
async def stun_factory() -> AsyncGenerator[Callable, None]:
    """Factory for local STUN responders; all are closed after the test."""
    loop = asyncio.get_running_loop()
    servers: List[FakeSTUNServer] = []

    async def _create(mode: str = "xor") -> FakeSTUNServer:
        _, protocol = await loop.create_datagram_endpoint(
            lambda: FakeSTUNServer(mode),
            local_addr=("127.0.0.1", 0),
        )
        servers.append(protocol)
        return protocol

    yield _create

    for server in servers:
        server.transport.close()


@pytest_asyncio.fixture
async def stun_server(stun_factory) -> FakeSTUNServer:
    """Single XOR-MAPPED STUN responder on 127.0.0.1."""
    return await stun_factory("xor")


# ============================================================================
# Socket Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def tcp_pair():
    """
    Connected (client, server-side) TCPConnection pair on 127.0.0.1.
    """
    from foxhole.nat.connection import TCPConnection, open_tcp_connection

    accepted = asyncio.get_running_loop().create_future()

    async def on_connect(reader, writer):
        if not accepted.done():
            accepted.set_result(TCPConnection(reader, writer))

    server = await asyncio.start_server(on_connect, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]

    client = await open_tcp_connection("127.0.0.1", port, timeout=2.0)
    remote = await asyncio.wait_for(accepted, timeout=2.0)

    yield client, remote

    await client.close()
    await remote.close()
    server.close()


@pytest.fixture
def udp_socket() -> Generator[Callable[[], socket.socket], None, None]:
    """Factory for non-blocking UDP sockets bound to 127.0.0.1:0."""
    sockets: List[socket.socket] = []

    def _create() -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setblocking(False)
        sock.bind(("127.0.0.1", 0))
        sockets.append(sock)
        return sock

    yield _create

    for sock in sockets:
        sock.close()


# ============================================================================
# Signaling Fixtures
# ============================================================================

@pytest.fixture
def signaling_hub():
    """In-process mailbox shared by the channels of one test."""
    from foxhole.signaling import MemorySignalingHub
    return MemorySignalingHub()


# ============================================================================
# Async Utilities
# ============================================================================

@pytest.fixture(scope="function")
def async_timeout():
    """Helper for async test timeouts."""
    async def _timeout(coro, seconds: float = 5.0):
        return await asyncio.wait_for(coro, timeout=seconds)
    return _timeout
