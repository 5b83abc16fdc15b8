"""
STUN Client Unit Tests
======================

[NAT] Public address discovery is the first step of every attempt:
a wrong port here means punching the wrong mapping.
"""

import asyncio
import os
import socket
import struct

import pytest

from conftest import binding_response, mapped_attr, software_attr, xor_mapped_attr

from foxhole.errors import NetworkUnavailable, ProtocolViolation, TraversalTimeout
from foxhole.nat.stun import (
    NATType,
    STUNClient,
    alternate_server_for,
    build_binding_request,
    get_local_ip,
    parse_binding_response,
)


TXID = bytes(range(12))


# ============================================================================
# Message Encoding
# ============================================================================

class TestBindingRequest:
    """Test Binding Request encoding."""

    def test_header_layout(self):
        """Request is a bare 20-byte header with the magic cookie."""
        data = build_binding_request(TXID)

        assert len(data) == 20
        msg_type, length, cookie = struct.unpack(">HHI", data[:8])
        assert msg_type == 0x0001
        assert length == 0
        assert cookie == 0x2112A442
        assert data[8:] == TXID

    def test_rejects_bad_transaction_id(self):
        with pytest.raises(ValueError):
            build_binding_request(b"short")


class TestParseBindingResponse:
    """Test Binding Response decoding."""

    def test_xor_mapped_address(self):
        """XOR-MAPPED-ADDRESS decodes to the real endpoint."""
        data = binding_response(TXID, xor_mapped_attr("203.0.113.5", 40000))

        assert parse_binding_response(data, TXID) == ("203.0.113.5", 40000)

    def test_mapped_address_fallback(self):
        """Legacy MAPPED-ADDRESS is used when XOR variant is absent."""
        data = binding_response(TXID, mapped_attr("198.51.100.7", 3478))

        assert parse_binding_response(data, TXID) == ("198.51.100.7", 3478)

    def test_xor_preferred_over_mapped(self):
        attrs = mapped_attr("198.51.100.1", 1) + xor_mapped_attr("203.0.113.5", 40000)
        data = binding_response(TXID, attrs)

        assert parse_binding_response(data, TXID) == ("203.0.113.5", 40000)

    def test_unknown_attributes_skipped(self):
        """Padding of unknown attributes must keep alignment."""
        attrs = software_attr(b"abc") + xor_mapped_attr("203.0.113.5", 40000)
        data = binding_response(TXID, attrs)

        assert parse_binding_response(data, TXID) == ("203.0.113.5", 40000)

    def test_xor_mapped_ipv6(self):
        """IPv6 X-Address is XORed with cookie + transaction id."""
        raw = socket.inet_pton(socket.AF_INET6, "2001:db8::1")
        mask = struct.pack(">I", 0x2112A442) + TXID
        xaddr = bytes(a ^ b for a, b in zip(raw, mask))
        value = struct.pack(">BBH", 0, 0x02, 40000 ^ 0x2112) + xaddr
        attr = struct.pack(">HH", 0x0020, len(value)) + value

        ip, port = parse_binding_response(binding_response(TXID, attr), TXID)

        assert ip == "2001:db8::1"
        assert port == 40000

    def test_no_address_attribute(self):
        data = binding_response(TXID, software_attr())

        with pytest.raises(ProtocolViolation):
            parse_binding_response(data, TXID)

    def test_too_short(self):
        with pytest.raises(ProtocolViolation):
            parse_binding_response(b"\x01\x01\x00", TXID)

    def test_wrong_message_type(self):
        data = bytearray(binding_response(TXID, xor_mapped_attr("203.0.113.5", 1)))
        data[0:2] = b"\x01\x11"

        with pytest.raises(ProtocolViolation):
            parse_binding_response(bytes(data), TXID)

    def test_transaction_id_mismatch(self):
        data = binding_response(TXID, xor_mapped_attr("203.0.113.5", 40000))

        with pytest.raises(ProtocolViolation):
            parse_binding_response(data, os.urandom(12))

    def test_truncated_attribute(self):
        attr = xor_mapped_attr("203.0.113.5", 40000)
        data = binding_response(TXID, attr)
        # Declared attribute length runs past the message
        data = data[:22] + struct.pack(">H", 64) + data[24:]

        with pytest.raises(ProtocolViolation):
            parse_binding_response(data, TXID)


# ============================================================================
# STUNClient against a local responder
# ============================================================================

class TestSTUNClient:
    """Test STUNClient over localhost."""

    @pytest.mark.asyncio
    async def test_public_address_from_xor_mapping(self, stun_server):
        stun_server.mapping = lambda addr: ("203.0.113.5", 40000)
        client = STUNClient(stun_server.address, timeout=1.0)

        assert await client.get_public_address() == ("203.0.113.5", 40000)

    @pytest.mark.asyncio
    async def test_public_address_from_mapped_fallback(self, stun_factory):
        server = await stun_factory("mapped")
        server.mapping = lambda addr: ("203.0.113.5", 40000)
        client = STUNClient(server.address, timeout=1.0)

        assert await client.get_public_address() == ("203.0.113.5", 40000)

    @pytest.mark.asyncio
    async def test_response_without_address(self, stun_factory):
        server = await stun_factory("none")
        client = STUNClient(server.address, timeout=1.0)

        with pytest.raises(ProtocolViolation):
            await client.get_public_address()

    @pytest.mark.asyncio
    async def test_binds_exact_local_port(self, stun_server, unused_udp_port):
        """Request leaves from the requested port, mapping reflects it."""
        client = STUNClient(stun_server.address, timeout=1.0)

        ip, port = await client.get_public_address(unused_udp_port)

        assert stun_server.requests[-1][1] == unused_udp_port
        assert (ip, port) == ("127.0.0.1", unused_udp_port)

    @pytest.mark.asyncio
    async def test_query_reports_local_port(self, stun_server, unused_udp_port):
        client = STUNClient(stun_server.address, timeout=1.0)

        mapped = await client.query(stun_server.address, unused_udp_port)

        assert mapped.local_port == unused_udp_port
        assert mapped.endpoint == ("127.0.0.1", unused_udp_port)

    @pytest.mark.asyncio
    async def test_busy_port_is_network_unavailable(self, stun_server):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        blocker.bind(("0.0.0.0", 0))
        try:
            client = STUNClient(stun_server.address, timeout=1.0)
            with pytest.raises(NetworkUnavailable):
                await client.get_public_address(blocker.getsockname()[1])
        finally:
            blocker.close()

    @pytest.mark.asyncio
    async def test_silent_server_times_out(self, stun_factory):
        server = await stun_factory("silent")
        client = STUNClient(server.address, timeout=0.2)

        with pytest.raises(TraversalTimeout):
            await client.get_public_address()

    @pytest.mark.asyncio
    async def test_timeout_is_a_timeout_error(self, stun_factory):
        server = await stun_factory("silent")
        client = STUNClient(server.address, timeout=0.2)

        with pytest.raises(TimeoutError):
            await client.get_public_address()

    @pytest.mark.asyncio
    async def test_bad_server_string(self):
        client = STUNClient("no-port-here", timeout=0.2)

        with pytest.raises(NetworkUnavailable):
            await client.get_public_address()

    @pytest.mark.asyncio
    async def test_stray_datagram_ignored(self, stun_server, unused_udp_port):
        """A datagram from another host does not end the wait."""
        stun_server.delay = 0.3
        client = STUNClient(stun_server.address, timeout=2.0)
        query = asyncio.create_task(client.get_public_address(unused_udp_port))
        await asyncio.sleep(0.1)

        stray = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            stray.sendto(b"not a stun message", ("127.0.0.1", unused_udp_port))
            assert await query == ("127.0.0.1", unused_udp_port)
        finally:
            stray.close()

    @pytest.mark.asyncio
    async def test_reply_to_other_transaction_ignored(self, stun_server):
        stun_server.stale_first = True
        stun_server.mapping = lambda addr: ("203.0.113.5", 40000)
        client = STUNClient(stun_server.address, timeout=1.0)

        assert await client.get_public_address() == ("203.0.113.5", 40000)

    @pytest.mark.asyncio
    async def test_resolve_reports_ephemeral_port(self, stun_server):
        client = STUNClient(stun_server.address, timeout=1.0)

        mapped = await client.resolve(0)

        assert mapped.local_port != 0
        assert mapped.local_port == stun_server.requests[-1][1]


class TestNATType:
    """Test coarse NAT classification."""

    @pytest.mark.asyncio
    async def test_same_mapping_is_open(self, stun_factory):
        primary = await stun_factory("xor")
        alternate = await stun_factory("xor")
        client = STUNClient(primary.address, alternate.address, timeout=1.0)

        assert await client.detect_nat_type() == NATType.OPEN
        # Both queries left from the same local port
        assert primary.requests[0][1] == alternate.requests[0][1]

    @pytest.mark.asyncio
    async def test_different_mapping_is_restricted(self, stun_factory):
        primary = await stun_factory("xor")
        alternate = await stun_factory("xor")
        alternate.mapping = lambda addr: (addr[0], addr[1] + 1)
        client = STUNClient(primary.address, alternate.address, timeout=1.0)

        assert await client.detect_nat_type() == NATType.RESTRICTED

    @pytest.mark.asyncio
    async def test_alternate_failure_retries_primary(self, stun_factory):
        primary = await stun_factory("xor")
        alternate = await stun_factory("silent")
        client = STUNClient(primary.address, alternate.address, timeout=0.3)

        assert await client.detect_nat_type() == NATType.OPEN
        assert len(primary.requests) == 2


class TestReachability:
    """Test verify_reachability()."""

    @pytest.mark.asyncio
    async def test_reachable(self, stun_server):
        client = STUNClient(stun_server.address, timeout=1.0)
        assert await client.verify_reachability() is True

    @pytest.mark.asyncio
    async def test_unreachable(self, stun_factory):
        server = await stun_factory("silent")
        client = STUNClient(server.address, timeout=0.2)
        assert await client.verify_reachability() is False


class TestHelpers:
    """Test module helpers."""

    def test_alternate_for_google(self):
        assert alternate_server_for("stun.l.google.com:19302") == "stun1.l.google.com:19302"

    def test_alternate_for_other_server(self):
        assert alternate_server_for("stun.example.org:3478") == "stun2.l.google.com:19302"

    def test_local_ip_is_ipv4(self):
        ip = get_local_ip()
        socket.inet_aton(ip)
