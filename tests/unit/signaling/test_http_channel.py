"""
HTTP Signaling Unit Tests
=========================

[SIGNALING] HttpSignalingChannel against a real MailboxRelay on localhost.
"""

import asyncio

import aiohttp
import pytest
import pytest_asyncio

from foxhole.errors import SignalingUnavailable, TraversalTimeout
from foxhole.signaling import HttpSignalingChannel, MailboxRelay, SealedSignalingChannel


@pytest_asyncio.fixture
async def relay_url(unused_tcp_port):
    relay = MailboxRelay(max_poll=2.0)
    await relay.start("127.0.0.1", unused_tcp_port)
    yield f"http://127.0.0.1:{unused_tcp_port}"
    await relay.stop()


@pytest_asyncio.fixture
async def channels(relay_url):
    created = []

    def _create():
        channel = HttpSignalingChannel(relay_url, request_timeout=2.0, max_poll=2.0)
        created.append(channel)
        return channel

    yield _create

    for channel in created:
        await channel.close()


class TestHttpChannel:
    """Test publish/retrieve/listen over HTTP."""

    @pytest.mark.asyncio
    async def test_publish_and_retrieve(self, channels):
        channel = channels()

        await channel.publish("alice", "hello")

        assert await channel.retrieve("alice") == "hello"

    @pytest.mark.asyncio
    async def test_retrieve_missing(self, channels):
        with pytest.raises(SignalingUnavailable):
            await channels().retrieve("nobody")

    @pytest.mark.asyncio
    async def test_listen_receives_new_message(self, channels):
        publisher, listener = channels(), channels()
        await publisher.publish("alice", "old")

        task = asyncio.create_task(listener.listen("alice", 3.0))
        await asyncio.sleep(0.2)
        await publisher.publish("alice", "new")

        assert await task == "new"

    @pytest.mark.asyncio
    async def test_subscribe_then_listen(self, channels):
        publisher, listener = channels(), channels()

        await listener.subscribe("alice")
        await publisher.publish("alice", "first")
        await publisher.publish("alice", "second")

        assert await listener.listen("alice", 1.0) == "first"
        assert await listener.listen("alice", 1.0) == "second"

    @pytest.mark.asyncio
    async def test_listen_timeout(self, channels):
        with pytest.raises(TraversalTimeout):
            await channels().listen("alice", 0.3)

    @pytest.mark.asyncio
    async def test_keys_with_special_characters(self, channels):
        channel = channels()

        await channel.publish("peer with spaces", "ok")

        assert await channel.retrieve("peer with spaces") == "ok"

    @pytest.mark.asyncio
    async def test_sealed_over_http(self, channels):
        alice = SealedSignalingChannel(channels(), "shared")
        bob = SealedSignalingChannel(channels(), "shared")

        await alice.publish("alice", '{"id": "alice"}')

        assert await bob.retrieve("alice") == '{"id": "alice"}'


class TestRelayUnavailable:
    """Test failures surface as SignalingUnavailable."""

    @pytest.mark.asyncio
    async def test_no_relay_listening(self, unused_tcp_port):
        channel = HttpSignalingChannel(f"http://127.0.0.1:{unused_tcp_port}", request_timeout=1.0)
        try:
            with pytest.raises(SignalingUnavailable):
                await channel.publish("alice", "hello")
        finally:
            await channel.close()


class TestRelayValidation:
    """Test MailboxRelay input validation."""

    @pytest.mark.asyncio
    async def test_payload_must_be_string(self, relay_url):
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{relay_url}/mailbox/alice", json={"payload": 42}) as resp:
                assert resp.status == 400

    @pytest.mark.asyncio
    async def test_invalid_json(self, relay_url):
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{relay_url}/mailbox/alice", data=b"{not json") as resp:
                assert resp.status == 400

    @pytest.mark.asyncio
    async def test_cursor_and_long_poll(self, relay_url):
        async with aiohttp.ClientSession() as session:
            async with session.post(f"{relay_url}/mailbox/bob", json={"payload": "x"}) as resp:
                seq = (await resp.json())["seq"]

            async with session.get(f"{relay_url}/mailbox/bob/cursor") as resp:
                assert (await resp.json())["seq"] == seq

            async with session.get(
                f"{relay_url}/mailbox/bob", params={"after": str(seq), "timeout": "0.1"}
            ) as resp:
                assert resp.status == 204
