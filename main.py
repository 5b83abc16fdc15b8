#!/usr/bin/env python3
"""
Foxhole - прямое соединение двух узлов за NAT
=============================================

[TRAVERSAL] Два режима соединения:
- listener (-l ID): публикует свой адрес и ждёт connector'а
- connector (LOCAL REMOTE): находит listener'а и пробивает NAT

Лестница стратегий: Direct TCP -> UDP hole punch -> TCP fallback.
Адреса и время старта передаются через mailbox relay; payload'ы
шифруются общим секретом (user-secret в foxhole.conf или FOXHOLE_SECRET).

[MESSAGING] Отладочные режимы поверх того же signaling канала:
- --send ID MESSAGE: опубликовать сообщение под ID
- --read ID: последнее сообщение под ID
- --listen-msg ID: дождаться нового сообщения под ID

Использование:
    python main.py -l alice
    python main.py bob alice
    python main.py --relay-server 0.0.0.0:8765

Примеры:
    # Relay на публичном хосте
    python main.py --relay-server 0.0.0.0:8765

    # Узел за NAT #1
    FOXHOLE_RELAY_URL=http://relay.example:8765 python main.py -l alice

    # Узел за NAT #2
    FOXHOLE_RELAY_URL=http://relay.example:8765 python main.py bob alice

    # Тип NAT
    python main.py --nat-type
"""

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from foxhole.config import (
    DEFAULT_LOCAL_PORT,
    DEFAULT_TIMEOUT,
    Role,
    SignalingSettings,
    TraversalConfig,
    load_settings,
    parse_host_port,
)
from foxhole.errors import ConfigError, TraversalError
from foxhole.nat import Connection, STUNClient
from foxhole.orchestrator import ConnectionOrchestrator
from foxhole.signaling import (
    HttpSignalingChannel,
    MailboxRelay,
    MemorySignalingHub,
    SealedSignalingChannel,
    SignalingChannel,
)

logger = logging.getLogger("foxhole")

# Второй позиционный аргумент длиннее или с пробелами/кавычками - это сообщение
MESSAGE_HINT_LENGTH = 50

READ_BUFFER = 4096


def setup_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_listen_port(value: str) -> int:
    """Порт из "host:port" или ":port"."""
    if value.startswith(":"):
        value = "0.0.0.0" + value
    _, port = parse_host_port(value)
    return port


def looks_like_message(text: str) -> bool:
    return (
        " " in text
        or '"' in text
        or "'" in text
        or len(text) > MESSAGE_HINT_LENGTH
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="foxhole",
        description="Foxhole - NAT traversal and messaging tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  foxhole -l myid                        # Listen with ID 'myid'
  foxhole myid peerId                    # Connect from 'myid' to peer 'peerId'
  foxhole myid "hello world"             # Send message
  foxhole --read myid                    # Read latest message
  foxhole --listen-msg myid              # Listen for new message (30s default)
  foxhole --listen-msg --listen-timeout 0 myid  # Listen indefinitely
  foxhole --relay-server 0.0.0.0:8765    # Run the mailbox relay
""",
    )
    parser.add_argument(
        "ids",
        nargs="*",
        help="ID arguments (see examples)",
    )
    parser.add_argument(
        "-l", "--listen",
        action="store_true",
        help="Listen mode - wait for incoming connection",
    )
    parser.add_argument(
        "--addr",
        type=str,
        default=f"0.0.0.0:{DEFAULT_LOCAL_PORT}",
        help=f"Address to listen on (default: 0.0.0.0:{DEFAULT_LOCAL_PORT})",
    )
    parser.add_argument(
        "--stun",
        type=str,
        default=None,
        help="STUN server host:port (default: stun.l.google.com:19302)",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=DEFAULT_TIMEOUT,
        help=f"Connection timeout in seconds (default: {DEFAULT_TIMEOUT})",
    )
    parser.add_argument(
        "--relay",
        type=str,
        default=None,
        help="Mailbox relay URL (default: FOXHOLE_RELAY_URL or http://127.0.0.1:8765)",
    )
    parser.add_argument(
        "--secret",
        type=str,
        default=None,
        help="Shared secret for signaling payloads",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to foxhole.conf (default: ./foxhole.conf)",
    )
    parser.add_argument(
        "--send",
        action="store_true",
        help="Send message mode: ID MESSAGE",
    )
    parser.add_argument(
        "--read",
        action="store_true",
        help="Read latest message mode: ID",
    )
    parser.add_argument(
        "--listen-msg",
        action="store_true",
        help="Listen for new message mode: ID",
    )
    parser.add_argument(
        "--listen-timeout",
        type=int,
        default=-1,
        help="Listen timeout in seconds (0 = indefinite, -1 = config default)",
    )
    parser.add_argument(
        "--nat-type",
        action="store_true",
        help="Detect coarse NAT type and exit",
    )
    parser.add_argument(
        "--relay-server",
        type=str,
        default=None,
        metavar="HOST:PORT",
        help="Run the mailbox relay server",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def resolve_mode(args: argparse.Namespace) -> str:
    """
    Режим работы по аргументам.

    Raises:
        ConfigError: аргументов не хватает
    """
    if args.relay_server:
        return "relay"
    if args.nat_type:
        return "nat-type"

    if args.listen:
        if not args.ids:
            raise ConfigError("ID required in listen mode")
        return "listen"

    if args.send or args.read or args.listen_msg:
        if not args.ids:
            raise ConfigError("ID required for messaging modes")
        if args.send:
            if len(args.ids) < 2:
                raise ConfigError("message required in send mode")
            return "send"
        if args.read:
            return "read"
        return "listen-msg"

    if len(args.ids) >= 2:
        if len(args.ids) == 2 and looks_like_message(args.ids[1]):
            return "send"
        return "connect"

    raise ConfigError("invalid arguments")


def apply_overrides(settings: SignalingSettings, args: argparse.Namespace) -> SignalingSettings:
    """Аргументы командной строки поверх файла и окружения."""
    overrides = {}
    if args.secret:
        overrides["secret"] = args.secret
    if args.relay:
        overrides["relay_url"] = args.relay
    if args.stun:
        overrides["stun_server"] = args.stun
    if args.listen_timeout >= 0:
        overrides["listen_timeout"] = args.listen_timeout
    return replace(settings, **overrides)


def open_channel(settings: SignalingSettings) -> SignalingChannel:
    return SealedSignalingChannel(HttpSignalingChannel(settings.relay_url), settings.secret)


async def handle_connection(conn: Connection) -> None:
    """Логировать всё, что пришло, пока соединение живо."""
    logger.info(f"[MAIN] Connection active ({conn.transport}, reliable={conn.reliable})")

    while True:
        try:
            data = await conn.read(READ_BUFFER)
        except (ConnectionError, OSError) as e:
            logger.info(f"[MAIN] Connection closed: {e}")
            return
        if not data:
            logger.info("[MAIN] Connection closed by peer")
            return
        logger.info(f"[MAIN] Received {len(data)} bytes: {data.decode('utf-8', 'replace')}")


async def run_traversal(mode: str, args: argparse.Namespace, settings: SignalingSettings) -> None:
    if mode == "listen":
        role, local_id, remote_id = Role.LISTENER, args.ids[0], ""
    else:
        role, local_id, remote_id = Role.CONNECTOR, args.ids[0], args.ids[1]

    config = TraversalConfig(
        role=role,
        local_id=local_id,
        remote_id=remote_id,
        stun_server=settings.stun_server,
        local_port=parse_listen_port(args.addr),
        timeout_seconds=args.timeout,
    ).validate()

    channel = open_channel(settings)
    try:
        orchestrator = ConnectionOrchestrator(config, channel)
        result = await orchestrator.run()
        logger.info(f"[MAIN] Connection established: {result.to_dict()}")

        async with result.connection as conn:
            await handle_connection(conn)
    finally:
        await channel.close()


async def run_messaging(mode: str, args: argparse.Namespace, settings: SignalingSettings) -> None:
    key = args.ids[0]
    channel = open_channel(settings)
    try:
        if mode == "send":
            await channel.publish(key, args.ids[1])
            print("OK")
        elif mode == "read":
            print(await channel.retrieve(key))
        else:
            print(await channel.listen(key, settings.listen_timeout))
    finally:
        await channel.close()


async def run_nat_type(settings: SignalingSettings) -> None:
    client = STUNClient(settings.stun_server)
    if not await client.verify_reachability():
        raise TraversalError(f"STUN server {settings.stun_server} is unreachable")
    nat_type = await client.detect_nat_type()
    print(nat_type.name)


async def run_relay(address: str, settings: SignalingSettings) -> None:
    host, port = parse_host_port(address)
    relay = MailboxRelay(hub=MemorySignalingHub(lookup_window=settings.lookup_window))
    await relay.start(host, port)
    try:
        await asyncio.Event().wait()
    finally:
        await relay.stop()


async def main(argv: Optional[List[str]] = None) -> int:
    """
    Главная функция - точка входа.

    Returns:
        Код выхода процесса
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    try:
        mode = resolve_mode(args)
        settings = apply_overrides(load_settings(args.config), args)

        if mode == "relay":
            await run_relay(args.relay_server, settings)
        elif mode == "nat-type":
            await run_nat_type(settings)
        elif mode in ("listen", "connect"):
            await run_traversal(mode, args, settings)
        else:
            await run_messaging(mode, args, settings)

    except ConfigError as e:
        logger.error(f"[MAIN] {e}")
        parser.print_usage(sys.stderr)
        return 1
    except TraversalError as e:
        logger.error(f"[MAIN] {e}")
        return 1

    return 0


def run() -> None:
    """Console script entry point."""
    load_dotenv()
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
