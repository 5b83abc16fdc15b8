"""
NAT Traversal Module
====================

Ядро NAT traversal:
- STUN: Обнаружение публичного адреса и грубый тип NAT
- Handshake: Проверка протокола на установленном соединении
- StreamAdapter: UDP сокет как потоковое соединение
- HolePunchEngine: Direct TCP -> UDP hole punch -> TCP fallback

[CONNECTION PRIORITY]
1. Direct TCP (порт проброшен или NAT пропускает)
2. UDP Hole Punch (со смещениями порта)
3. TCP fallback (повтор direct)
"""

from .stun import STUNClient, NATType, MappedAddress, get_local_ip
from .connection import Connection, TCPConnection, open_tcp_connection
from .stream import StreamAdapter, open_stream_adapter
from .handshake import HANDSHAKE_TOKEN, verify_handshake, answer_handshake
from .hole_punch import (
    HolePunchEngine,
    PunchSchedule,
    Strategy,
    ConnectionAttemptResult,
    PORT_OFFSETS,
)

__all__ = [
    # STUN
    "STUNClient",
    "NATType",
    "MappedAddress",
    "get_local_ip",
    # Connections
    "Connection",
    "TCPConnection",
    "open_tcp_connection",
    "StreamAdapter",
    "open_stream_adapter",
    # Handshake
    "HANDSHAKE_TOKEN",
    "verify_handshake",
    "answer_handshake",
    # Hole Punch
    "HolePunchEngine",
    "PunchSchedule",
    "Strategy",
    "ConnectionAttemptResult",
    "PORT_OFFSETS",
]
