"""
Foxhole - NAT Traversal Engine
==============================
Прямое соединение двух узлов за NAT:
- Config: TraversalConfig, роли и настройки signaling
- NAT: STUN, handshake, UDP stream adapter, hole punch engine
- Signaling: mailbox каналы (memory, HTTP relay, шифрование NaCl)
- Exchange: публикация и получение PeerAddress
- Sync: согласование времени старта hole punching
- Orchestrator: полный сценарий listener/connector
"""

from .errors import (
    TraversalError,
    NetworkUnavailable,
    TraversalTimeout,
    ProtocolViolation,
    SignalingUnavailable,
    AllStrategiesExhausted,
    ConfigError,
)
from .config import Role, TraversalConfig, SignalingSettings, load_settings
from .exchange import PeerAddress, AddressExchanger
from .sync import EpochNegotiator, adopt_epoch, wait_until
from .orchestrator import ConnectionOrchestrator
from .nat import (
    STUNClient,
    NATType,
    Connection,
    StreamAdapter,
    HolePunchEngine,
    PunchSchedule,
    Strategy,
    ConnectionAttemptResult,
)

__version__ = "1.0.0"

__all__ = [
    # Errors
    "TraversalError",
    "NetworkUnavailable",
    "TraversalTimeout",
    "ProtocolViolation",
    "SignalingUnavailable",
    "AllStrategiesExhausted",
    "ConfigError",
    # Config
    "Role",
    "TraversalConfig",
    "SignalingSettings",
    "load_settings",
    # Exchange / Sync
    "PeerAddress",
    "AddressExchanger",
    "EpochNegotiator",
    "adopt_epoch",
    "wait_until",
    # Orchestration
    "ConnectionOrchestrator",
    # NAT
    "STUNClient",
    "NATType",
    "Connection",
    "StreamAdapter",
    "HolePunchEngine",
    "PunchSchedule",
    "Strategy",
    "ConnectionAttemptResult",
]
