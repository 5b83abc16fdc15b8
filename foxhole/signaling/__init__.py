"""
Signaling Module
================

Внешний keyed pub/sub для обмена адресами и временем старта:
- SignalingChannel: абстрактный интерфейс
- MemorySignalingHub/Channel: in-process mailbox
- HttpSignalingChannel + MailboxRelay: mailbox через HTTP
- SealedSignalingChannel: шифрование payload'ов (NaCl SecretBox)
"""

from .base import INBOX_SUFFIX, SignalingChannel, inbox_key
from .memory import MemorySignalingHub, MemorySignalingChannel, Envelope
from .sealed import SealedSignalingChannel, derive_key, mailbox_tag
from .http import HttpSignalingChannel
from .relay import MailboxRelay

__all__ = [
    "SignalingChannel",
    "INBOX_SUFFIX",
    "inbox_key",
    "MemorySignalingHub",
    "MemorySignalingChannel",
    "Envelope",
    "SealedSignalingChannel",
    "derive_key",
    "mailbox_tag",
    "HttpSignalingChannel",
    "MailboxRelay",
]
