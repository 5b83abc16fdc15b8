"""
Sealed Signaling - шифрование payload'ов поверх любого канала
=============================================================

[SECURITY] Для каждого ID:
- key = sha256(id + secret)          - ключ NaCl SecretBox (XSalsa20-Poly1305)
- tag = sha256("foxhole-tag" + key)  - имя mailbox во внутреннем канале

Relay видит только tag и шифротекст. Сообщения, которые не
расшифровываются общим секретом, отбрасываются при listen.

Секрет передаётся в конструктор явно (SignalingSettings.secret).
"""

import hashlib
import logging
import time
from typing import Dict

from nacl.encoding import Base64Encoder
from nacl.exceptions import CryptoError
from nacl.secret import SecretBox

from ..errors import SignalingUnavailable, TraversalTimeout
from .base import SignalingChannel

logger = logging.getLogger(__name__)

TAG_PREFIX = b"foxhole-tag"


def derive_key(key_id: str, secret: str) -> bytes:
    """32-байтный ключ SecretBox для ID."""
    return hashlib.sha256((key_id + secret).encode("utf-8")).digest()


def mailbox_tag(key: bytes) -> str:
    """Имя mailbox, не раскрывающее ключ."""
    return hashlib.sha256(TAG_PREFIX + key).hexdigest()


class SealedSignalingChannel(SignalingChannel):
    """
    Обёртка, шифрующая payload'ы общим секретом.

    [USAGE]
    ```python
    channel = SealedSignalingChannel(HttpSignalingChannel(url), settings.secret)
    await channel.publish("alice", '{"ip": "203.0.113.5", ...}')
    ```
    """

    def __init__(self, inner: SignalingChannel, secret: str):
        if not secret:
            raise ValueError("secret must not be empty")
        self.inner = inner
        self._secret = secret
        self._boxes: Dict[str, SecretBox] = {}
        self._tags: Dict[str, str] = {}

    def _box(self, key_id: str) -> SecretBox:
        box = self._boxes.get(key_id)
        if box is None:
            key = derive_key(key_id, self._secret)
            box = SecretBox(key)
            self._boxes[key_id] = box
            self._tags[key_id] = mailbox_tag(key)
        return box

    def tag_for(self, key_id: str) -> str:
        self._box(key_id)
        return self._tags[key_id]

    def seal(self, key_id: str, payload: str) -> str:
        sealed = self._box(key_id).encrypt(payload.encode("utf-8"), encoder=Base64Encoder)
        return sealed.decode("ascii")

    def open(self, key_id: str, sealed: str) -> str:
        """
        Raises:
            SignalingUnavailable: шифротекст не расшифровывается
        """
        try:
            plain = self._box(key_id).decrypt(sealed.encode("ascii"), encoder=Base64Encoder)
            return plain.decode("utf-8")
        except (CryptoError, ValueError) as e:
            raise SignalingUnavailable(f"undecryptable payload for {key_id}: {e}") from e

    async def publish(self, key: str, payload: str) -> None:
        await self.inner.publish(self.tag_for(key), self.seal(key, payload))

    async def retrieve(self, key: str) -> str:
        sealed = await self.inner.retrieve(self.tag_for(key))
        return self.open(key, sealed)

    async def subscribe(self, key: str) -> None:
        await self.inner.subscribe(self.tag_for(key))

    async def listen(self, key: str, timeout: float) -> str:
        tag = self.tag_for(key)
        deadline = time.monotonic() + timeout if timeout else None

        while True:
            remaining = 0
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TraversalTimeout(f"no message for {key} within {timeout}s")

            sealed = await self.inner.listen(tag, remaining)
            try:
                return self.open(key, sealed)
            except SignalingUnavailable as e:
                logger.debug(f"[SIGNAL] Skipped foreign message: {e}")

    async def close(self) -> None:
        await self.inner.close()
