"""
Handshake - Проверка, что на том конце наш протокол
===================================================

[HANDSHAKE] Сразу после connect/accept, до любых данных приложения:
- инициатор: write(token) -> read_exactly(21) -> сравнить
- принимающий: read_exactly(21) -> сравнить -> write(token)

Отсекает соединения, которые "успешны" на транспортном уровне, но
ведут не к нашему пиру (middlebox, чужой хост, устаревший mapping).

[WIRE] 21 байт ASCII: "FOXHOLE_HANDSHAKE_v1\\n"
"""

import logging
import time

from ..errors import ProtocolViolation, TraversalTimeout
from .connection import Connection

logger = logging.getLogger(__name__)


HANDSHAKE_TOKEN = b"FOXHOLE_HANDSHAKE_v1\n"
HANDSHAKE_SIZE = len(HANDSHAKE_TOKEN)  # 21
HANDSHAKE_TIMEOUT = 5.0  # seconds


async def _read_token(conn: Connection, timeout: float) -> None:
    """21 байт с дедлайном (TCP накапливает сегменты), побайтовое сравнение."""
    conn.set_read_deadline(time.time() + timeout)
    try:
        response = await conn.read_exactly(HANDSHAKE_SIZE)
    finally:
        conn.set_read_deadline(None)

    if len(response) != HANDSHAKE_SIZE:
        raise ProtocolViolation(
            f"handshake length mismatch: {len(response)} != {HANDSHAKE_SIZE}"
        )
    if response != HANDSHAKE_TOKEN:
        raise ProtocolViolation(f"invalid handshake token: {response!r}")


async def verify_handshake(conn: Connection, timeout: float = HANDSHAKE_TIMEOUT) -> None:
    """
    Сторона-инициатор: отправить токен и дождаться такого же в ответ.

    При любой ошибке соединение закрывается.

    Raises:
        ProtocolViolation: неверная длина или содержимое
        TraversalTimeout: нет ответа за timeout
    """
    try:
        await conn.write(HANDSHAKE_TOKEN)
        await _read_token(conn, timeout)
    except (ProtocolViolation, TraversalTimeout) as e:
        logger.debug(f"[HANDSHAKE] Failed with {conn.remote_address}: {e}")
        await conn.close()
        raise
    except (ConnectionError, OSError) as e:
        await conn.close()
        raise ProtocolViolation(f"handshake I/O failed: {e}") from e

    logger.debug(f"[HANDSHAKE] Verified {conn.remote_address}")


async def answer_handshake(conn: Connection, timeout: float = HANDSHAKE_TIMEOUT) -> None:
    """
    Принимающая сторона: дождаться токена и ответить им же.

    Raises:
        ProtocolViolation / TraversalTimeout, соединение закрыто
    """
    try:
        await _read_token(conn, timeout)
        await conn.write(HANDSHAKE_TOKEN)
    except (ProtocolViolation, TraversalTimeout) as e:
        logger.debug(f"[HANDSHAKE] Rejected {conn.remote_address}: {e}")
        await conn.close()
        raise
    except (ConnectionError, OSError) as e:
        await conn.close()
        raise ProtocolViolation(f"handshake I/O failed: {e}") from e

    logger.debug(f"[HANDSHAKE] Answered {conn.remote_address}")
