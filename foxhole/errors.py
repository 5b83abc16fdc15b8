"""
Foxhole Errors
==============

[ERRORS] Иерархия исключений NAT traversal:
- NetworkUnavailable: bind/dial/resolve не удался
- TraversalTimeout: нет ответа в пределах дедлайна
- ProtocolViolation: неверный handshake, битый STUN ответ
- SignalingUnavailable: операция signaling канала не удалась
- AllStrategiesExhausted: все стратегии подключения провалились
- ConfigError: невалидная конфигурация (до любой сетевой активности)
"""

from typing import List, Optional, Tuple


class TraversalError(Exception):
    """Базовая ошибка NAT traversal."""
    pass


class NetworkUnavailable(TraversalError):
    """Не удалось забиндить сокет, подключиться или резолвить адрес."""
    pass


class TraversalTimeout(TraversalError, TimeoutError):
    """Истёк дедлайн ожидания ответа."""
    pass


class ProtocolViolation(TraversalError):
    """Пир или сервер ответил не по протоколу."""
    pass


class SignalingUnavailable(TraversalError):
    """Signaling канал не смог опубликовать или выдать сообщение."""
    pass


class ConfigError(TraversalError):
    """Невалидная конфигурация."""
    pass


class AllStrategiesExhausted(TraversalError):
    """
    Терминальная ошибка HolePunchEngine.
    
    attempts содержит (имя стратегии, ошибка) в порядке попыток.
    """
    
    def __init__(
        self,
        message: str,
        attempts: Optional[List[Tuple[str, Exception]]] = None,
    ):
        super().__init__(message)
        self.attempts = attempts or []
