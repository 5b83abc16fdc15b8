"""
Signaling Channel - внешний keyed pub/sub
=========================================

[SIGNALING] Используется только для обмена адресами и временем старта,
не для данных приложения:
- publish(id, payload): опубликовать сообщение под ключом id
- retrieve(id): последнее сообщение под id в окне поиска реализации
- listen(id, timeout): следующее сообщение, опубликованное после начала
  прослушивания (timeout 0 = ждать бесконечно)
- subscribe(id): начать прослушивание заранее, не блокируясь

[KEYS] Под ID узла лежит только его запись; сообщения для узла
идут в inbox_key(ID).
Конфиденциальность и аутентичность payload'ов - забота реализации
(см. SealedSignalingChannel).
"""

from abc import ABC, abstractmethod


class SignalingChannel(ABC):
    """Абстрактный signaling канал."""

    @abstractmethod
    async def publish(self, key: str, payload: str) -> None:
        """
        Raises:
            SignalingUnavailable: публикация не удалась
        """

    @abstractmethod
    async def retrieve(self, key: str) -> str:
        """
        Raises:
            SignalingUnavailable: под key ничего нет в окне поиска
        """

    @abstractmethod
    async def listen(self, key: str, timeout: float) -> str:
        """
        Raises:
            TraversalTimeout: ничего не пришло за timeout
            SignalingUnavailable: канал недоступен
        """

    async def subscribe(self, key: str) -> None:
        """
        Зафиксировать начало прослушивания key.

        Сообщения, опубликованные после subscribe, получит следующий listen.
        Без вызова точкой отсчёта служит первый listen.
        """

    async def close(self) -> None:
        """Освободить ресурсы канала."""


INBOX_SUFFIX = ".inbox"


def inbox_key(node_id: str) -> str:
    """
    Ключ входящих для node_id.

    Запись узла лежит под node_id, адресованные ему сообщения
    (адрес пира, предложения времени старта) - под inbox_key(node_id),
    поэтому retrieve(node_id) всегда возвращает его собственную запись.
    """
    return f"{node_id}{INBOX_SUFFIX}"
