"""
Connection Orchestrator - полный сценарий для одной роли
========================================================

[LISTENER]
1. STUN: публичный адрес для local_port (0 = порт, выбранный ОС)
2. Публикуем свой PeerAddress под своим ID
3. Параллельно:
   a) активный путь: до 30s ждём адрес connector'а во входящих,
      согласуем epoch, запускаем HolePunchEngine к connector'у
   b) пассивный путь: TCP listen на том же local_port, accept +
      answer_handshake; после отвергнутого handshake ждём следующего
4. Первый путь, давший соединение, побеждает; второй отменяется,
   опоздавшее соединение закрывается

[CONNECTOR]
1. STUN: публичный адрес для local_port
2. Получаем PeerAddress listener'а (ошибка фатальна)
3. Публикуем свой PeerAddress под своим ID и (best effort) во входящие listener'а
4. Согласуем epoch, ждём его
5. HolePunchEngine к публичному адресу listener'а

Результат - ConnectionAttemptResult; соединением владеет вызывающий.
"""

import asyncio
import logging
from contextlib import suppress
from typing import Callable, Optional

from .config import Role, TraversalConfig
from .errors import (
    AllStrategiesExhausted,
    SignalingUnavailable,
    TraversalError,
    TraversalTimeout,
)
from .exchange import AddressExchanger, PeerAddress
from .nat.connection import TCPConnection
from .nat.handshake import answer_handshake
from .nat.hole_punch import ConnectionAttemptResult, HolePunchEngine, Strategy
from .nat.stun import STUNClient, get_local_ip
from .signaling.base import SignalingChannel, inbox_key
from .sync import EpochNegotiator

logger = logging.getLogger(__name__)

PEER_INFO_WAIT = 30.0  # seconds


class ConnectionOrchestrator:
    """
    Запуск NAT traversal для роли из TraversalConfig.

    [USAGE]
    ```python
    orchestrator = ConnectionOrchestrator(config, channel)
    result = await orchestrator.run()
    async with result.connection as conn:
        await conn.write(b"hello")
    ```
    """

    def __init__(
        self,
        config: TraversalConfig,
        channel: SignalingChannel,
        resolver: Optional[STUNClient] = None,
        engine: Optional[HolePunchEngine] = None,
        negotiator: Optional[EpochNegotiator] = None,
        local_ip_lookup: Callable[[], str] = get_local_ip,
        peer_info_wait: float = PEER_INFO_WAIT,
        accept_timeout: Optional[float] = None,
    ):
        """
        Args:
            config: Параметры попытки
            channel: Signaling канал
            resolver: STUN клиент (по умолчанию для config.stun_server)
            engine: HolePunchEngine
            negotiator: Согласование времени старта
            local_ip_lookup: Источник LAN адреса для PeerAddress
            peer_info_wait: Сколько listener ждёт адрес connector'а
            accept_timeout: Общий лимит ожидания listener'а (None = без лимита)
        """
        self.config = config
        self.channel = channel
        self.resolver = resolver or STUNClient(config.stun_server)
        self.engine = engine or HolePunchEngine()
        self.negotiator = negotiator or EpochNegotiator(channel)
        self.exchanger = AddressExchanger(channel)
        self.local_ip_lookup = local_ip_lookup
        self.peer_info_wait = peer_info_wait
        self.accept_timeout = accept_timeout

    async def run(self) -> ConnectionAttemptResult:
        """
        Выполнить сценарий роли.

        Raises:
            ConfigError: запись невалидна (до любого I/O)
            SignalingUnavailable: connector не получил адрес listener'а
            AllStrategiesExhausted: connector исчерпал стратегии
        """
        self.config.validate()

        if self.config.role == Role.LISTENER:
            return await self._run_listener()
        return await self._run_connector()

    async def _resolve_own_address(self) -> PeerAddress:
        # local_port=0: порт, реально занятый STUN запросом, становится нашим
        mapped = await self.resolver.resolve(self.config.local_port)
        return PeerAddress(
            id=self.config.local_id,
            ip=mapped.ip,
            port=mapped.port,
            local_ip=self.local_ip_lookup(),
            local_port=mapped.local_port,
        )

    # ------------------------------------------------------------------
    # Listener
    # ------------------------------------------------------------------

    async def _run_listener(self) -> ConnectionAttemptResult:
        own_id = self.config.local_id
        logger.info(f"[LISTENER] Listening mode - ID: {own_id}")

        own = await self._resolve_own_address()
        logger.info(
            f"[LISTENER] Public address: {own.ip}:{own.port} "
            f"(local port: {own.local_port})"
        )

        # Курсор входящих до публикации: адрес connector'а не потеряется
        await self.channel.subscribe(inbox_key(own_id))
        await self.exchanger.publish(own)
        logger.info("[LISTENER] Connection info published. Waiting for peer...")

        loop = asyncio.get_running_loop()
        slot: asyncio.Future = loop.create_future()

        server = await asyncio.start_server(
            lambda r, w: self._accept(r, w, slot),
            "0.0.0.0",
            own.local_port,
            reuse_address=True,
        )
        if server.sockets:
            addr = server.sockets[0].getsockname()
            logger.info(f"[LISTENER] Listening for incoming connections on {addr[0]}:{addr[1]}")

        active = asyncio.create_task(self._active_path(slot))
        active.add_done_callback(lambda task: self._propagate_failure(task, slot))

        try:
            try:
                return await asyncio.wait_for(slot, timeout=self.accept_timeout)
            except asyncio.TimeoutError:
                raise TraversalTimeout(
                    f"no connection within {self.accept_timeout}s"
                ) from None
        finally:
            active.cancel()
            with suppress(asyncio.CancelledError):
                await active
            # wait_closed() ждал бы и принятое соединение, которым владеет вызывающий
            server.close()

    async def _accept(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        slot: asyncio.Future,
    ) -> None:
        """Пассивный путь: принять соединение и ответить на handshake."""
        conn = TCPConnection(reader, writer)
        if slot.done():
            await conn.close()
            return

        logger.info(f"[LISTENER] Incoming connection from {conn.remote_address}")
        try:
            await answer_handshake(conn, self.engine.handshake_timeout)
        except TraversalError as e:
            logger.warning(f"[LISTENER] Rejected {conn.remote_address}: {e}")
            return

        await self._offer(
            slot,
            ConnectionAttemptResult(conn, Strategy.PASSIVE_ACCEPT, conn.remote_address),
        )

    async def _active_path(self, slot: asyncio.Future) -> None:
        """Активный путь: адрес connector'а -> epoch -> engine."""
        own_id = self.config.local_id

        try:
            peer = await self.exchanger.listen(own_id, self.peer_info_wait)
        except TraversalError as e:
            logger.warning(f"[LISTENER] Could not retrieve peer info: {e}")
            logger.info("[LISTENER] Proceeding with direct listening...")
            return

        logger.info(f"[LISTENER] Received peer info: {peer.ip}:{peer.port}")

        try:
            await self.negotiator.synchronize(own_id, peer.id)
        except TraversalError as e:
            logger.warning(f"[LISTENER] Start time negotiation failed ({e}), punching now")
        logger.info("[LISTENER] Starting synchronized bidirectional hole punching")

        try:
            result = await self.engine.establish_connection(
                peer.ip, peer.port, self.config.timeout_seconds
            )
        except AllStrategiesExhausted as e:
            logger.warning(f"[LISTENER] Listener hole punching failed: {e}")
            return

        logger.info(f"[LISTENER] Established connection via {result.strategy.value}")
        await self._offer(slot, result)

    @staticmethod
    async def _offer(slot: asyncio.Future, result: ConnectionAttemptResult) -> None:
        """Первый записавший побеждает; опоздавшее соединение закрывается."""
        if slot.done():
            logger.debug(f"[LISTENER] Closing late connection ({result.strategy.value})")
            await result.connection.close()
            return
        slot.set_result(result)

    @staticmethod
    def _propagate_failure(task: asyncio.Task, slot: asyncio.Future) -> None:
        if task.cancelled() or slot.done():
            return
        exc = task.exception()
        if exc is not None:
            slot.set_exception(exc)

    # ------------------------------------------------------------------
    # Connector
    # ------------------------------------------------------------------

    async def _run_connector(self) -> ConnectionAttemptResult:
        own_id = self.config.local_id
        remote_id = self.config.remote_id
        logger.info(f"[CONNECTOR] Connect mode - Local ID: {own_id}, Remote ID: {remote_id}")

        own = await self._resolve_own_address()
        logger.info(f"[CONNECTOR] Local public address: {own.ip}:{own.port}")

        # Предложение listener'а может прийти раньше negotiate()
        await self.channel.subscribe(inbox_key(own_id))

        logger.info("[CONNECTOR] Retrieving peer connection info...")
        try:
            peer = await self.exchanger.retrieve(remote_id)
        except TraversalError as e:
            raise SignalingUnavailable(
                f"failed to retrieve peer connection info: {e}"
            ) from e
        logger.info(f"[CONNECTOR] Remote address: {peer.ip}:{peer.port}")

        await self.exchanger.publish(own)

        try:
            await self.exchanger.send_to(remote_id, own)
        except TraversalError as e:
            logger.warning(f"[CONNECTOR] Failed to send local info to peer: {e}")

        await self.negotiator.synchronize(own_id, remote_id)
        logger.info("[CONNECTOR] Starting synchronized hole punching")

        result = await self.engine.establish_connection(
            peer.ip, peer.port, self.config.timeout_seconds
        )
        logger.info(f"[CONNECTOR] Connection established via {result.strategy.value}")
        return result
