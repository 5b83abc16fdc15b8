"""
Hole Punching - Лестница стратегий подключения
==============================================

[HOLE PUNCH] Принцип работы:
1. Оба узла одновременно отправляют пакеты друг другу
2. NAT создаёт mapping для исходящего пакета
3. Входящий пакет от пира проходит через созданный mapping
4. Соединение установлено!

[STRATEGY] Строго по порядку, первая удачная завершает попытку:
1. Direct TCP: connect + handshake
2. UDP hole punch: смещения порта [0, +1, -1, +2, -2, +3, -3],
   до 3 раундов на каждый порт
3. TCP fallback: повтор direct TCP (сеть могла измениться)

[UDP ROUND] Раунд r (с 1):
- 10 + 5r проб "HOLE_PUNCH_PROBE_R<r>_P<i>", интервал 200ms + 10ms*i (макс 500ms)
- затем 3 секунды ждём любую датаграмму от целевого адреса
- содержимое не проверяется: любая датаграмма = успех
- неудача: пауза 1 секунда, следующий раунд

[TIMEOUT] timeout управляет только TCP dial. UDP фаза всегда идёт
по своему фиксированному расписанию.

[LIMITATIONS]
- Symmetric NAT: смещения порта помогают только при последовательной аллокации
- UDP путь не проходит handshake (любая датаграмма принимается)
"""

import asyncio
import logging
import socket
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..errors import (
    AllStrategiesExhausted,
    NetworkUnavailable,
    TraversalError,
    TraversalTimeout,
)
from .connection import Address, Connection, open_tcp_connection
from .handshake import HANDSHAKE_TIMEOUT, verify_handshake
from .stream import StreamAdapter, open_stream_adapter

logger = logging.getLogger(__name__)


# Порядок смещений порта для symmetric NAT с последовательной аллокацией
PORT_OFFSETS = (0, 1, -1, 2, -2, 3, -3)

MIN_PUNCH_PORT = 1024
MAX_PUNCH_PORT = 65535

PROBE_FORMAT = "HOLE_PUNCH_PROBE_R{round}_P{index}"


class Strategy(Enum):
    """Чем было установлено соединение."""
    DIRECT_TCP = "direct_tcp"
    UDP_HOLE_PUNCH = "udp_hole_punch"
    TCP_FALLBACK = "tcp_fallback"
    PASSIVE_ACCEPT = "passive_accept"


@dataclass(frozen=True)
class PunchSchedule:
    """
    Расписание UDP hole punching.

    Значения по умолчанию - рабочие; тесты уменьшают тайминги,
    не меняя алгоритм.
    """

    rounds: int = 3
    base_probes: int = 10
    probes_per_round: int = 5
    base_interval: float = 0.2
    interval_step: float = 0.01
    max_interval: float = 0.5
    listen_timeout: float = 3.0
    round_pause: float = 1.0

    def probe_count(self, round_no: int) -> int:
        """10 + 5r: 15, 20, 25 проб для раундов 1, 2, 3."""
        return self.base_probes + self.probes_per_round * round_no

    def probe_interval(self, index: int) -> float:
        return min(self.base_interval + self.interval_step * index, self.max_interval)


@dataclass
class ConnectionAttemptResult:
    """Установленное соединение и стратегия, которая его дала."""

    connection: Connection
    strategy: Strategy
    remote_address: Address
    elapsed: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "transport": self.connection.transport,
            "local": list(self.connection.local_address),
            "remote": list(self.remote_address),
            "elapsed": round(self.elapsed, 3),
        }


def candidate_ports(remote_port: int) -> List[Tuple[int, int]]:
    """
    Порты для UDP punch в порядке попыток: [(offset, port), ...].

    Смещения за пределами [1024, 65535] пропускаются.
    """
    candidates = []
    for offset in PORT_OFFSETS:
        port = remote_port + offset
        if MIN_PUNCH_PORT <= port <= MAX_PUNCH_PORT:
            candidates.append((offset, port))
    return candidates


class HolePunchEngine:
    """
    Оркестрация трёх стратегий подключения к одному пиру.

    [USAGE]
    ```python
    engine = HolePunchEngine()
    result = await engine.establish_connection("203.0.113.1", 54321, timeout=30)
    print(f"Connected via {result.strategy.value}")
    await result.connection.write(b"hello")
    ```
    """

    def __init__(
        self,
        schedule: Optional[PunchSchedule] = None,
        handshake_timeout: float = HANDSHAKE_TIMEOUT,
    ):
        """
        Args:
            schedule: Расписание UDP фазы
            handshake_timeout: Дедлайн ответа на handshake
        """
        self.schedule = schedule or PunchSchedule()
        self.handshake_timeout = handshake_timeout

    async def establish_connection(
        self,
        remote_ip: str,
        remote_port: int,
        timeout: float,
    ) -> ConnectionAttemptResult:
        """
        Установить соединение с пиром.

        Args:
            remote_ip: Публичный IP пира
            remote_port: Публичный порт пира
            timeout: Таймаут TCP dial (на UDP фазу не влияет)

        Raises:
            AllStrategiesExhausted: все три стратегии провалились
        """
        start = time.monotonic()
        attempts: List[Tuple[str, Exception]] = []

        # 1. Direct TCP
        try:
            conn = await self.attempt_tcp(remote_ip, remote_port, timeout)
            logger.info(f"[PUNCH] Direct connection established to {remote_ip}:{remote_port}")
            return ConnectionAttemptResult(
                conn, Strategy.DIRECT_TCP, (remote_ip, remote_port),
                time.monotonic() - start,
            )
        except TraversalError as e:
            logger.info(f"[PUNCH] Direct connection failed: {e}")
            attempts.append((Strategy.DIRECT_TCP.value, e))

        # 2. UDP hole punching
        logger.info("[PUNCH] Attempting UDP hole punching with port variations...")
        try:
            adapter = await self.punch(remote_ip, remote_port)
            logger.info(f"[PUNCH] UDP hole punch succeeded: {adapter.remote_address}")
            return ConnectionAttemptResult(
                adapter, Strategy.UDP_HOLE_PUNCH, adapter.remote_address,
                time.monotonic() - start,
            )
        except TraversalError as e:
            logger.info(f"[PUNCH] UDP hole punching failed: {e}")
            attempts.append((Strategy.UDP_HOLE_PUNCH.value, e))

        # 3. TCP fallback
        logger.info("[PUNCH] Attempting TCP fallback...")
        try:
            conn = await self.attempt_tcp(remote_ip, remote_port, timeout)
            logger.info(f"[PUNCH] TCP connection established (fallback) to {remote_ip}:{remote_port}")
            return ConnectionAttemptResult(
                conn, Strategy.TCP_FALLBACK, (remote_ip, remote_port),
                time.monotonic() - start,
            )
        except TraversalError as e:
            logger.info(f"[PUNCH] TCP fallback failed: {e}")
            attempts.append((Strategy.TCP_FALLBACK.value, e))

        logger.warning(f"[PUNCH] All strategies failed for {remote_ip}:{remote_port}")
        raise AllStrategiesExhausted(
            f"all connection strategies failed for {remote_ip}:{remote_port}",
            attempts,
        )

    async def attempt_tcp(
        self,
        remote_ip: str,
        remote_port: int,
        timeout: float,
    ) -> Connection:
        """TCP dial + handshake. Соединение закрывается при ошибке handshake."""
        conn = await open_tcp_connection(remote_ip, remote_port, timeout)
        await verify_handshake(conn, self.handshake_timeout)
        return conn

    async def punch(self, remote_ip: str, remote_port: int) -> StreamAdapter:
        """
        UDP hole punching по всем смещениям порта.

        Raises:
            TraversalTimeout: ни один порт не ответил
            NetworkUnavailable: не удалось резолвить адрес пира
        """
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(
                remote_ip, None, family=socket.AF_INET, type=socket.SOCK_DGRAM
            )
        except OSError as e:
            raise NetworkUnavailable(f"failed to resolve {remote_ip}: {e}") from e
        ip = infos[0][4][0]

        for offset, port in candidate_ports(remote_port):
            try:
                return await self.punch_port((ip, port))
            except TraversalError as e:
                logger.info(f"[PUNCH] Port offset {offset:+d} failed ({e}), trying next...")

        raise TraversalTimeout(f"all port combinations failed for {ip}:{remote_port}")

    async def punch_port(self, remote_addr: Address) -> StreamAdapter:
        """
        Hole punching на один порт пира с собственного UDP сокета.

        Сокет закрывается, если все раунды провалились.
        """
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setblocking(False)

        try:
            try:
                sock.bind(("0.0.0.0", 0))
            except OSError as e:
                raise NetworkUnavailable(f"failed to bind UDP socket: {e}") from e

            local_port = sock.getsockname()[1]
            logger.info(
                f"[PUNCH] Listening on UDP port {local_port}, "
                f"targeting {remote_addr[0]}:{remote_addr[1]}"
            )

            rounds = self.schedule.rounds
            for round_no in range(1, rounds + 1):
                logger.info(f"[PUNCH] Hole punching round {round_no}/{rounds}...")

                if await self.run_round(sock, remote_addr, round_no):
                    adapter = await open_stream_adapter(sock, remote_addr)
                    sock = None  # принадлежит адаптеру
                    return adapter

                if round_no < rounds:
                    logger.debug(f"[PUNCH] Round {round_no} timeout, starting round {round_no + 1}...")
                    await asyncio.sleep(self.schedule.round_pause)

            raise TraversalTimeout(
                f"no response from {remote_addr[0]}:{remote_addr[1]} after {rounds} rounds"
            )

        finally:
            if sock is not None:
                sock.close()

    async def run_round(
        self,
        sock: socket.socket,
        remote_addr: Address,
        round_no: int,
    ) -> bool:
        """Один раунд: серия проб, затем ожидание ответа."""
        loop = asyncio.get_running_loop()

        for index in range(self.schedule.probe_count(round_no)):
            probe = PROBE_FORMAT.format(round=round_no, index=index).encode()
            try:
                await loop.sock_sendto(sock, probe, remote_addr)
            except OSError as e:
                raise NetworkUnavailable(f"failed to send probe: {e}") from e

            logger.debug(f"[PUNCH] Probe {index + 1} sent (round {round_no})")
            await asyncio.sleep(self.schedule.probe_interval(index))

        return await self._await_response(sock, remote_addr)

    async def _await_response(self, sock: socket.socket, remote_addr: Address) -> bool:
        """Ждать любую датаграмму от remote_addr в течение listen_timeout."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.schedule.listen_timeout

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False

            try:
                data, addr = await asyncio.wait_for(
                    loop.sock_recvfrom(sock, 2048),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                return False
            except OSError as e:
                logger.debug(f"[PUNCH] Recv error: {e}")
                return False

            if (addr[0], addr[1]) == remote_addr:
                logger.info(
                    f"[PUNCH] Received hole punch response from {addr[0]}:{addr[1]} "
                    f"({len(data)} bytes)"
                )
                return True

            logger.debug(f"[PUNCH] Ignored datagram from {addr}")
