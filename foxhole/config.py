"""
Foxhole Configuration
=====================
Конфигурация NAT traversal и signaling канала.

[CONFIG] Источники (по возрастанию приоритета):
1. Значения по умолчанию ниже
2. Файл foxhole.conf (key = value, # комментарии)
3. Переменные окружения FOXHOLE_*

Глобального изменяемого состояния нет: настройки собираются один раз
в load_settings() и передаются в конструкторы явно.
"""

import os
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from .errors import ConfigError

# ============================================================================
# Defaults
# ============================================================================

DEFAULT_STUN_SERVER = "stun.l.google.com:19302"
DEFAULT_LOCAL_PORT = 8080
DEFAULT_TIMEOUT = 30
DEFAULT_SECRET = "super-secret-key"
DEFAULT_RELAY_URL = "http://127.0.0.1:8765"
DEFAULT_LOOKUP_WINDOW = 300.0

CONFIG_FILE_NAME = "foxhole.conf"

# foxhole.conf key -> поле SignalingSettings
_FILE_KEYS = {
    "user-secret": "secret",
    "listen-timeout": "listen_timeout",
    "relay-url": "relay_url",
    "stun-server": "stun_server",
}


class Role(Enum):
    """Роль узла в попытке соединения."""
    LISTENER = "listen"
    CONNECTOR = "connect"


def parse_host_port(value: str) -> tuple:
    """
    Разобрать "host:port" в (host, port).

    Raises:
        ConfigError: если формат неверный
    """
    host, sep, port_str = value.rpartition(":")
    if not sep or not host:
        raise ConfigError(f"expected host:port, got {value!r}")

    host = host.strip("[]")
    try:
        port = int(port_str)
    except ValueError:
        raise ConfigError(f"invalid port in {value!r}") from None

    if not 0 < port <= 65535:
        raise ConfigError(f"port out of range in {value!r}")

    return host, port


@dataclass(frozen=True)
class TraversalConfig:
    """
    Входная запись для ядра NAT traversal.

    [CONTRACT] Создаётся внешним слоем (CLI), валидируется до сетевой
    активности и не меняется ядром.
    """

    role: Role
    local_id: str
    remote_id: str = ""
    stun_server: str = DEFAULT_STUN_SERVER

    # Локальный порт для STUN и TCP listener (0 = случайный)
    local_port: int = DEFAULT_LOCAL_PORT

    # Таймаут TCP dial в секундах
    timeout_seconds: int = DEFAULT_TIMEOUT

    def validate(self) -> "TraversalConfig":
        """Проверить запись, вернуть self."""
        if not isinstance(self.role, Role):
            raise ConfigError(f"unknown role: {self.role!r}")
        if not self.local_id:
            raise ConfigError("local id is required")
        if self.role == Role.CONNECTOR:
            if not self.remote_id:
                raise ConfigError("remote id is required in connect mode")
            if self.remote_id == self.local_id:
                raise ConfigError("remote id must differ from local id")
        if not 0 <= self.local_port <= 65535:
            raise ConfigError(f"local port out of range: {self.local_port}")
        if self.timeout_seconds <= 0:
            raise ConfigError(f"timeout must be positive: {self.timeout_seconds}")
        parse_host_port(self.stun_server)
        return self


@dataclass(frozen=True)
class SignalingSettings:
    """Настройки signaling канала (передаются в его конструктор)."""

    # Общий секрет для шифрования payload'ов
    secret: str = DEFAULT_SECRET

    # Адрес mailbox relay
    relay_url: str = DEFAULT_RELAY_URL

    # Таймаут listen по умолчанию (0 = бесконечно)
    listen_timeout: int = DEFAULT_TIMEOUT

    # Окно, в котором retrieve видит последнее сообщение (секунды)
    lookup_window: float = DEFAULT_LOOKUP_WINDOW

    stun_server: str = DEFAULT_STUN_SERVER


def read_config_file(path: Path) -> Dict[str, str]:
    """
    Прочитать foxhole.conf.

    Неизвестные ключи и строки без '=' пропускаются; отсутствующий файл
    даёт пустой словарь.
    """
    values: Dict[str, str] = {}
    if not path.is_file():
        return values

    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if key in _FILE_KEYS and value:
            values[_FILE_KEYS[key]] = value

    return values


def load_settings(
    config_path: Optional[Path] = None,
    environ: Optional[Dict[str, str]] = None,
) -> SignalingSettings:
    """
    Собрать SignalingSettings из файла и окружения.

    Args:
        config_path: Путь к foxhole.conf (по умолчанию ./foxhole.conf)
        environ: Окружение (по умолчанию os.environ)
    """
    env = os.environ if environ is None else environ
    path = config_path or Path.cwd() / CONFIG_FILE_NAME

    values: Dict[str, str] = read_config_file(path)

    env_map = {
        "FOXHOLE_SECRET": "secret",
        "FOXHOLE_RELAY_URL": "relay_url",
        "FOXHOLE_LISTEN_TIMEOUT": "listen_timeout",
        "FOXHOLE_STUN_SERVER": "stun_server",
    }
    for env_key, name in env_map.items():
        value = env.get(env_key, "").strip()
        if value:
            values[name] = value

    settings = SignalingSettings()

    if "listen_timeout" in values:
        try:
            timeout = int(values.pop("listen_timeout"))
        except ValueError:
            timeout = -1
        # Отрицательные и нечисловые значения игнорируются
        if timeout >= 0:
            settings = replace(settings, listen_timeout=timeout)

    return replace(settings, **values)
