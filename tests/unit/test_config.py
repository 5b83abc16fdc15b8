"""
Configuration Unit Tests
========================

[CONFIG] Invalid records must be rejected before any socket is opened.
"""

from dataclasses import FrozenInstanceError

import pytest

from foxhole.config import (
    DEFAULT_LOCAL_PORT,
    DEFAULT_SECRET,
    DEFAULT_STUN_SERVER,
    Role,
    SignalingSettings,
    TraversalConfig,
    load_settings,
    parse_host_port,
    read_config_file,
)
from foxhole.errors import ConfigError


class TestParseHostPort:
    """Test host:port parsing."""

    def test_host_and_port(self):
        assert parse_host_port("stun.l.google.com:19302") == ("stun.l.google.com", 19302)

    def test_ipv6_brackets(self):
        assert parse_host_port("[2001:db8::1]:3478") == ("2001:db8::1", 3478)

    @pytest.mark.parametrize("value", ["no-port", ":3478", "host:abc", "host:0", "host:70000"])
    def test_invalid(self, value):
        with pytest.raises(ConfigError):
            parse_host_port(value)


class TestTraversalConfig:
    """Test TraversalConfig validation."""

    def test_defaults(self):
        config = TraversalConfig(role=Role.LISTENER, local_id="alice")

        assert config.stun_server == DEFAULT_STUN_SERVER
        assert config.local_port == DEFAULT_LOCAL_PORT == 8080
        assert config.timeout_seconds == 30
        assert config.validate() is config

    def test_connector_requires_remote_id(self):
        with pytest.raises(ConfigError):
            TraversalConfig(role=Role.CONNECTOR, local_id="bob").validate()

    def test_remote_must_differ(self):
        config = TraversalConfig(role=Role.CONNECTOR, local_id="bob", remote_id="bob")
        with pytest.raises(ConfigError):
            config.validate()

    def test_local_id_required(self):
        with pytest.raises(ConfigError):
            TraversalConfig(role=Role.LISTENER, local_id="").validate()

    def test_unknown_role(self):
        with pytest.raises(ConfigError):
            TraversalConfig(role="listen", local_id="alice").validate()

    def test_bad_port(self):
        with pytest.raises(ConfigError):
            TraversalConfig(role=Role.LISTENER, local_id="alice", local_port=70000).validate()

    def test_bad_timeout(self):
        with pytest.raises(ConfigError):
            TraversalConfig(role=Role.LISTENER, local_id="alice", timeout_seconds=0).validate()

    def test_bad_stun_server(self):
        with pytest.raises(ConfigError):
            TraversalConfig(role=Role.LISTENER, local_id="alice", stun_server="nope").validate()

    def test_frozen(self):
        config = TraversalConfig(role=Role.LISTENER, local_id="alice")
        with pytest.raises(FrozenInstanceError):
            config.local_id = "mallory"


class TestSettings:
    """Test foxhole.conf and environment loading."""

    def test_defaults_without_file(self, tmp_path):
        settings = load_settings(tmp_path / "missing.conf", environ={})

        assert settings == SignalingSettings()
        assert settings.secret == DEFAULT_SECRET

    def test_config_file(self, tmp_path):
        path = tmp_path / "foxhole.conf"
        path.write_text(
            "# comment\n"
            "user-secret = from-file\n"
            "listen-timeout = 0\n"
            "unknown-key = ignored\n"
            "not a pair\n",
            encoding="utf-8",
        )

        settings = load_settings(path, environ={})

        assert settings.secret == "from-file"
        assert settings.listen_timeout == 0

    def test_environment_overrides_file(self, tmp_path):
        path = tmp_path / "foxhole.conf"
        path.write_text("user-secret = from-file\nrelay-url = http://file:1\n", encoding="utf-8")

        settings = load_settings(
            path,
            environ={"FOXHOLE_SECRET": "from-env", "FOXHOLE_STUN_SERVER": "stun.example:3478"},
        )

        assert settings.secret == "from-env"
        assert settings.relay_url == "http://file:1"
        assert settings.stun_server == "stun.example:3478"

    def test_negative_listen_timeout_ignored(self, tmp_path):
        path = tmp_path / "foxhole.conf"
        path.write_text("listen-timeout = -5\n", encoding="utf-8")

        assert load_settings(path, environ={}).listen_timeout == 30

    def test_non_numeric_listen_timeout_ignored(self, tmp_path):
        settings = load_settings(tmp_path / "x.conf", environ={"FOXHOLE_LISTEN_TIMEOUT": "soon"})
        assert settings.listen_timeout == 30

    def test_read_config_file_empty_values_skipped(self, tmp_path):
        path = tmp_path / "foxhole.conf"
        path.write_text("user-secret =\n", encoding="utf-8")

        assert read_config_file(path) == {}
