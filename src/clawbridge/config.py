"""Configuration — env settings plus the JSON config file for channels.

Supports two modes:
1. Module-level constants (env-var driven, `.env` loaded on import)
2. JSON config file at ~/.clawbridge/config.json

A channel is enabled by the presence of its section under "channels"::

    {
        "channels": {
            "telegram": {"bot_token": "123:abc", "allowed_users": ["42"]},
            "http": {"port": 8080}
        },
        "dispatch": {"inbound_queue_size": 100, "send_retries": 1},
        "health_monitor": {"schedule": "every 5 minutes"}
    }

Sections are kept raw here and parsed into typed records by the channel
registry, so a malformed section only fails that one channel.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any

from dotenv import load_dotenv

# Load .env from project root if present
load_dotenv()

# ── Process Settings ──

CLAWBRIDGE_HOME = os.path.expanduser(os.getenv("CLAWBRIDGE_HOME", "~/.clawbridge"))
CONFIG_PATH_ENV = "CLAWBRIDGE_CONFIG"
LOG_LEVEL = os.getenv("CLAWBRIDGE_LOG_LEVEL", "INFO")


class ConfigError(Exception):
    """A config file or a channel section is structurally invalid."""


def _require_str(section: str, data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"channels.{section}: '{key}' is required")
    return value


def _str_list(section: str, data: dict[str, Any], key: str) -> list[str]:
    value = data.get(key, [])
    if not isinstance(value, list):
        raise ConfigError(f"channels.{section}: '{key}' must be a list")
    return [str(v) for v in value]


def _number(section: str, data: dict[str, Any], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{section}: '{key}' must be a number")
    return value


# ── Channel Sections ──


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str
    allowed_users: list[str] = field(default_factory=list)
    poll_timeout: int = 10

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TelegramConfig:
        return cls(
            bot_token=_require_str("telegram", data, "bot_token"),
            allowed_users=_str_list("telegram", data, "allowed_users"),
            poll_timeout=int(_number("channels.telegram", data, "poll_timeout", 10)),
        )


@dataclass(frozen=True)
class DiscordConfig:
    bot_token: str
    allowed_users: list[str] = field(default_factory=list)
    guild_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DiscordConfig:
        guild_id = data.get("guild_id")
        return cls(
            bot_token=_require_str("discord", data, "bot_token"),
            allowed_users=_str_list("discord", data, "allowed_users"),
            guild_id=str(guild_id) if guild_id is not None else None,
        )


@dataclass(frozen=True)
class QQConfig:
    app_id: str
    app_secret: str
    sandbox: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QQConfig:
        return cls(
            app_id=_require_str("qq", data, "app_id"),
            app_secret=_require_str("qq", data, "app_secret"),
            sandbox=bool(data.get("sandbox", False)),
        )


@dataclass(frozen=True)
class HttpConfig:
    host: str = "127.0.0.1"
    port: int = 5000
    outbox_limit: int = 100
    max_recipients: int = 1000

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HttpConfig:
        port = data.get("port", 5000)
        if isinstance(port, bool) or not isinstance(port, int) or not 0 <= port <= 65535:
            raise ConfigError("channels.http: 'port' must be an integer in 0-65535")
        limits = {}
        for key, default in (("outbox_limit", 100), ("max_recipients", 1000)):
            value = data.get(key, default)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ConfigError(f"channels.http: '{key}' must be a positive integer")
            limits[key] = value
        return cls(host=str(data.get("host", "127.0.0.1")), port=port, **limits)


@dataclass(frozen=True)
class CliConfig:
    sender_id: str = "operator"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CliConfig:
        return cls(sender_id=str(data.get("sender_id", "operator")))


@dataclass(frozen=True)
class EchoConfig:
    name: str = "echo"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EchoConfig:
        return cls(name=str(data.get("name", "echo")))


# ── Runtime Knobs ──


@dataclass
class DispatchSettings:
    """Queue, retry, timeout and restart knobs for the dispatch core.

    Attributes:
        inbound_queue_size: Capacity of the shared inbound queue (0 = unbounded).
        send_retries: Extra attempts for a failed outbound send.
        retry_delay: Seconds between send attempts.
        health_timeout: Per-channel bound for a health probe.
        shutdown_grace: Seconds to wait for listeners to stop before abandoning them.
        restart_listeners: Restart a listener that exited with an error.
        restart_delay: Seconds to wait before a restart.
        max_restarts: Restart attempts per listener before giving up.
    """

    inbound_queue_size: int = 100
    send_retries: int = 0
    retry_delay: float = 1.0
    health_timeout: float = 10.0
    shutdown_grace: float = 5.0
    restart_listeners: bool = False
    restart_delay: float = 5.0
    max_restarts: int = 3

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DispatchSettings:
        defaults = cls()
        return cls(
            inbound_queue_size=int(_number("dispatch", data, "inbound_queue_size", defaults.inbound_queue_size)),
            send_retries=int(_number("dispatch", data, "send_retries", defaults.send_retries)),
            retry_delay=_number("dispatch", data, "retry_delay", defaults.retry_delay),
            health_timeout=_number("dispatch", data, "health_timeout", defaults.health_timeout),
            shutdown_grace=_number("dispatch", data, "shutdown_grace", defaults.shutdown_grace),
            restart_listeners=bool(data.get("restart_listeners", defaults.restart_listeners)),
            restart_delay=_number("dispatch", data, "restart_delay", defaults.restart_delay),
            max_restarts=int(_number("dispatch", data, "max_restarts", defaults.max_restarts)),
        )


@dataclass
class HealthMonitorSettings:
    """Periodic health probe while running. `schedule` uses the `schedule` syntax."""

    schedule: str | None = None


# ── Env Credential Fallback ──

_ENV_SECTIONS: dict[str, dict[str, str]] = {
    "telegram": {"bot_token": "TELEGRAM_BOT_TOKEN"},
    "discord": {"bot_token": "DISCORD_BOT_TOKEN"},
    "qq": {"app_id": "QQ_APP_ID", "app_secret": "QQ_APP_SECRET"},
}


def _env_sections() -> dict[str, dict[str, Any]]:
    """Channel sections implied by credentials in the environment."""
    sections: dict[str, dict[str, Any]] = {}
    for key, fields in _ENV_SECTIONS.items():
        values = {name: os.getenv(var, "") for name, var in fields.items()}
        if all(values.values()):
            sections[key] = values
    return sections


@dataclass
class AppConfig:
    """Full application configuration loaded from config.json.

    `channels` maps a platform key to its raw section; a missing key means
    the channel is disabled.
    """

    home: str = field(default_factory=lambda: CLAWBRIDGE_HOME)
    channels: dict[str, dict[str, Any]] = field(default_factory=dict)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    health_monitor: HealthMonitorSettings = field(default_factory=HealthMonitorSettings)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppConfig:
        """Build config from a parsed JSON dict."""
        if not isinstance(data, dict):
            raise ConfigError("config root must be a JSON object")

        raw_channels = data.get("channels", {})
        if not isinstance(raw_channels, dict):
            raise ConfigError("'channels' must be an object")

        channels: dict[str, dict[str, Any]] = {}
        for key, section in raw_channels.items():
            if section is None:
                continue  # null == absent == disabled
            if not isinstance(section, dict):
                raise ConfigError(f"channels.{key} must be an object")
            channels[key] = dict(section)

        dispatch = data.get("dispatch") or {}
        if not isinstance(dispatch, dict):
            raise ConfigError("'dispatch' must be an object")

        monitor = data.get("health_monitor") or {}
        if not isinstance(monitor, dict):
            raise ConfigError("'health_monitor' must be an object")
        schedule = monitor.get("schedule")
        if schedule is not None and not isinstance(schedule, str):
            raise ConfigError("health_monitor: 'schedule' must be a string")

        home = data.get("home", CLAWBRIDGE_HOME)
        if not isinstance(home, str):
            raise ConfigError("'home' must be a string")

        return cls(
            home=os.path.expanduser(home),
            channels=channels,
            dispatch=DispatchSettings.from_dict(dispatch),
            health_monitor=HealthMonitorSettings(schedule=schedule),
        )

    @classmethod
    def from_file(cls, path: str) -> AppConfig:
        """Load config from a JSON file. Returns defaults if file doesn't exist."""
        if not os.path.exists(path):
            return cls()

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"{path}: invalid JSON ({e})") from e
        except (UnicodeDecodeError, OSError) as e:
            raise ConfigError(f"{path}: cannot read config ({e})") from e
        return cls.from_dict(data)

    @classmethod
    def load(cls, home: str | None = None) -> AppConfig:
        """Load config from the standard location.

        Checks:
        1. CLAWBRIDGE_CONFIG env var
        2. <home>/config.json
        3. Falls back to defaults

        Credentials in the environment enable a channel the file leaves out.
        """
        config_path = os.getenv(CONFIG_PATH_ENV)
        if config_path and os.path.exists(config_path):
            config = cls.from_file(config_path)
        else:
            config = cls.from_file(os.path.join(home or CLAWBRIDGE_HOME, "config.json"))

        for key, section in _env_sections().items():
            config.channels.setdefault(key, section)
        return config

    def validate(self) -> list[str]:
        """Validate the config and return a list of warnings (empty = valid)."""
        from clawbridge.channels.registry import CHANNEL_KEYS

        warnings: list[str] = []

        for key in self.channels:
            if key not in CHANNEL_KEYS:
                warnings.append(f"Unknown channel '{key}' (known: {', '.join(CHANNEL_KEYS)})")

        d = self.dispatch
        if d.inbound_queue_size < 0:
            warnings.append("dispatch.inbound_queue_size must be >= 0")
        if d.send_retries < 0:
            warnings.append("dispatch.send_retries must be >= 0")
        if d.health_timeout <= 0:
            warnings.append("dispatch.health_timeout must be > 0")
        if d.shutdown_grace < 0:
            warnings.append("dispatch.shutdown_grace must be >= 0")
        if d.max_restarts < 0:
            warnings.append("dispatch.max_restarts must be >= 0")

        return warnings
