import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

import yaml
from loguru import logger

from .exceptions import ConfigError

RUN_MODES = ("daemon", "once")

DEFAULT_CONFIG_PATH = "config/config.yaml"


@dataclass(frozen=True)
class BrokerConfig:
    """Connection parameters for one MQTT broker."""

    host: str
    port: int = 1883
    username: str = ""
    password: str = ""
    use_tls: bool = False
    client_id: str = ""
    keepalive: int = 60

    @property
    def has_credentials(self) -> bool:
        # Both halves are required; a lone username or password means no auth.
        return bool(self.username) and bool(self.password)

    @property
    def has_partial_credentials(self) -> bool:
        return bool(self.username) != bool(self.password)


@dataclass(frozen=True)
class BridgeConfig:
    """
    Fully materialized bridge configuration. Never mutated after loading.
    """

    source: BrokerConfig
    target: BrokerConfig
    mappings: Mapping[str, str] = field(default_factory=dict)
    qos: int = 0
    run_mode: str = "daemon"
    debug: bool = False
    exit_on_idle: bool = False
    idle_timeout_seconds: int = 0
    connect_timeout_seconds: float | None = None
    max_workers: int = 4
    log_level: str = "INFO"

    @property
    def idle_exit_enabled(self) -> bool:
        return self.exit_on_idle and self.idle_timeout_seconds > 0

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "BridgeConfig":
        """
        Builds a BridgeConfig from the flat key layout of config.yaml.

        Raises:
            ConfigError: if a required key is missing or a value is invalid.
        """
        if not isinstance(raw, dict):
            raise ConfigError("Configuration root must be a mapping.")

        use_tls = _get_bool(raw, "use_tls", False)
        keepalive = _get_int(raw, "keepalive", 60)
        source = BrokerConfig(
            host=_get_required_str(raw, "source_broker"),
            port=_get_int(raw, "source_port", 1883),
            username=_get_str(raw, "source_user"),
            password=_get_str(raw, "source_pass"),
            use_tls=use_tls,
            client_id=_get_str(raw, "source_client_id", "mqtt_converter"),
            keepalive=keepalive,
        )
        target = BrokerConfig(
            host=_get_required_str(raw, "target_broker"),
            port=_get_int(raw, "target_port", 1883),
            username=_get_str(raw, "target_user"),
            password=_get_str(raw, "target_pass"),
            use_tls=use_tls,
            client_id=_get_str(raw, "target_client_id", "mqtt_publisher"),
            keepalive=keepalive,
        )

        run_mode = _get_str(raw, "run_mode", "daemon") or "daemon"
        if run_mode not in RUN_MODES:
            raise ConfigError(
                f"Invalid run_mode '{run_mode}'. Expected one of: {', '.join(RUN_MODES)}."
            )

        qos = _get_int(raw, "qos", 0)
        if qos not in (0, 1, 2):
            raise ConfigError(f"Invalid qos {qos}. Expected 0, 1 or 2.")

        mappings = raw.get("mappings") or {}
        if not isinstance(mappings, dict):
            raise ConfigError("'mappings' must be a mapping of source topic to target topic.")
        for source_topic, target_topic in mappings.items():
            if not isinstance(source_topic, str) or not isinstance(target_topic, str):
                raise ConfigError(
                    f"Mapping '{source_topic}' -> '{target_topic}' must map a string to a string."
                )
            if not source_topic or not target_topic:
                raise ConfigError("Mapping topics cannot be empty.")

        connect_timeout = raw.get("connect_timeout_seconds")
        if connect_timeout is not None:
            if isinstance(connect_timeout, bool) or not isinstance(
                connect_timeout, (int, float)
            ):
                raise ConfigError("'connect_timeout_seconds' must be a number or null.")
            if connect_timeout <= 0:
                connect_timeout = None

        max_workers = _get_int(raw, "max_workers", 4)
        if max_workers < 1:
            raise ConfigError("'max_workers' must be at least 1.")

        debug = _get_bool(raw, "debug", False)
        logging_config = raw.get("logging") or {}
        if not isinstance(logging_config, dict):
            raise ConfigError("'logging' must be a mapping.")
        log_level = str(logging_config.get("level", "INFO")).upper()
        if debug:
            log_level = "DEBUG"

        return cls(
            source=source,
            target=target,
            mappings=MappingProxyType(dict(mappings)),
            qos=qos,
            run_mode=run_mode,
            debug=debug,
            exit_on_idle=_get_bool(raw, "exit_on_idle", False),
            idle_timeout_seconds=_get_int(raw, "idle_timeout_seconds", 0),
            connect_timeout_seconds=connect_timeout,
            max_workers=max_workers,
            log_level=log_level,
        )


def _get_required_str(raw: dict, key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"Missing required configuration key '{key}'.")
    return value


def _get_str(raw: dict, key: str, default: str = "") -> str:
    value = raw.get(key)
    if value is None:
        return default
    # YAML turns bare numeric passwords into ints
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str):
        raise ConfigError(f"'{key}' must be a string.")
    return value


def _get_int(raw: dict, key: str, default: int) -> int:
    value = raw.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"'{key}' must be an integer.")
    return value


def _get_bool(raw: dict, key: str, default: bool) -> bool:
    value = raw.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"'{key}' must be true or false.")
    return value


def load_config(path: str) -> BridgeConfig:
    config_path = os.path.join(os.getcwd(), path)

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found in '{config_path}'") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Syntax error in YAML file '{config_path}': {e}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"Could not read config file '{config_path}': {e}") from e

    config = BridgeConfig.from_dict(raw or {})
    logger.info("Config loaded successfully.")
    return config
