"""Configuration loader for aquasync."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from . import constants


REPLICA_BACKENDS = ("firebase", "memory")


@dataclass(slots=True)
class BrokerConfig:
    host: str = constants.DEFAULT_BROKER_HOST
    port: int = constants.DEFAULT_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    transport: str = "tcp"  # "tcp" or "websockets"
    tls: bool = False
    client_id: str = constants.DEFAULT_CLIENT_ID
    keepalive: int = 60


@dataclass(slots=True)
class ReplicaConfig:
    backend: str = "memory"
    database_url: Optional[str] = None
    auth_token: Optional[str] = None
    control_path: str = constants.CONTROL_STATE_PATH
    request_timeout_seconds: float = 10.0


@dataclass(slots=True)
class TelemetryConfig:
    short_window: int = constants.SHORT_WINDOW_CAPACITY
    long_window: int = constants.LONG_WINDOW_CAPACITY
    queue_size: int = 256


@dataclass(slots=True)
class ControlConfig:
    tick_seconds: float = 1.0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False


@dataclass(slots=True)
class ResilienceConfig:
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0
    reconnect_jitter_ratio: float = 0.5
    store_write_attempts: int = 3
    store_write_retry_seconds: float = 0.5
    initial_load_timeout_seconds: float = 10.0


@dataclass(slots=True)
class ServerConfig:
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 8080


@dataclass(slots=True)
class AquaSyncConfig:
    broker: BrokerConfig
    replica: ReplicaConfig
    telemetry: TelemetryConfig
    control: ControlConfig
    logging: LoggingConfig
    resilience: ResilienceConfig
    server: ServerConfig
    raw: ConfigParser
    path: Path


def load_config(path: Optional[Path] = None) -> AquaSyncConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "broker": {
                "host": constants.DEFAULT_BROKER_HOST,
                "port": str(constants.DEFAULT_BROKER_PORT),
                "transport": "tcp",
                "tls": "false",
                "client_id": constants.DEFAULT_CLIENT_ID,
                "keepalive": "60",
            },
            "replica": {
                "backend": "memory",
                "control_path": constants.CONTROL_STATE_PATH,
                "request_timeout_seconds": "10.0",
            },
            "telemetry": {
                "short_window": str(constants.SHORT_WINDOW_CAPACITY),
                "long_window": str(constants.LONG_WINDOW_CAPACITY),
                "queue_size": "256",
            },
            "control": {
                "tick_seconds": "1.0",
            },
            "logging": {
                "level": "INFO",
                "path": str(constants.DEFAULT_LOG_PATH),
                "log_network": "false",
            },
            "resilience": {
                "reconnect_initial_seconds": "1.0",
                "reconnect_max_seconds": "30.0",
                "reconnect_jitter_ratio": "0.5",
                "store_write_attempts": "3",
                "store_write_retry_seconds": "0.5",
                "initial_load_timeout_seconds": "10.0",
            },
            "server": {
                "enabled": "true",
                "host": "127.0.0.1",
                "port": "8080",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    host_value = parser.get("broker", "host")
    port_value = parser.getint("broker", "port", fallback=constants.DEFAULT_BROKER_PORT)

    if ":" in host_value:
        host_part, port_part = host_value.rsplit(":", 1)
        try:
            parsed_port = int(port_part)
        except ValueError:
            pass
        else:
            host_value = host_part
            port_value = parsed_port
            parser.set("broker", "host", host_part)
            parser.set("broker", "port", str(parsed_port))

    transport = parser.get("broker", "transport", fallback="tcp").strip().lower()
    if transport not in ("tcp", "websockets"):
        transport = "tcp"

    broker = BrokerConfig(
        host=host_value,
        port=port_value,
        username=parser.get("broker", "username", fallback=None),
        password=parser.get("broker", "password", fallback=None),
        transport=transport,
        tls=parser.getboolean("broker", "tls", fallback=False),
        client_id=parser.get("broker", "client_id"),
        keepalive=max(5, parser.getint("broker", "keepalive", fallback=60)),
    )

    backend = parser.get("replica", "backend", fallback="memory").strip().lower()
    if backend not in REPLICA_BACKENDS:
        backend = "memory"

    replica = ReplicaConfig(
        backend=backend,
        database_url=parser.get("replica", "database_url", fallback=None),
        auth_token=parser.get("replica", "auth_token", fallback=None),
        control_path=parser.get("replica", "control_path"),
        request_timeout_seconds=max(
            0.1,
            parser.getfloat("replica", "request_timeout_seconds", fallback=10.0),
        ),
    )

    telemetry = TelemetryConfig(
        short_window=max(
            1,
            parser.getint(
                "telemetry",
                "short_window",
                fallback=constants.SHORT_WINDOW_CAPACITY,
            ),
        ),
        long_window=max(
            1,
            parser.getint(
                "telemetry",
                "long_window",
                fallback=constants.LONG_WINDOW_CAPACITY,
            ),
        ),
        queue_size=max(1, parser.getint("telemetry", "queue_size", fallback=256)),
    )

    default_tick = ControlConfig().tick_seconds
    try:
        tick_value = parser.getfloat("control", "tick_seconds", fallback=default_tick)
    except ValueError:
        tick_value = default_tick

    control = ControlConfig(tick_seconds=max(0.01, tick_value))

    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(
            parser.get("logging", "path", fallback=str(constants.DEFAULT_LOG_PATH))
        ).expanduser(),
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    resilience = ResilienceConfig(
        reconnect_initial_seconds=parser.getfloat(
            "resilience", "reconnect_initial_seconds", fallback=1.0
        ),
        reconnect_max_seconds=parser.getfloat(
            "resilience", "reconnect_max_seconds", fallback=30.0
        ),
        reconnect_jitter_ratio=max(
            0.0,
            min(
                1.0,
                parser.getfloat("resilience", "reconnect_jitter_ratio", fallback=0.5),
            ),
        ),
        store_write_attempts=max(
            1,
            parser.getint("resilience", "store_write_attempts", fallback=3),
        ),
        store_write_retry_seconds=max(
            0.0,
            parser.getfloat("resilience", "store_write_retry_seconds", fallback=0.5),
        ),
        initial_load_timeout_seconds=max(
            0.0,
            parser.getfloat(
                "resilience", "initial_load_timeout_seconds", fallback=10.0
            ),
        ),
    )

    server = ServerConfig(
        enabled=parser.getboolean("server", "enabled", fallback=True),
        host=parser.get("server", "host", fallback="127.0.0.1"),
        port=parser.getint("server", "port", fallback=8080),
    )

    return AquaSyncConfig(
        broker=broker,
        replica=replica,
        telemetry=telemetry,
        control=control,
        logging=logging_config,
        resilience=resilience,
        server=server,
        raw=parser,
        path=config_path,
    )


def save_config(config: AquaSyncConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
