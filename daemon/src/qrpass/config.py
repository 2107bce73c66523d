"""Configuration management for qrpass."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import yaml


@dataclass
class ServerConfig:
    """HTTP server configuration."""

    public_base_url: str | None = None  # Base for scan URLs, e.g. https://vault.example.com
    api_tokens: dict[str, str] = field(default_factory=dict)  # bearer token -> owner ref
    complete_rate_per_session: int = 10  # per minute
    complete_rate_per_ip: int = 100  # per minute


@dataclass
class PairingConfig:
    """Pairing session lifetimes and housekeeping."""

    default_lifetime: int = 60  # seconds
    min_lifetime: int = 15
    max_lifetime: int = 300
    retention_grace: float = 10.0  # keep terminal sessions visible this long
    tombstone_ttl: float = 300.0  # answer 410 for deleted sessions this long
    sweep_interval: float = 5.0
    id_bytes: int = 16  # session ID entropy
    max_sessions_per_owner: int = 10


@dataclass
class ClientConfig:
    """Initiating-device client configuration."""

    server_url: str = "http://127.0.0.1:8780"
    token: str | None = None
    poll_interval: float = 2.0
    refresh_delay: float = 3.0


@dataclass
class Config:
    """qrpass configuration."""

    port: int = 8780
    bind_address: str = "0.0.0.0"
    log_level: str = "INFO"
    log_file: str | None = None
    passes_file: str = "~/.config/qrpass/passes.json"
    server: ServerConfig = field(default_factory=ServerConfig)
    pairing: PairingConfig = field(default_factory=PairingConfig)
    client: ClientConfig = field(default_factory=ClientConfig)


def get_config_path(custom_path: Path | None = None) -> Path:
    """Get the configuration file path.

    Args:
        custom_path: Override path. If None, returns default.

    Returns:
        Path to config file.
    """
    if custom_path is not None:
        return custom_path
    return Path.home() / ".config" / "qrpass" / "config.yaml"


def _default_file_reader(path: Path) -> dict[str, Any] | None:
    """Default file reader that loads YAML from disk."""
    if not path.exists():
        return None
    try:
        content = path.read_text()
        if not content.strip():
            return None
        return yaml.safe_load(content)
    except yaml.YAMLError:
        return None


def load_config(
    path: Path | None = None,
    file_reader: Callable[[Path], dict[str, Any] | None] | None = None,
) -> Config:
    """Load configuration from file.

    Args:
        path: Path to config file. If None, uses default path.
        file_reader: Injectable file reader for testing.

    Returns:
        Config object with values from file or defaults.
    """
    config_path = get_config_path(path)
    reader = file_reader or _default_file_reader

    data = reader(config_path)

    if data is None:
        return Config()

    server_data = data.get("server") or {}
    server_config = ServerConfig(
        public_base_url=server_data.get("public_base_url"),
        api_tokens={
            str(token): str(owner)
            for token, owner in (server_data.get("api_tokens") or {}).items()
        },
        complete_rate_per_session=server_data.get(
            "complete_rate_per_session", ServerConfig.complete_rate_per_session
        ),
        complete_rate_per_ip=server_data.get(
            "complete_rate_per_ip", ServerConfig.complete_rate_per_ip
        ),
    )

    pairing_data = data.get("pairing") or {}
    pairing_config = PairingConfig(
        default_lifetime=pairing_data.get(
            "default_lifetime", PairingConfig.default_lifetime
        ),
        min_lifetime=pairing_data.get("min_lifetime", PairingConfig.min_lifetime),
        max_lifetime=pairing_data.get("max_lifetime", PairingConfig.max_lifetime),
        retention_grace=pairing_data.get(
            "retention_grace", PairingConfig.retention_grace
        ),
        tombstone_ttl=pairing_data.get("tombstone_ttl", PairingConfig.tombstone_ttl),
        sweep_interval=pairing_data.get(
            "sweep_interval", PairingConfig.sweep_interval
        ),
        id_bytes=pairing_data.get("id_bytes", PairingConfig.id_bytes),
        max_sessions_per_owner=pairing_data.get(
            "max_sessions_per_owner", PairingConfig.max_sessions_per_owner
        ),
    )

    client_data = data.get("client") or {}
    client_config = ClientConfig(
        server_url=client_data.get("server_url", ClientConfig.server_url),
        token=client_data.get("token", ClientConfig.token),
        poll_interval=client_data.get("poll_interval", ClientConfig.poll_interval),
        refresh_delay=client_data.get("refresh_delay", ClientConfig.refresh_delay),
    )

    return Config(
        port=data.get("port", Config.port),
        bind_address=data.get("bind_address", Config.bind_address),
        log_level=data.get("log_level", Config.log_level),
        log_file=data.get("log_file", Config.log_file),
        passes_file=data.get("passes_file", Config.passes_file),
        server=server_config,
        pairing=pairing_config,
        client=client_config,
    )
