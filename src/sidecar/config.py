"""Configuration management for the pairing sidecar."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml

from sidecar.errors import ConfigError, ConfigMissingError


# Gateway listens on loopback; not a configuration field.
GATEWAY_URL = "ws://localhost:8080"

PAIRING_MODES = ("window", "daemon")

DEFAULT_SCOPES = [
    "operator.admin",
    "operator.pairing",
    "operator.approvals",
]


@dataclass
class ClientConfig:
    """Client descriptor presented during connect."""

    client_id: str = "gateway-client"
    display_name: str = "setup-sidecar"
    version: str = "dev"
    mode: str = "backend"
    role: str = "operator"
    scopes: list[str] = field(default_factory=lambda: DEFAULT_SCOPES.copy())
    min_protocol: int = 3
    max_protocol: int = 3


@dataclass
class TimeoutsConfig:
    """RPC wait bounds in seconds."""

    challenge: float = 15.0
    connect: float = 15.0
    request: float = 15.0
    approve: float = 10.0
    list: float = 10.0


@dataclass
class PairingConfig:
    """Pairing approval behaviour.

    mode "window" approves for window_seconds and exits, "daemon" approves
    until the process is stopped and re-scans every scan_interval seconds.
    """

    mode: str = "window"
    window_seconds: float = 120.0
    scan_interval: float = 30.0
    linger_seconds: float = 1.0


@dataclass
class Config:
    """Sidecar configuration."""

    log_level: str = "INFO"
    log_file: str | None = None
    token_env: str = "OPENCLAW_GATEWAY_TOKEN"
    diagnostics: bool = True
    client: ClientConfig = field(default_factory=ClientConfig)
    timeouts: TimeoutsConfig = field(default_factory=TimeoutsConfig)
    pairing: PairingConfig = field(default_factory=PairingConfig)


def get_config_path(custom_path: Path | None = None) -> Path:
    """Get the configuration file path.

    Args:
        custom_path: Override path. If None, returns default.

    Returns:
        Path to config file.
    """
    if custom_path is not None:
        return custom_path
    return Path.home() / ".config" / "sidecar" / "config.yaml"


def _default_file_reader(path: Path) -> dict[str, Any] | None:
    """Default file reader that loads YAML from disk."""
    if not path.exists():
        return None
    try:
        content = path.read_text()
        if not content.strip():
            return None
        data = yaml.safe_load(content)
    except yaml.YAMLError:
        return None
    return data if isinstance(data, dict) else None


def validate_pairing_mode(mode: str) -> str:
    """Return mode if it names a known pairing mode.

    Raises:
        ConfigError: If mode is not "window" or "daemon".
    """
    if mode not in PAIRING_MODES:
        raise ConfigError(
            f"Unknown pairing mode {mode!r} (expected one of {', '.join(PAIRING_MODES)})"
        )
    return mode


def validate_seconds(
    section: str, key: str, value: Any, allow_zero: bool = False
) -> float:
    """Return value if it is a usable duration in seconds.

    Raises:
        ConfigError: If value is not a number, is negative, or is zero
            when allow_zero is False.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{section}.{key} must be a number of seconds, got {value!r}")
    if value < 0 or (value == 0 and not allow_zero):
        bound = ">= 0" if allow_zero else "> 0"
        raise ConfigError(f"{section}.{key} must be {bound}, got {value!r}")
    return value


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

    Raises:
        ConfigError: If the pairing mode is not recognised or a duration
            is not a positive number.
    """
    config_path = get_config_path(path)
    reader = file_reader or _default_file_reader

    data = reader(config_path)

    if data is None:
        return Config()

    client_data = data.get("client", {})
    client_config = ClientConfig(
        client_id=client_data.get("client_id", ClientConfig.client_id),
        display_name=client_data.get("display_name", ClientConfig.display_name),
        version=client_data.get("version", ClientConfig.version),
        mode=client_data.get("mode", ClientConfig.mode),
        role=client_data.get("role", ClientConfig.role),
        scopes=client_data.get("scopes", DEFAULT_SCOPES.copy()),
        min_protocol=client_data.get("min_protocol", ClientConfig.min_protocol),
        max_protocol=client_data.get("max_protocol", ClientConfig.max_protocol),
    )

    timeouts_data = data.get("timeouts", {})
    timeouts_config = TimeoutsConfig(
        **{
            name: validate_seconds(
                "timeouts", name, timeouts_data.get(name, getattr(TimeoutsConfig, name))
            )
            for name in ("challenge", "connect", "request", "approve", "list")
        }
    )

    pairing_data = data.get("pairing", {})
    pairing_config = PairingConfig(
        mode=validate_pairing_mode(pairing_data.get("mode", PairingConfig.mode)),
        window_seconds=validate_seconds(
            "pairing",
            "window_seconds",
            pairing_data.get("window_seconds", PairingConfig.window_seconds),
        ),
        scan_interval=validate_seconds(
            "pairing",
            "scan_interval",
            pairing_data.get("scan_interval", PairingConfig.scan_interval),
        ),
        linger_seconds=validate_seconds(
            "pairing",
            "linger_seconds",
            pairing_data.get("linger_seconds", PairingConfig.linger_seconds),
            allow_zero=True,
        ),
    )

    return Config(
        log_level=data.get("log_level", Config.log_level),
        log_file=data.get("log_file", Config.log_file),
        token_env=data.get("token_env", Config.token_env),
        diagnostics=data.get("diagnostics", Config.diagnostics),
        client=client_config,
        timeouts=timeouts_config,
        pairing=pairing_config,
    )


def read_token(config: Config, environ: Mapping[str, str] | None = None) -> str:
    """Read the gateway bearer token from the environment.

    Args:
        config: Configuration naming the environment variable.
        environ: Injectable environment mapping for testing.

    Returns:
        The token.

    Raises:
        ConfigMissingError: If the variable is unset or empty.
    """
    env = os.environ if environ is None else environ
    token = env.get(config.token_env, "")
    if not token:
        raise ConfigMissingError(
            f"{config.token_env} not set, skipping sidecar configuration"
        )
    return token
