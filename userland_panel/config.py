"""
Configuration for the UserLAnd Panel gateway.

Defaults live in this module. An optional YAML file (panel.yaml in the
project root, or the path in PANEL_CONFIG) overrides them, and a handful
of environment variables override the file:

    PORT                 listening port
    PANEL_HOST           bind address
    PANEL_SSH_PORT       port of the local sshd used as credential oracle
    PANEL_BACKEND_URL    base URL of the ttyd daemon behind the proxy
    PANEL_SHELL          shell spawned for terminal sessions
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "panel.yaml"
DATA_DIR = PROJECT_ROOT / "data"


@dataclass
class GatewayConfig:
    """All tunables of the gateway. Durations are in seconds."""

    host: str = "0.0.0.0"
    port: int = 3001

    # Credential gate
    ssh_host: str = "localhost"
    ssh_port: int = 8022
    ssh_timeout: float = 5.0
    session_token_ttl: float = 24 * 60 * 60
    proxy_token_ttl: float = 5 * 60
    token_sweep_interval: float = 30.0
    login_max_attempts: int = 10
    login_window_minutes: int = 15

    # Terminal sessions
    shell: str = "bash"
    output_queue_size: int = 256

    # Metrics
    metrics_interval: float = 2.0
    process_limit: int = 15

    # Proxy bridge
    backend_url: str = "http://127.0.0.1:7681"
    proxy_prefix: str = "/ttyd"

    # Distro controller
    distro_command: str = "proot-distro"
    distro_base: str = "ubuntu"
    distro_registry: str = str(DATA_DIR / "distros.json")
    distro_timeout: float = 600.0

    cors_origins: list[str] = field(default_factory=lambda: ["*"])


_ENV_OVERRIDES = {
    "PORT": ("port", int),
    "PANEL_HOST": ("host", str),
    "PANEL_SSH_PORT": ("ssh_port", int),
    "PANEL_BACKEND_URL": ("backend_url", str),
    "PANEL_SHELL": ("shell", str),
}


def _read_yaml(path: Path) -> dict:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path.name} must be a YAML mapping, got {type(data)}")
    return data


def load_config(path: Optional[Path] = None, environ: Optional[dict] = None) -> GatewayConfig:
    """Build a GatewayConfig from defaults, the YAML file and the environment."""
    environ = os.environ if environ is None else environ
    if path is None:
        path = Path(environ.get("PANEL_CONFIG", DEFAULT_CONFIG_PATH))

    values: dict = {}
    known = {f.name for f in fields(GatewayConfig)}

    if path.is_file():
        for key, value in _read_yaml(path).items():
            if key not in known:
                logger.warning("Ignoring unknown config key '%s' in %s", key, path)
                continue
            values[key] = value
        logger.info("Loaded configuration from %s", path)

    for env_name, (key, cast) in _ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw:
            try:
                values[key] = cast(raw)
            except ValueError:
                raise ValueError(f"Invalid value for {env_name}: {raw!r}")

    config = GatewayConfig(**values)
    config.proxy_prefix = "/" + config.proxy_prefix.strip("/")
    config.backend_url = config.backend_url.rstrip("/")
    return config
