"""Service configuration loaded from an optional JSON file."""

import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from installer.errors import ConfigError

DEFAULT_CONFIG_PATH = "/etc/installer/config.json"
CONFIG_ENV_VAR = "INSTALLER_CONFIG"

logger = logging.getLogger("installer.config")


class Settings(BaseModel):
    """Runtime settings for the installer back-end.

    Every field has a default suitable for a live/install boot, so the
    configuration file is optional.
    """

    socket_path: str = Field(
        default="/run/installer/installer.sock",
        description="Unix socket the bus listens on",
    )
    token_path: str = Field(
        default="/run/installer/session-token",
        description="File the session access token is written to",
    )
    log_file: str = Field(default="/var/log/installer/installer.log")
    log_level: str = Field(default="INFO", pattern=r"^(DEBUG|INFO|WARNING|ERROR)$")
    history_dir: Optional[str] = Field(
        default="/run/installer/history",
        description="Directory for post-mortem session records (None disables)",
    )

    abort_grace_seconds: float = Field(
        default=10.0, gt=0, description="Time a stage gets to acknowledge cancellation"
    )
    force_kill_seconds: float = Field(
        default=5.0, gt=0, description="Time allowed for a force-cancelled stage to unwind"
    )
    subscriber_queue_size: int = Field(
        default=256, ge=1, description="Per-connection event backlog before it is dropped"
    )
    keepalive_seconds: float = Field(default=15.0, gt=0)

    allow_unauthorized_queries: bool = Field(
        default=True,
        description="Whether read-only queries succeed for unauthorized callers",
    )
    authorized_uid: Optional[int] = Field(
        default=None,
        ge=0,
        description="Pin the authorized uid instead of asking logind for the active seat owner",
    )
    seat: str = Field(default="seat0")
    auto_begin: bool = Field(
        default=True, description="Start the first stage immediately after StartInstall"
    )

    require_install_mode: bool = True
    mode_markers: list[str] = Field(
        default_factory=lambda: ["installer.live", "installer.install"],
        description="Kernel command line tokens that mark a live/install boot",
    )
    proc_root: str = "/proc"
    sys_root: str = "/sys"
    install_mount: str = "/run/installer/mnt"
    artifact_directory: str = "/run/installer/images"


def load_settings(path: Optional[str] = None) -> Settings:
    """Load settings from JSON.

    Args:
        path: Config file path. Defaults to $INSTALLER_CONFIG, then
              /etc/installer/config.json. A missing default file yields the
              built-in defaults; a missing explicit file is an error.

    Returns:
        Validated Settings

    Raises:
        ConfigError: If the file is unreadable, not JSON, or fails validation
    """
    explicit = path or os.environ.get(CONFIG_ENV_VAR)
    config_path = Path(explicit or DEFAULT_CONFIG_PATH)

    if not config_path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {config_path}")
        logger.debug(f"No config file at {config_path}, using defaults")
        return Settings()

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(
            f"Invalid JSON in {config_path} at line {e.lineno}, column {e.colno}: {e.msg}"
        ) from e
    except OSError as e:
        raise ConfigError(f"Cannot read {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a JSON object")

    try:
        settings = Settings(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}") from e

    logger.info(f"Loaded configuration from {config_path}")
    return settings
