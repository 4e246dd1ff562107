"""
Configuration for the degu supervisor.

Loads process-level settings from environment variables (and a .env file,
if present) with positional arguments as the fallback. The per-application
options file (.degu.json) is handled by degu.options.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .errors import ConfigurationError

load_dotenv()

TRUE_VALUES = ("1", "true", "yes", "on")


def env_flag(name: str, default: bool = False) -> bool:
    """Read a boolean flag from the environment."""
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in TRUE_VALUES


def env_number(name: str, default, cast=int):
    """Read a numeric setting from the environment."""
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return cast(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


@dataclass
class Settings:
    """Supervisor settings."""

    # Paths
    app_dir: Path = Path("/app")
    degu_file: Path = None

    # Remote, as given (normalized later by degu.remote)
    remote_type: str = ""
    remote_url: str = ""
    remote_branch: str = ""

    # Private key used by git/svn over ssh
    ssh_key_file: Path = Path("/ssh_key")
    ssh_key_mode: int = 0o600

    # Control API bind address; port and prefix live in the options file
    api_host: str = "0.0.0.0"

    # Process management
    restart_delay: float = 5.0
    stop_timeout: float = 10.0

    # Logging
    log_level: str = "INFO"
    log_file: Path = None
    log_max_bytes: int = 10 * 1024 * 1024  # 10MB
    log_backup_count: int = 5

    def __post_init__(self):
        """Derive the options file path from the app directory."""
        self.app_dir = Path(self.app_dir)
        if self.degu_file is None:
            self.degu_file = self.app_dir / ".degu.json"
        self.degu_file = Path(self.degu_file)

    @classmethod
    def from_env(
        cls,
        positional: list[str] = None,
        app_dir: str = None,
        degu_file: str = None,
    ) -> "Settings":
        """
        Build settings from the environment.

        Environment variables win over positional arguments
        (``[type] [url] [branch]``); explicit ``app_dir``/``degu_file``
        arguments win over both.
        """
        positional = list(positional or [])
        positional += [""] * (3 - len(positional))

        app_dir = app_dir or os.environ.get("APP_DIR") or "/app"
        degu_file = degu_file or os.environ.get("DEGU_FILE") or None
        log_file = os.environ.get("DEGU_LOG_FILE") or None

        return cls(
            app_dir=Path(app_dir),
            degu_file=Path(degu_file) if degu_file else None,
            remote_type=os.environ.get("REMOTE_TYPE") or positional[0],
            remote_url=os.environ.get("REMOTE_URL") or positional[1],
            remote_branch=os.environ.get("REMOTE_BRANCH") or positional[2],
            ssh_key_file=Path(os.environ.get("SSH_KEY_FILE", "/ssh_key")),
            api_host=os.environ.get("DEGU_API_HOST", "0.0.0.0"),
            restart_delay=env_number("DEGU_RESTART_DELAY", 5.0, float),
            stop_timeout=env_number("DEGU_STOP_TIMEOUT", 10.0, float),
            log_level=os.environ.get("DEGU_LOG_LEVEL", "INFO").upper(),
            log_file=Path(log_file) if log_file else None,
            log_max_bytes=env_number("LOG_MAX_BYTES", 10 * 1024 * 1024),
            log_backup_count=env_number("LOG_BACKUP_COUNT", 5),
        )
