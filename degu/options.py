"""
Application options (the .degu.json file).

Defaults come from the environment; the options file found in the app
directory is merged on top with merge_options(). The merge is a pure function
over plain dicts so it can be tested without touching the filesystem.
"""

import copy
import json
import logging
import os
import re
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import env_flag, env_number
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

MIN_UPDATE_INTERVAL = 60


class OnUpdate(str, Enum):
    RESTART = "restart"
    EXIT = "exit"


def split_command(value: Any) -> list[str] | None:
    """Turn a command given as a string or a list into an argument vector."""
    if isinstance(value, str):
        return value.split()
    if isinstance(value, (list, tuple)):
        return [str(part) for part in value]
    return None


class ApiOptions(BaseModel):
    """Control API settings."""

    model_config = ConfigDict(extra="ignore")

    enable: bool = True
    port: int = 8125
    prefix: str = "/"
    whitelist: list[str] = Field(default_factory=list)

    @field_validator("whitelist", mode="before")
    @classmethod
    def split_whitelist(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [ip for ip in re.split(r"[\s;,]+", value) if ip]
        return value

    @property
    def normalized_prefix(self) -> str:
        """The prefix with exactly one leading and one trailing slash."""
        inner = (self.prefix or "").strip("/")
        return f"/{inner}/" if inner else "/"


class UpdateSchedulerOptions(BaseModel):
    """Remote change polling settings."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    enable: bool = False
    interval: int = 3600
    on_update: OnUpdate = Field(OnUpdate.RESTART, alias="onUpdate")

    @field_validator("on_update", mode="before")
    @classmethod
    def lower_on_update(cls, value):
        return value.lower() if isinstance(value, str) else value

    @property
    def interval_valid(self) -> bool:
        return self.interval >= MIN_UPDATE_INTERVAL


class DeguOptions(BaseModel):
    """Effective application options."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    env: dict[str, str] = Field(default_factory=dict)
    steps: list[list[str]] = Field(default_factory=lambda: [["npm", "install"]])
    main: list[str] = Field(default_factory=lambda: ["npm", "start"])
    forever: bool = False
    api: ApiOptions = Field(default_factory=ApiOptions)
    update_scheduler: UpdateSchedulerOptions = Field(
        default_factory=UpdateSchedulerOptions, alias="updateScheduler"
    )

    @field_validator("env", mode="before")
    @classmethod
    def stringify_env(cls, value):
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): "" if v is None else str(v) for k, v in value.items()}
        return value

    @field_validator("steps", mode="before")
    @classmethod
    def split_steps(cls, value):
        if value is None:
            return []
        if isinstance(value, dict):
            value = list(value.values())
        if not isinstance(value, list):
            raise ValueError("steps must be a list of commands")
        steps = []
        for step in value:
            command = split_command(step)
            if command:
                steps.append(command)
            else:
                logger.warning(f"Ignoring invalid step {step!r}")
        return steps

    @field_validator("main", mode="before")
    @classmethod
    def split_main(cls, value):
        command = split_command(value)
        if not command:
            raise ValueError("main command must not be empty")
        return command

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


def default_options() -> dict:
    """Built-in defaults, with API and scheduler settings taken from the environment."""
    defaults = DeguOptions().to_dict()
    defaults["forever"] = env_flag("DEGU_FOREVER", False)
    defaults["api"].update(
        enable=env_flag("DEGU_API_ENABLE", True),
        port=env_number("DEGU_API_PORT", 8125),
        prefix=os.environ.get("DEGU_API_PREFIX", "/"),
        whitelist=os.environ.get("DEGU_API_WHITELIST", ""),
    )
    defaults["updateScheduler"].update(
        enable=env_flag("DEGU_UPDATE_ENABLE", False),
        interval=env_number("DEGU_UPDATE_INTERVAL", 3600),
        onUpdate=os.environ.get("DEGU_UPDATE_ON_UPDATE", "restart"),
    )
    return defaults


def merge_options(defaults: dict, override: dict) -> dict:
    """
    Merge an override document onto the defaults.

    Keys unknown to the defaults are ignored. When both sides hold a mapping
    the default mapping is updated one level deep; any other value, lists
    included, replaces the default wholesale.
    """
    merged = copy.deepcopy(defaults)
    for key, value in override.items():
        if key not in merged:
            logger.debug(f"Ignoring unknown option {key!r}")
            continue
        if isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def build_options(data: dict) -> DeguOptions:
    """Validate a merged options dict."""
    try:
        return DeguOptions.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid options: {e}") from e


def read_options_file(path: Path) -> dict | None:
    """Read the options file, or return None when it does not exist."""
    path = Path(path)
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text())
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a JSON object")
    return data


def load_options(path: Path, defaults: dict = None) -> DeguOptions:
    """Load the effective options: defaults merged with the options file at ``path``."""
    if defaults is None:
        defaults = default_options()
    override = read_options_file(path)
    if override is None:
        logger.info(f"{path} not found, going with defaults")
        return build_options(defaults)
    logger.info(f"Loaded options from {path}")
    return build_options(merge_options(defaults, override))
