"""
Blockstore settings.

Resolved in priority order (later wins):
1. Built-in defaults
2. YAML config file (``BLOCKSTORE_CONFIG``, default ``~/.blockstore/config.yaml``)
3. ``.env`` file in the working directory (python-dotenv)
4. Process environment variables (``BLOCKSTORE_*``)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .logging_config import get_logger

logger = get_logger(__name__)

ENV_PREFIX = "BLOCKSTORE_"
DEFAULT_HOME = "~/.blockstore"
DEFAULT_CONFIG_FILE = f"{DEFAULT_HOME}/config.yaml"


class BlockstoreSettings(BaseModel):
    """
    Runtime settings.

    Attributes:
        home: Root directory for file storage
        storage: ``file`` for on-disk storage, ``memory`` for an ephemeral store
        encryption_key: Fernet key for secret fields; generated per process if unset
        lock_timeout: Default seconds to wait on the storage lock
        cache_ttl: Seconds a loaded document stays in the client cache (0 disables it)
        log_level: Minimum log level
        log_json: Emit JSON log lines instead of console output
    """

    model_config = ConfigDict(hide_input_in_errors=True)

    home: Path = Field(default_factory=lambda: Path(DEFAULT_HOME).expanduser())
    storage: Literal["file", "memory"] = "file"
    encryption_key: SecretStr | None = None
    lock_timeout: float = Field(default=10.0, gt=0)
    cache_ttl: float = Field(default=60.0, ge=0)
    log_level: str = "INFO"
    log_json: bool = False


def _read_config_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            content = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValidationError(f"Config file {path} is not valid YAML: {e}", cause=e) from e
    if not isinstance(content, dict):
        raise ValidationError(f"Config file {path} must contain a mapping")
    return content


def _from_env(environ: dict[str, str | None]) -> dict[str, Any]:
    values = {}
    for field_name in BlockstoreSettings.model_fields:
        value = environ.get(f"{ENV_PREFIX}{field_name.upper()}")
        if value is not None and value != "":
            values[field_name] = value
    return values


def load_settings(
    config_file: str | Path | None = None,
    dotenv_path: str | Path | None = None,
    environ: dict[str, str] | None = None,
    **overrides: Any,
) -> BlockstoreSettings:
    """
    Resolve settings from the config file, ``.env`` and the environment.

    Args:
        config_file: YAML file to read; defaults to ``BLOCKSTORE_CONFIG`` or ``~/.blockstore/config.yaml``
        dotenv_path: ``.env`` file to read; defaults to ``./.env``
        environ: Environment mapping (defaults to ``os.environ``)
        **overrides: Explicit values that win over every source

    Raises:
        ValidationError: if the merged values are invalid
    """
    environ = dict(os.environ if environ is None else environ)

    path = Path(config_file or environ.get(f"{ENV_PREFIX}CONFIG") or DEFAULT_CONFIG_FILE).expanduser()
    merged: dict[str, Any] = _read_config_file(path)

    dotenv_file = Path(dotenv_path) if dotenv_path else Path.cwd() / ".env"
    if dotenv_file.exists():
        merged.update(_from_env(dotenv_values(dotenv_file)))

    merged.update(_from_env(environ))
    merged.update({k: v for k, v in overrides.items() if v is not None})

    try:
        settings = BlockstoreSettings.model_validate(merged)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors(include_input=False)
        )
        raise ValidationError(f"Invalid blockstore settings: {problems}", cause=e) from e

    settings.home = settings.home.expanduser()
    logger.debug("settings_loaded", config_file=str(path), storage=settings.storage)
    return settings
