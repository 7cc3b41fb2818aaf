"""
Runtime queue configuration stored as a flat key-value JSON file.

Two keys are recognised: ``max-retries`` (default retry budget for new jobs)
and ``backoff-base`` (exponent base of the retry delay). The file is re-read on
every access so a running worker picks up ``queuectl config set`` changes.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from queuectl.config import get_settings
from queuectl.constants import (
    CONFIG_BACKOFF_BASE,
    CONFIG_MAX_RETRIES,
    DEFAULT_BACKOFF_BASE,
    DEFAULT_MAX_RETRIES,
)
from queuectl.errors import ConfigError

logger = logging.getLogger(__name__)


class QueueConfig(BaseModel):
    """Validated view of the runtime config file."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0, alias=CONFIG_MAX_RETRIES)
    backoff_base: int = Field(default=DEFAULT_BACKOFF_BASE, ge=1, alias=CONFIG_BACKOFF_BASE)


ALLOWED_KEYS = frozenset({CONFIG_MAX_RETRIES, CONFIG_BACKOFF_BASE})


class ConfigStore:
    """
    Accessor for the runtime config file.

    Missing files are created with defaults on first read.
    """

    def __init__(self, path: Path | str | None = None):
        self.path = Path(path) if path is not None else get_settings().resolved_config_file

    def get_all(self) -> dict[str, Any]:
        """Return every key, defaults filled in."""
        return self._load().model_dump(by_alias=True)

    def get(self, key: str) -> Any | None:
        """Return the value for ``key`` or None if the key is unknown."""
        return self.get_all().get(key)

    def set(self, key: str, value: Any) -> Any:
        """
        Validate and persist a single key.

        Args:
            key: One of ``max-retries`` or ``backoff-base``.
            value: New value; numeric strings are accepted.

        Returns:
            The stored value.

        Raises:
            ConfigError: If the key is unknown or the value is invalid.
        """
        if key not in ALLOWED_KEYS:
            raise ConfigError(
                f"Unknown config key '{key}'. Allowed keys: {', '.join(sorted(ALLOWED_KEYS))}"
            )

        data = self.get_all()
        data[key] = value
        try:
            config = QueueConfig.model_validate(data)
        except ValidationError as exc:
            raise ConfigError(f"Invalid value for '{key}': {value!r}") from exc

        self._write(config)
        logger.info("Config updated", extra={"key": key, "value": data[key]})
        return config.model_dump(by_alias=True)[key]

    @property
    def max_retries(self) -> int:
        return self._load().max_retries

    @property
    def backoff_base(self) -> int:
        return self._load().backoff_base

    def _load(self) -> QueueConfig:
        if not self.path.exists():
            config = QueueConfig()
            self._write(config)
            return config

        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Config file {self.path} is not valid JSON: {exc}") from exc

        if not isinstance(raw, dict):
            raise ConfigError(f"Config file {self.path} must hold a JSON object")

        # Unknown keys written by hand are ignored rather than fatal
        known = {key: value for key, value in raw.items() if key in ALLOWED_KEYS}
        try:
            return QueueConfig.model_validate(known)
        except ValidationError as exc:
            raise ConfigError(f"Config file {self.path} is invalid: {exc}") from exc

    def _write(self, config: QueueConfig) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(config.model_dump(by_alias=True), indent=2)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".config-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload + "\n")
            os.replace(tmp_path, self.path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise
