"""Porter configuration: environment variables over a YAML config file.

Values are resolved from, highest precedence first:

1. explicit keyword arguments (the CLI passes its flags here),
2. ``PORTER_*`` environment variables (``--log-level`` -> ``PORTER_LOG_LEVEL``),
3. a ``.env`` file in the working directory,
4. ``$PORTER_HOME/config.yaml``,
5. the field defaults below.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

from porter.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path("~/.porter")
CONFIG_FILE_NAME = "config.yaml"


def _resolve_home() -> Path:
    return Path(os.environ.get("PORTER_HOME") or DEFAULT_HOME).expanduser()


class PorterConfigFileSource(PydanticBaseSettingsSource):
    """Read settings from ``$PORTER_HOME/config.yaml``.

    Keys may be written the way flags are (``log-level``) or the way fields
    are (``log_level``).
    """

    def __init__(self, settings_cls: type[BaseSettings], path: Path | None = None) -> None:
        super().__init__(settings_cls)
        self._path = path or _resolve_home() / CONFIG_FILE_NAME
        self._data = self._read()

    def _read(self) -> dict[str, Any]:
        if not self._path.is_file():
            return {}
        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"unable to parse config file {self._path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"config file {self._path} must contain a mapping")
        data: dict[str, Any] = {}
        for key, value in raw.items():
            name = str(key).replace("-", "_").lower()
            if name not in self.settings_cls.model_fields:
                raise ConfigError(f"invalid config key {key!r} in {self._path}")
            data[name] = value
        return data

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return self._data.get(field_name), field_name, False

    def __call__(self) -> dict[str, Any]:
        return dict(self._data)


class PorterConfig(BaseSettings):
    """Porter configuration with environment variable overrides.

    Examples
    --------
    Override via environment::

        export PORTER_HOME=/opt/porter
        export PORTER_DEBUG=true
        export PORTER_MIXIN_GRACE_PERIOD=10

    Or via ``$PORTER_HOME/config.yaml``::

        namespace: dev
        output: json
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PORTER_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Home directory: mixins, cache, config and the installation store
    home: Path = DEFAULT_HOME

    # Output and diagnostics
    debug: bool = False
    output: str = "plaintext"
    log_level: str = "INFO"

    # Default namespace for installations
    namespace: str = ""

    # Seconds between SIGTERM and SIGKILL when a mixin is canceled
    mixin_grace_period: float = 5.0

    # Registry access
    registry_timeout: float = 30.0
    insecure_registries: list[str] = []

    # Filesystem secret store; defaults to $PORTER_HOME/secrets
    secrets_dir: Path | None = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            PorterConfigFileSource(settings_cls),
            file_secret_settings,
        )

    @property
    def home_dir(self) -> Path:
        return Path(self.home).expanduser()

    @property
    def mixins_dir(self) -> Path:
        return self.home_dir / "mixins"

    @property
    def cache_dir(self) -> Path:
        return self.home_dir / "cache"

    @property
    def store_path(self) -> Path:
        return self.home_dir / "porter.db"

    @property
    def secrets_path(self) -> Path:
        return Path(self.secrets_dir).expanduser() if self.secrets_dir else self.home_dir / "secrets"

    @property
    def config_file(self) -> Path:
        return self.home_dir / CONFIG_FILE_NAME


def load_config(**overrides: Any) -> PorterConfig:
    """Build a PorterConfig, dropping ``None`` overrides (unset flags).

    Raises
    ------
    ConfigError
        If any source holds an invalid key or a value of the wrong type.
    """
    flags = {k: v for k, v in overrides.items() if v is not None}
    try:
        return PorterConfig(**flags)
    except PydanticValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ConfigError(f"invalid configuration: {problems}") from exc

