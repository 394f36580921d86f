"""
Run configuration.

Settings are read from a TOML file and mapped onto :class:`MartConfig` with
``dacite``.  Lookup order:

1. an explicit path passed to :func:`load_config`
2. ``src/user_config/mart.toml``
3. the bundled ``base_config/mart.toml``
"""

import os
import pathlib
from dataclasses import dataclass, field, replace
from typing import Optional

from dacite import Config, DaciteError, from_dict
from tomllib import TOMLDecodeError, load

from balance_mart.modules.errors import ConfigError, ConfigFileError

__dir_base = pathlib.Path(__file__).parent.parent.joinpath("base_config")
__dir_user = pathlib.Path(__file__).parent.parent.parent.joinpath("user_config")

CONFIG_FILE = "mart.toml"
SERIES_START_POLICIES = ("opened_on", "first_movement")


@dataclass(frozen=True, slots=True)
class RunSettings:
    workers: Optional[int] = None
    batch_size: int = 500
    max_retries: int = 3
    backoff_secs: float = 0.5
    write_timeout_secs: float = 30.0
    lock_ttl_secs: int = 3600


@dataclass(frozen=True, slots=True)
class BalanceSettings:
    series_start: str = "opened_on"
    decimal_places: int = 2


@dataclass(frozen=True, slots=True)
class MartConfig:
    run: RunSettings = field(default_factory=RunSettings)
    balances: BalanceSettings = field(default_factory=BalanceSettings)

    @property
    def workers(self) -> int:
        return self.run.workers or os.cpu_count() or 1

    def with_overrides(self, **overrides) -> "MartConfig":
        """Return a copy with any non-``None`` run setting replaced (used by the CLI flags)."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if not changes:
            return self
        config = replace(self, run=replace(self.run, **changes))
        validate_config(config)
        return config


def validate_config(config: MartConfig) -> None:
    """Raise ConfigError for values the coordinator cannot work with."""
    run = config.run
    if run.workers is not None and run.workers < 1:
        raise ConfigError(f"run.workers must be at least 1, got {run.workers}")
    if run.batch_size < 1:
        raise ConfigError(f"run.batch_size must be at least 1, got {run.batch_size}")
    if run.max_retries < 0:
        raise ConfigError(f"run.max_retries cannot be negative, got {run.max_retries}")
    if run.backoff_secs < 0 or run.write_timeout_secs <= 0 or run.lock_ttl_secs <= 0:
        raise ConfigError("run.backoff_secs, run.write_timeout_secs and run.lock_ttl_secs must be positive")
    if config.balances.series_start not in SERIES_START_POLICIES:
        raise ConfigError(f"balances.series_start must be one of {SERIES_START_POLICIES}, got {config.balances.series_start!r}")
    if config.balances.decimal_places < 0:
        raise ConfigError(f"balances.decimal_places cannot be negative, got {config.balances.decimal_places}")


def _resolve_config_file(config_path: pathlib.Path | None) -> pathlib.Path:
    if config_path is not None:
        if not config_path.is_file():
            raise ConfigFileError(config_path)
        return config_path
    for folder in (__dir_user, __dir_base):
        candidate = folder.joinpath(CONFIG_FILE)
        if candidate.is_file():
            return candidate
    raise ConfigFileError(CONFIG_FILE)


def load_config(config_path: pathlib.Path | None = None) -> MartConfig:
    """
    Load and validate the run configuration.

    Args:
        config_path: Optional explicit TOML file.  When ``None`` the user
            config folder is tried first, then the bundled base config.

    Returns:
        MartConfig: the validated configuration.

    Raises:
        ConfigFileError: If no configuration file can be found.
        ConfigError: If the file cannot be parsed or holds invalid values.
    """
    file = _resolve_config_file(config_path)
    try:
        with open(file, "rb") as toml:
            raw = load(toml)
    except TOMLDecodeError as e:
        raise ConfigError(f"Unable to parse {file}: {e}") from e
    try:
        config = from_dict(data_class=MartConfig, data=raw, config=Config(strict=True, cast=[float]))
    except DaciteError as e:
        raise ConfigError(f"Invalid configuration in {file}: {e}") from e
    validate_config(config)
    return config
