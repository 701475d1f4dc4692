"""Boot-time configuration.

Settings resolve, highest priority first, from keyword arguments, then
``ECODEFER_*`` environment variables, then ``<data_dir>/config.toml``, then
the defaults below. The running service only reads them. Runtime whitelist
changes live in the ``whitelist_overrides`` table instead.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import pydantic
from pydantic import Field, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from ecodefer.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".ecodefer"
CONFIG_FILENAME = "config.toml"

DEFAULT_ALLOWED_TASKS = (
    "database-cleanup",
    "index-optimization",
    "cache-warming",
    "log-rotation",
    "metrics-aggregation",
    "backup-verification",
    "report-generation",
)

# Watts drawn by each task type at nominal data size
DEFAULT_BASE_POWER_W = {
    "database-cleanup": 50,
    "index-optimization": 100,
    "cache-warming": 30,
    "log-rotation": 20,
    "metrics-aggregation": 40,
    "backup-verification": 120,
    "report-generation": 60,
}


class DataDirTomlSource(PydanticBaseSettingsSource):
    """``config.toml`` inside the data dir chosen by the higher-priority sources."""

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        # Whole-file source; values are produced by __call__
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        data_dir = Path(self.current_state.get("data_dir") or DEFAULT_DATA_DIR).expanduser()
        path = data_dir / CONFIG_FILENAME
        if not path.exists():
            return {}

        raw = TomlConfigSettingsSource(self.settings_cls, toml_file=path)()
        values: dict[str, Any] = {}
        for key, value in raw.items():
            if key == "data_dir":
                continue
            if key not in self.settings_cls.model_fields:
                logger.warning(f"Ignoring unknown config key: {key}")
                continue
            values[key] = value
        logger.debug(f"Loaded config from {path}")
        return values


class ServiceConfig(BaseSettings):
    """Immutable service configuration."""

    model_config = SettingsConfigDict(
        env_prefix="ECODEFER_",
        extra="ignore",
        frozen=True,
    )

    data_dir: Path = DEFAULT_DATA_DIR
    allowed_tasks: tuple[str, ...] = DEFAULT_ALLOWED_TASKS
    base_power_w: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_BASE_POWER_W))
    default_power_w: float = Field(default=50.0, ge=0.0)
    max_task_duration_s: float = Field(default=3600.0, gt=0.0)
    max_memory_mb: int = Field(default=500, ge=1)
    off_peak_hours: tuple[int, ...] = (2, 3, 4, 5)
    weekend_off_peak_hours: tuple[int, ...] = ()  # empty = same as weekdays
    cpu_threshold_percent: float = Field(default=60.0, ge=0.0, le=100.0)
    memory_threshold_percent: float = Field(default=70.0, ge=0.0, le=100.0)
    max_concurrency: int = Field(default=2, ge=1)
    poll_interval_s: float = Field(default=30.0, gt=0.0)
    feedback_enabled: bool = True
    learning_enabled: bool = True
    audit_enabled: bool = True
    peer_liveness_timeout_s: float = Field(default=120.0, gt=0.0)
    voting_period_s: float = Field(default=300.0, gt=0.0)
    # Cooldown after a user's delegated task completes
    delegation_idle_minutes: float = Field(default=5.0, ge=0.0)
    eco_min_clean_percent: float = Field(default=80.0, ge=0.0, le=100.0)
    grid_carbon_intensity: float = Field(default=400.0, ge=0.0)  # kg CO2/MWh
    grid_renewable_percent: float = Field(default=30.0, ge=0.0, le=100.0)
    # kg CO2/MWh, worst-case timing
    reference_carbon_intensity: float = Field(default=800.0, ge=0.0)
    local_peer_id: str = "local"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (init_settings, env_settings, DataDirTomlSource(settings_cls))

    @field_validator("data_dir")
    @classmethod
    def _expand_data_dir(cls, value: Path) -> Path:
        return value.expanduser()

    @field_validator("off_peak_hours")
    @classmethod
    def _require_off_peak_hours(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        if not value:
            raise ValueError("off_peak_hours must not be empty")
        return value

    @field_validator("off_peak_hours", "weekend_off_peak_hours")
    @classmethod
    def _check_hours(cls, value: tuple[int, ...]) -> tuple[int, ...]:
        for hour in value:
            if not 0 <= hour <= 23:
                raise ValueError(f"off-peak hour must be in [0, 23], got {hour}")
        return value

    @property
    def config_path(self) -> Path:
        return self.data_dir / CONFIG_FILENAME

    def power_for(self, task_name: str) -> float:
        return float(self.base_power_w.get(task_name, self.default_power_w))

    def with_overrides(self, **changes: Any) -> ServiceConfig:
        """Validated copy with ``changes`` applied; no sources are re-read."""
        return type(self).model_validate({**self.model_dump(), **changes})


def load_config(data_dir: Path | None = None, **overrides: Any) -> ServiceConfig:
    """Build a ServiceConfig from ``config.toml``, the environment and keyword overrides.

    A missing file yields defaults. Unknown file keys are ignored with a warning.

    Raises:
        ValidationError: a setting is out of range or of the wrong type.
    """
    if data_dir is not None:
        overrides["data_dir"] = data_dir
    try:
        return ServiceConfig(**overrides)
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        )
        raise ValidationError(problems, component="config") from e
