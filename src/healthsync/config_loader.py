"""Load, validate, and hot-reload the HealthSync tunables.

The config lives in ``sync_config.yaml`` alongside this module.  At startup
it is loaded once and cached.  Call ``reload_sync_config()`` to re-read from
disk after editing the file; components built afterwards pick up the new
values.

Usage::

    from src.healthsync.config_loader import get_sync_config

    config = get_sync_config()
    limiter_config = config.rate_limiter_preset("fast")   # max_retries=3
    profile = config.device_profiles.lookup("Xiaomi")     # level=low
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, fields, replace
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from src.healthsync.aggregate_validator import ValidationConfig
from src.healthsync.conflicts import ConflictDetectorConfig
from src.healthsync.rate_limiter import RateLimiterConfig
from src.healthsync.sync.changes import ChangesConfig
from src.healthsync.sync.device_profiles import (
    CompatibilityLevel,
    DeviceProfile,
    DeviceProfileTable,
)

logger = logging.getLogger("healthsync.config")

# Path to the YAML file sitting next to this module
_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class BackgroundPreset:
    """Named periodic-sync preset (conservative / balanced / aggressive)."""

    name: str
    frequency_minutes: int
    requires_charging: bool = False
    requires_wifi: bool = False

    @property
    def frequency(self) -> timedelta:
        return timedelta(minutes=self.frequency_minutes)


@dataclass
class BackgroundConfig:
    """Background execution and health-monitoring settings."""

    min_frequency_minutes: int = 15
    stuck_after_hours: int = 24
    healthy_success_rate: float = 0.8
    default_task_id: str = "health-sync-background"
    presets: dict[str, BackgroundPreset] = field(default_factory=dict)

    @property
    def min_frequency(self) -> timedelta:
        return timedelta(minutes=self.min_frequency_minutes)


@dataclass
class SyncConfig:
    """Complete, validated HealthSync configuration.

    This is the single in-memory representation of sync_config.yaml.

    Attributes:
        version:             Config schema version string.
        rate_limiter:        Default retry / circuit-breaker settings.
        rate_limiter_presets: Named overrides of ``rate_limiter``.
        changes:             Incremental-sync settings.
        conflicts:           Conflict-detector thresholds.
        validation:          Aggregate-validator settings.
        background:          Background scheduler settings.
        device_profiles:     Manufacturer compatibility table.
    """

    version: str
    rate_limiter: RateLimiterConfig
    rate_limiter_presets: dict[str, RateLimiterConfig]
    changes: ChangesConfig
    conflicts: ConflictDetectorConfig
    validation: ValidationConfig
    background: BackgroundConfig
    device_profiles: DeviceProfileTable
    _raw: dict = field(default_factory=dict, repr=False)

    def rate_limiter_preset(self, name: str) -> RateLimiterConfig:
        """Return a copy of the named rate-limiter preset.

        Raises:
            KeyError: If the preset is not defined.
        """
        key = name.strip().lower()
        if key not in self.rate_limiter_presets:
            raise KeyError(
                f"Unknown rate limiter preset {name!r}; "
                f"expected one of {sorted(self.rate_limiter_presets)}"
            )
        return replace(self.rate_limiter_presets[key])

    def background_preset(self, name: str) -> BackgroundPreset:
        key = name.strip().lower()
        if key not in self.background.presets:
            raise KeyError(
                f"Unknown background preset {name!r}; "
                f"expected one of {sorted(self.background.presets)}"
            )
        return self.background.presets[key]


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _coerce_section(
    cls: type,
    raw: Any,
    section: str,
    errors: list[str],
    base: Any = None,
) -> Any:
    """Build dataclass ``cls`` from a mapping, coercing each known key.

    Unknown keys are reported; missing keys keep the dataclass default (or
    the value from ``base`` when given).
    """
    instance = replace(base) if base is not None else cls()
    if raw is None:
        return instance
    if not isinstance(raw, dict):
        errors.append(f"'{section}' must be a mapping")
        return instance

    known = {f.name: f for f in fields(cls)}
    for key, value in raw.items():
        if key not in known:
            errors.append(f"Unknown key '{key}' in section '{section}'")
            continue
        current = getattr(instance, key)
        try:
            if isinstance(current, bool):
                if not isinstance(value, bool):
                    raise TypeError
                coerced = value
            elif isinstance(current, int):
                coerced = int(value)
            elif isinstance(current, float):
                coerced = float(value)
            elif isinstance(current, (set, frozenset)):
                coerced = frozenset(str(v) for v in value)
            else:
                coerced = value
        except (TypeError, ValueError):
            errors.append(f"{section}.{key} has invalid value {value!r}")
            continue
        setattr(instance, key, coerced)
    return instance


def _check_range(errors: list[str], name: str, value: float, low: float, high: float) -> None:
    if not (low <= value <= high):
        errors.append(f"{name} = {value} is out of range [{low}, {high}]")


def _validate_rate_limiter(cfg: RateLimiterConfig, section: str, errors: list[str]) -> None:
    if cfg.max_retries < 1:
        errors.append(f"{section}.max_retries must be >= 1")
    if cfg.initial_delay < 0 or cfg.max_delay < 0:
        errors.append(f"{section} delays must be non-negative")
    if cfg.max_delay < cfg.initial_delay:
        errors.append(f"{section}.max_delay must be >= initial_delay")
    if cfg.backoff_multiplier < 1:
        errors.append(f"{section}.backoff_multiplier must be >= 1")
    if cfg.circuit_threshold < 1:
        errors.append(f"{section}.circuit_threshold must be >= 1")


def _build_device_profiles(raw: Any, errors: list[str]) -> DeviceProfileTable:
    if not isinstance(raw, dict) or not raw:
        errors.append("'device_profiles' section is missing or empty")
        raw = {}

    profiles: list[DeviceProfile] = []
    default: DeviceProfile | None = None
    for key, spec in raw.items():
        if not isinstance(spec, dict):
            errors.append(f"device_profiles.{key} must be a mapping")
            continue
        try:
            level = CompatibilityLevel(str(spec.get("level", "medium")).lower())
        except ValueError:
            errors.append(f"device_profiles.{key}.level must be high, medium or low")
            continue
        minutes = int(spec.get("recommended_frequency_minutes", 30))
        if minutes < 15:
            errors.append(
                f"device_profiles.{key}.recommended_frequency_minutes = {minutes} "
                "is below the 15 minute platform minimum"
            )
        profile = DeviceProfile(
            manufacturer=str(key).strip().lower(),
            level=level,
            aggressive_battery_management=bool(spec.get("aggressive_battery_management", False)),
            recommended_frequency=timedelta(minutes=minutes),
            requires_charging=bool(spec.get("requires_charging", False)),
            requires_wifi=bool(spec.get("requires_wifi", False)),
            warning=spec.get("warning"),
            aliases=tuple(str(a).strip().lower() for a in spec.get("aliases", []) or []),
        )
        if profile.manufacturer == "default":
            default = profile
        else:
            profiles.append(profile)

    return DeviceProfileTable(profiles, default=default)


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Raises:
        ConfigValidationError: If any field is missing or invalid.  All
            problems are collected and reported together.
    """
    errors: list[str] = []
    version = str(raw.get("version", "1.0"))

    # ── Rate limiter ──
    rl_raw = dict(raw.get("rate_limiter") or {})
    presets_raw = rl_raw.pop("presets", {}) or {}
    rate_limiter = _coerce_section(RateLimiterConfig, rl_raw, "rate_limiter", errors)
    _validate_rate_limiter(rate_limiter, "rate_limiter", errors)

    presets: dict[str, RateLimiterConfig] = {}
    if not isinstance(presets_raw, dict):
        errors.append("rate_limiter.presets must be a mapping")
        presets_raw = {}
    for name, preset_raw in presets_raw.items():
        section = f"rate_limiter.presets.{name}"
        preset = _coerce_section(RateLimiterConfig, preset_raw, section, errors, base=rate_limiter)
        _validate_rate_limiter(preset, section, errors)
        presets[str(name).lower()] = preset

    # ── Changes ──
    changes = _coerce_section(ChangesConfig, raw.get("changes"), "changes", errors)
    if changes.fallback_range_days < 1:
        errors.append("changes.fallback_range_days must be >= 1")
    if changes.stale_after_days < 1:
        errors.append("changes.stale_after_days must be >= 1")

    # ── Conflicts ──
    cf_raw = dict(raw.get("conflicts") or {})
    severity_labels = cf_raw.pop("severity_labels", {}) or {}
    confidence_labels = cf_raw.pop("confidence_labels", {}) or {}
    conflicts = _coerce_section(ConflictDetectorConfig, cf_raw, "conflicts", errors)
    try:
        conflicts.severity_high = float(severity_labels.get("high", conflicts.severity_high))
        conflicts.severity_medium = float(severity_labels.get("medium", conflicts.severity_medium))
        conflicts.confidence_high = float(confidence_labels.get("high", conflicts.confidence_high))
        conflicts.confidence_medium = float(
            confidence_labels.get("medium", conflicts.confidence_medium)
        )
    except (TypeError, ValueError, AttributeError):
        errors.append("conflicts label thresholds must be numbers")
    for name in (
        "sync_loop_similarity",
        "high_overlap_threshold",
        "low_overlap_threshold",
        "warn_high_severity",
        "warn_medium_severity",
        "warn_min_confidence",
        "severity_high",
        "severity_medium",
        "confidence_high",
        "confidence_medium",
    ):
        _check_range(errors, f"conflicts.{name}", getattr(conflicts, name), 0.0, 1.0)
    if conflicts.bucket_minutes < 1:
        errors.append("conflicts.bucket_minutes must be >= 1")
    if conflicts.sample_saturation < conflicts.min_sample_size:
        errors.append("conflicts.sample_saturation must be >= min_sample_size")

    # ── Validation ──
    validation = _coerce_section(ValidationConfig, raw.get("validation"), "validation", errors)
    if validation.sample_size < 1:
        errors.append("validation.sample_size must be >= 1")
    _check_range(errors, "validation.accuracy_threshold", validation.accuracy_threshold, 0.0, 1.0)

    # ── Background ──
    bg_raw = dict(raw.get("background") or {})
    bg_presets_raw = bg_raw.pop("presets", {}) or {}
    background = _coerce_section(BackgroundConfig, bg_raw, "background", errors)
    if background.min_frequency_minutes < 15:
        errors.append("background.min_frequency_minutes must be >= 15 (platform minimum)")
    _check_range(
        errors, "background.healthy_success_rate", background.healthy_success_rate, 0.0, 1.0
    )
    for name, preset_raw in (bg_presets_raw or {}).items():
        if not isinstance(preset_raw, dict):
            errors.append(f"background.presets.{name} must be a mapping")
            continue
        minutes = int(preset_raw.get("frequency_minutes", background.min_frequency_minutes))
        if minutes < background.min_frequency_minutes:
            errors.append(
                f"background.presets.{name}.frequency_minutes = {minutes} "
                f"is below the {background.min_frequency_minutes} minute minimum"
            )
        background.presets[str(name).lower()] = BackgroundPreset(
            name=str(name).lower(),
            frequency_minutes=minutes,
            requires_charging=bool(preset_raw.get("requires_charging", False)),
            requires_wifi=bool(preset_raw.get("requires_wifi", False)),
        )

    # ── Device profiles ──
    device_profiles = _build_device_profiles(raw.get("device_profiles"), errors)

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        rate_limiter=rate_limiter,
        rate_limiter_presets=presets,
        changes=changes,
        conflicts=conflicts,
        validation=validation,
        background=background,
        device_profiles=device_profiles,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    raw = _load_yaml(target)
    config = _validate_and_build(raw)
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig singleton, loading it on first call.

    Thread-safe.  Use ``reload_sync_config()`` to refresh after YAML changes.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the sync config from disk and replace the global singleton.

    If validation fails, the old config is retained and the error is re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
