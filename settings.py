from __future__ import annotations

import math
import os
from dataclasses import dataclass
from functools import lru_cache


_WINDOW_SECONDS_ENV = "STAB_WINDOW_SEC"
_MAX_SPREAD_ENV = "STAB_MAX_DELTA_KG"
_MIN_PUBLISH_MS_ENV = "STAB_MIN_PUB_MS"
_MODE_ENV = "STABILIZATION_MODE"
_HISTORY_MINUTES_ENV = "MAX_HISTORY_MINUTES"
_HISTORY_POINTS_ENV = "MAX_HISTORY_POINTS"
_PRUNE_INTERVAL_ENV = "HISTORY_PRUNE_INTERVAL_SEC"
_DEFAULT_DEVICE_ENV = "DEFAULT_DEVICE_ID"
_MASS_PER_ITEM_ENV = "INVENTORY_MASS_PER_ITEM"
_TARE_MASS_ENV = "INVENTORY_TARE_MASS"
_INITIAL_COUNT_ENV = "INVENTORY_INITIAL_COUNT"
_ERROR_BAND_ENV = "INVENTORY_ERROR_BAND_KG"
_LOG_LEVEL_ENV = "LOG_LEVEL"

STABILIZATION_MODES = ("dispersion", "explicit")


@dataclass(frozen=True)
class Settings:
    window_seconds: float
    max_spread_kg: float
    min_publish_interval_ms: int
    stabilization_mode: str
    history_retention_minutes: float
    history_max_entries: int
    prune_interval_seconds: float
    default_device_id: str
    mass_per_item: float
    tare_mass: float
    initial_item_count: int
    error_band_kg: float
    log_level: str


def _read_raw(name: str) -> str | None:
    value = os.getenv(name)
    if value is None:
        return None
    candidate = value.strip()
    return candidate or None


def _read_str_env(name: str, default: str) -> str:
    return _read_raw(name) or default


def _read_float_env(name: str, default: float, minimum: float = 0.0) -> float:
    candidate = _read_raw(name)
    if candidate is None:
        return default
    try:
        parsed = float(candidate)
    except ValueError:
        return default
    if not math.isfinite(parsed) or parsed < minimum:
        return default
    return parsed


def _read_positive_float_env(name: str, default: float) -> float:
    parsed = _read_float_env(name, default)
    return parsed if parsed > 0 else default


def _read_int_env(name: str, default: int, minimum: int = 0) -> int:
    candidate = _read_raw(name)
    if candidate is None:
        return default
    try:
        parsed = int(candidate)
    except ValueError:
        return default
    return parsed if parsed >= minimum else default


def _read_mode(default: str) -> str:
    candidate = _read_raw(_MODE_ENV)
    if candidate is None:
        return default
    mode = candidate.lower()
    return mode if mode in STABILIZATION_MODES else default


def _read_log_level(default: str) -> str:
    candidate = _read_raw(_LOG_LEVEL_ENV)
    if candidate is None:
        return default
    return candidate.upper()


@lru_cache
def get_settings() -> Settings:
    return Settings(
        window_seconds=_read_positive_float_env(_WINDOW_SECONDS_ENV, 2.5),
        max_spread_kg=_read_float_env(_MAX_SPREAD_ENV, 0.02),
        min_publish_interval_ms=_read_int_env(_MIN_PUBLISH_MS_ENV, 500),
        stabilization_mode=_read_mode("dispersion"),
        history_retention_minutes=_read_positive_float_env(_HISTORY_MINUTES_ENV, 5.0),
        history_max_entries=_read_int_env(_HISTORY_POINTS_ENV, 300, minimum=1),
        prune_interval_seconds=_read_positive_float_env(_PRUNE_INTERVAL_ENV, 10.0),
        default_device_id=_read_str_env(_DEFAULT_DEVICE_ENV, "WEIGHT_SCALE_001"),
        mass_per_item=_read_positive_float_env(_MASS_PER_ITEM_ENV, 0.5),
        tare_mass=_read_float_env(_TARE_MASS_ENV, 0.0),
        initial_item_count=_read_int_env(_INITIAL_COUNT_ENV, 10),
        error_band_kg=_read_float_env(_ERROR_BAND_ENV, 0.02),
        log_level=_read_log_level("INFO"),
    )
