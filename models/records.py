"""Domain models shared across services."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple


class StabilityStatus(str, Enum):
    """Transient classification of the latest sample for a device."""

    stable = "stable"
    unstable = "unstable"


class InventoryOutcome(str, Enum):
    """How the delta engine treated a stabilized weight."""

    initialized = "initialized"
    noise = "noise"
    accepted = "accepted"
    rejected = "rejected"


class InventoryConfigError(ValueError):
    """Raised when an inventory configuration or manual count is invalid."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message)
        self.field = field


@dataclass(frozen=True, slots=True)
class Reading:
    """A single raw reading as received from a transport."""

    device_id: str
    weight_kg: Optional[float]
    raw_payload: str
    timestamp: datetime
    explicit_status: Optional[str] = None


@dataclass(slots=True)
class DeviceWindow:
    """Time-ordered recent samples for one device plus emission bookkeeping."""

    samples: List[Tuple[datetime, float]] = field(default_factory=list)
    last_emitted_at: Optional[datetime] = None
    last_emitted_value: Optional[float] = None

    @property
    def newest(self) -> Optional[datetime]:
        return self.samples[-1][0] if self.samples else None

    def values(self) -> List[float]:
        return [value for _, value in self.samples]


@dataclass(frozen=True, slots=True)
class InventoryConfig:
    """Tare-and-divide parameters and direction gates for one device."""

    mass_per_item: float = 0.5
    tare_mass: float = 0.0
    initial_item_count: int = 0
    error_band_min: float = -0.02
    error_band_max: float = 0.02
    allow_increase: bool = True
    allow_decrease: bool = True

    def __post_init__(self) -> None:
        for name in ("mass_per_item", "tare_mass", "error_band_min", "error_band_max"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise InventoryConfigError(name, f"{name} must be a number")
            if not math.isfinite(value):
                raise InventoryConfigError(name, f"{name} must be a finite number")
        if self.mass_per_item <= 0:
            raise InventoryConfigError("mass_per_item", "mass_per_item must be greater than 0")
        if self.tare_mass < 0:
            raise InventoryConfigError("tare_mass", "tare_mass must be >= 0")
        if isinstance(self.initial_item_count, bool) or not isinstance(self.initial_item_count, int):
            raise InventoryConfigError("initial_item_count", "initial_item_count must be an integer")
        if self.initial_item_count < 0:
            raise InventoryConfigError("initial_item_count", "initial_item_count must be >= 0")

    @property
    def noise_band(self) -> float:
        return max(abs(self.error_band_min), abs(self.error_band_max))


@dataclass(slots=True)
class InventoryState:
    """Mutable per-device count anchored to the last stable weight."""

    current_item_count: int
    last_stable_weight_kg: Optional[float] = None
    # Set once an operator fixed the count via a config reset or manual override.
    baseline_set: bool = False


@dataclass(frozen=True, slots=True)
class HistoryEntry:
    device_id: str
    weight_kg: float
    item_count: int
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class InventoryUpdate:
    """Result of feeding one stabilized weight to the delta engine."""

    device_id: str
    weight_kg: float
    item_count: int
    delta: int
    outcome: InventoryOutcome


@dataclass(frozen=True, slots=True)
class EnrichedReading:
    """What every subscriber sees for every ingested reading."""

    device_id: str
    weight_kg: Optional[float]
    status: StabilityStatus
    item_count: Optional[int]
    item_count_delta: int
    timestamp: datetime
    raw_payload: str
    stable_weight_kg: Optional[float] = None
    explicit_status: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    device_id: str
    item_count_delta: int
    new_item_count: int
    weight_kg: float
    timestamp: datetime


@dataclass(frozen=True, slots=True)
class ConfigReset:
    device_id: str
    config: InventoryConfig
    state: InventoryState


@dataclass(frozen=True, slots=True)
class ManualCountSet:
    device_id: str
    new_item_count: int
