"""Sliding-window stabilization of noisy scale readings."""

from __future__ import annotations

import bisect
import logging
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, ContextManager, Dict, List, Optional, Protocol

from models.records import DeviceWindow, Reading, StabilityStatus

logger = logging.getLogger(__name__)

MIN_SAMPLES = 3
# Absorbs binary float error so that a spread equal to the threshold stays stable.
_SPREAD_TOLERANCE = 1e-9


@dataclass(frozen=True)
class Classification:
    status: StabilityStatus
    representative: Optional[float] = None
    # False when the representative value must bypass the emission gate.
    gated: bool = True


@dataclass(frozen=True)
class Detection:
    """Outcome of one sample: its classification and the value to emit, if any."""

    status: StabilityStatus
    stabilized_weight_kg: Optional[float] = None

    @property
    def emitted(self) -> bool:
        return self.stabilized_weight_kg is not None


@dataclass(frozen=True)
class WindowStats:
    count: int
    min: Optional[float]
    max: Optional[float]
    spread: Optional[float]
    mean: Optional[float]
    last_emitted_value: Optional[float]
    last_emitted_at: Optional[datetime]


class StabilizationStrategy(Protocol):
    name: str

    def classify(self, window: DeviceWindow, reading: Reading) -> Classification:
        ...


class DispersionStrategy:
    """Stable when the range of the windowed values is within ``max_spread_kg``."""

    name = "dispersion"

    def __init__(self, max_spread_kg: float, min_samples: int = MIN_SAMPLES) -> None:
        self.max_spread_kg = max_spread_kg
        self.min_samples = min_samples

    def classify(self, window: DeviceWindow, reading: Reading) -> Classification:
        values = window.values()
        if len(values) < self.min_samples:
            return Classification(StabilityStatus.unstable)
        if spread(values) > self.max_spread_kg + _SPREAD_TOLERANCE:
            return Classification(StabilityStatus.unstable)
        return Classification(StabilityStatus.stable, sum(values) / len(values))


class ExplicitStatusStrategy:
    """Trusts the producer's own stable/unstable tag and its raw weight."""

    name = "explicit"
    stable_tags = frozenset({"stable"})

    def classify(self, window: DeviceWindow, reading: Reading) -> Classification:
        if reading.explicit_status in self.stable_tags and reading.weight_kg is not None:
            return Classification(StabilityStatus.stable, reading.weight_kg, gated=False)
        return Classification(StabilityStatus.unstable)


def spread(values: List[float]) -> float:
    return max(values) - min(values)


def should_emit(
    value: float,
    last_value: Optional[float],
    last_emitted_at: Optional[datetime],
    now: datetime,
    threshold: float,
    min_interval: timedelta,
) -> bool:
    """Rate-limit re-emission of a stabilized value."""
    if last_value is None or last_emitted_at is None:
        return True
    if abs(value - last_value) > threshold:
        return True
    return now - last_emitted_at >= min_interval


def build_strategy(mode: str, max_spread_kg: float) -> StabilizationStrategy:
    if mode == ExplicitStatusStrategy.name:
        return ExplicitStatusStrategy()
    if mode == DispersionStrategy.name:
        return DispersionStrategy(max_spread_kg)
    raise ValueError(f"Unknown stabilization mode {mode!r}.")


class StabilizationDetector:
    """Keeps one time-bounded window per device and classifies each new sample.

    Callers must serialize calls for the same device; different devices may be
    processed concurrently.
    """

    def __init__(
        self,
        window_seconds: float = 2.5,
        max_spread_kg: float = 0.02,
        min_publish_interval_ms: int = 500,
        strategy: Optional[StabilizationStrategy] = None,
    ) -> None:
        self.window = timedelta(seconds=window_seconds)
        self.max_spread_kg = max_spread_kg
        self.min_publish_interval = timedelta(milliseconds=min_publish_interval_ms)
        self.strategy = strategy or DispersionStrategy(max_spread_kg)
        self._windows: Dict[str, DeviceWindow] = {}
        self._windows_lock = Lock()

    def process(self, reading: Reading) -> Detection:
        if reading.weight_kg is None:
            return Detection(StabilityStatus.unstable)

        window = self._window_for(reading.device_id)
        if window.newest is not None and reading.timestamp < window.newest - self.window:
            logger.debug(
                "Dropped sample older than the stabilization window",
                extra={"device_id": reading.device_id, "weight_kg": reading.weight_kg},
            )
            return Detection(StabilityStatus.unstable)
        self._insert(window, reading.timestamp, reading.weight_kg)

        classification = self.strategy.classify(window, reading)
        if classification.status is not StabilityStatus.stable:
            return Detection(StabilityStatus.unstable)

        value = classification.representative
        if value is None:
            return Detection(StabilityStatus.unstable)
        now = window.newest or reading.timestamp
        if classification.gated and not should_emit(
            value,
            window.last_emitted_value,
            window.last_emitted_at,
            now,
            self.max_spread_kg,
            self.min_publish_interval,
        ):
            return Detection(StabilityStatus.stable)

        window.last_emitted_at = now
        window.last_emitted_value = value
        return Detection(StabilityStatus.stable, value)

    def snapshot(self, device_id: str) -> Optional[WindowStats]:
        with self._windows_lock:
            window = self._windows.get(device_id)
        if window is None:
            return None
        values = window.values()
        return WindowStats(
            count=len(values),
            min=min(values) if values else None,
            max=max(values) if values else None,
            spread=spread(values) if values else None,
            mean=sum(values) / len(values) if values else None,
            last_emitted_value=window.last_emitted_value,
            last_emitted_at=window.last_emitted_at,
        )

    def devices(self) -> List[str]:
        with self._windows_lock:
            return sorted(self._windows)

    def is_idle(self, device_id: str, now: datetime) -> bool:
        with self._windows_lock:
            window = self._windows.get(device_id)
        if window is None or window.newest is None:
            return True
        return window.newest < now - self.window

    def discard(self, device_id: str) -> None:
        with self._windows_lock:
            self._windows.pop(device_id, None)

    def prune_idle(
        self,
        now: datetime,
        guard: Optional[Callable[[str], ContextManager]] = None,
    ) -> int:
        """Drop windows whose newest sample is older than the window duration.

        ``guard`` returns the context held while one device is checked and
        discarded, so a caller can serialize pruning with its own ingestion.
        """
        removed = 0
        for device_id in self.devices():
            with guard(device_id) if guard is not None else nullcontext():
                if self.is_idle(device_id, now):
                    self.discard(device_id)
                    removed += 1
        return removed

    def _window_for(self, device_id: str) -> DeviceWindow:
        with self._windows_lock:
            window = self._windows.get(device_id)
            if window is None:
                window = DeviceWindow()
                self._windows[device_id] = window
            return window

    def _insert(self, window: DeviceWindow, timestamp: datetime, value: float) -> None:
        bisect.insort(window.samples, (timestamp, value))
        cutoff = window.samples[-1][0] - self.window
        stale = 0
        for sample_time, _ in window.samples:
            if sample_time >= cutoff:
                break
            stale += 1
        if stale:
            del window.samples[:stale]
