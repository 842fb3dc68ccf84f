"""Ingestion facade wiring the parser, detector, inventory engine and history."""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from datetime import datetime, timezone
from functools import lru_cache
from threading import Lock, RLock
from typing import Any, Callable, Dict, List, Optional, Union

from datastore.history_buffer import Clock, HistoryBuffer, build_default_history, utc_now
from models.records import (
    ChangeEvent,
    ConfigReset,
    EnrichedReading,
    HistoryEntry,
    InventoryConfig,
    InventoryConfigError,
    InventoryOutcome,
    InventoryState,
    ManualCountSet,
    Reading,
    StabilityStatus,
)
from services.inventory import InventoryEngine
from services.parser import normalize_status, parse_weight
from services.stabilizer import StabilizationDetector, WindowStats, build_strategy
from settings import get_settings
from storage.config_store import InventoryConfigStore, build_default_config_store

logger = logging.getLogger(__name__)

Callback = Callable[[Any], None]
Unsubscribe = Callable[[], None]

_CONFIG_FIELDS = frozenset(item.name for item in fields(InventoryConfig))
_RECORDED_OUTCOMES = frozenset({InventoryOutcome.initialized, InventoryOutcome.accepted})

ENRICHED = "enriched"
CHANGE = "change"
CONFIG_RESET = "config_reset"
MANUAL_COUNT = "manual_count"


@dataclass(frozen=True)
class DeviceSnapshot:
    device_id: str
    config: InventoryConfig
    state: Optional[InventoryState]
    window: Optional[WindowStats]
    latest: Optional[EnrichedReading]


class WeightPipeline:
    """Feeds raw readings through stabilization and counting, then notifies observers.

    Each device has its own re-entrant lock so one device's readings are
    processed strictly in arrival order while other devices run in parallel.
    """

    def __init__(
        self,
        detector: StabilizationDetector,
        engine: InventoryEngine,
        history: HistoryBuffer,
        default_device_id: str = "WEIGHT_SCALE_001",
        clock: Clock = utc_now,
    ) -> None:
        self.detector = detector
        self.engine = engine
        self.history = history
        self.default_device_id = default_device_id
        self._clock = clock
        self._subscribers: Dict[str, List[Callback]] = {
            ENRICHED: [],
            CHANGE: [],
            CONFIG_RESET: [],
            MANUAL_COUNT: [],
        }
        self._subscribers_lock = Lock()
        self._device_locks: Dict[str, RLock] = {}
        self._device_locks_lock = Lock()
        self._latest: Dict[str, EnrichedReading] = {}

    # Subscriptions

    def on_enriched_reading(self, callback: Callable[[EnrichedReading], None]) -> Unsubscribe:
        return self._subscribe(ENRICHED, callback)

    def on_change_event(self, callback: Callable[[ChangeEvent], None]) -> Unsubscribe:
        return self._subscribe(CHANGE, callback)

    def on_config_reset(self, callback: Callable[[ConfigReset], None]) -> Unsubscribe:
        return self._subscribe(CONFIG_RESET, callback)

    def on_manual_count_set(self, callback: Callable[[ManualCountSet], None]) -> Unsubscribe:
        return self._subscribe(MANUAL_COUNT, callback)

    # Ingestion

    def ingest_raw_reading(
        self,
        device_id: Optional[str] = None,
        payload: Union[str, bytes, None] = "",
        timestamp: Optional[datetime] = None,
        explicit_status: Optional[str] = None,
    ) -> EnrichedReading:
        """Process one raw reading; malformed payloads never raise."""
        resolved_id = (device_id or "").strip() or self.default_device_id
        raw_text = payload.decode("utf-8", errors="replace") if isinstance(payload, bytes) else (payload or "")
        reading = Reading(
            device_id=resolved_id,
            weight_kg=parse_weight(raw_text),
            raw_payload=raw_text,
            timestamp=self._coerce_timestamp(timestamp),
            explicit_status=normalize_status(explicit_status),
        )
        if reading.weight_kg is None:
            logger.debug(
                "Payload carried no usable weight",
                extra={"device_id": resolved_id, "payload": raw_text[:64]},
            )

        with self._lock_for(resolved_id):
            enriched, change = self._process(reading)
            self._latest[resolved_id] = enriched
            self._publish(ENRICHED, enriched)
            if change is not None:
                self._publish(CHANGE, change)
        return enriched

    def _process(self, reading: Reading) -> tuple[EnrichedReading, Optional[ChangeEvent]]:
        change: Optional[ChangeEvent] = None
        delta = 0
        try:
            detection = self.detector.process(reading)
            stable_weight = detection.stabilized_weight_kg
            if stable_weight is not None:
                update = self.engine.apply(reading.device_id, stable_weight)
                if update.outcome in _RECORDED_OUTCOMES:
                    # Receipt time, on the same clock the buffer prunes with.
                    self.history.append(
                        HistoryEntry(
                            device_id=reading.device_id,
                            weight_kg=stable_weight,
                            item_count=update.item_count,
                            timestamp=self._clock(),
                        )
                    )
                if update.outcome is InventoryOutcome.accepted:
                    delta = update.delta
                    change = ChangeEvent(
                        device_id=reading.device_id,
                        item_count_delta=update.delta,
                        new_item_count=update.item_count,
                        weight_kg=stable_weight,
                        timestamp=reading.timestamp,
                    )
                    logger.info(
                        "Item count changed",
                        extra={
                            "device_id": reading.device_id,
                            "stable_weight_kg": round(stable_weight, 3),
                            "item_count": update.item_count,
                            "delta": update.delta,
                        },
                    )
        except Exception:  # pragma: no cover
            logger.exception(
                "Failed to process reading", extra={"device_id": reading.device_id}
            )
            detection = None

        state = self.engine.state(reading.device_id)
        return (
            EnrichedReading(
                device_id=reading.device_id,
                weight_kg=reading.weight_kg,
                status=detection.status if detection is not None else StabilityStatus.unstable,
                item_count=state.current_item_count if state is not None else None,
                item_count_delta=delta,
                timestamp=reading.timestamp,
                raw_payload=reading.raw_payload,
                stable_weight_kg=detection.stabilized_weight_kg if detection is not None else None,
                explicit_status=reading.explicit_status,
            ),
            change,
        )

    # Commands

    def set_config(
        self,
        device_id: str,
        config: Optional[InventoryConfig] = None,
        **changes: Any,
    ) -> InventoryConfig:
        """Replace a device's configuration and reset its inventory state.

        Either pass a full ``config`` or keyword overrides applied on top of the
        device's current configuration. Raises ``InventoryConfigError`` without
        mutating anything when validation fails.
        """
        if config is None:
            unknown = sorted(set(changes) - _CONFIG_FIELDS)
            if unknown:
                raise InventoryConfigError(unknown[0], f"Unknown configuration field {unknown[0]!r}")
            config = replace(self.engine.configs.get(device_id), **changes)

        with self._lock_for(device_id):
            state = self.engine.replace_config(device_id, config)
            self.detector.discard(device_id)
            self._publish(CONFIG_RESET, ConfigReset(device_id=device_id, config=config, state=state))
        logger.info(
            "Inventory configuration applied",
            extra={"device_id": device_id, "item_count": state.current_item_count},
        )
        return config

    def set_manual_count(self, device_id: str, item_count: int) -> int:
        with self._lock_for(device_id):
            state = self.engine.set_count(device_id, item_count)
            self._publish(
                MANUAL_COUNT,
                ManualCountSet(device_id=device_id, new_item_count=state.current_item_count),
            )
        logger.info(
            "Item count set manually",
            extra={"device_id": device_id, "item_count": state.current_item_count},
        )
        return state.current_item_count

    # Queries

    def get_history_snapshot(self, device_id: Optional[str] = None) -> list[HistoryEntry]:
        return self.history.snapshot(device_id)

    def latest_reading(self, device_id: str) -> Optional[EnrichedReading]:
        return self._latest.get(device_id)

    def devices(self) -> List[str]:
        known = set(self._latest)
        known.update(self.engine.devices())
        known.update(device_id for device_id, _ in self.engine.configs.items())
        return sorted(known)

    def device_state(self, device_id: str) -> DeviceSnapshot:
        if device_id not in self.devices():
            raise KeyError(f"Device {device_id!r} has not been seen.")
        with self._lock_for(device_id):
            return DeviceSnapshot(
                device_id=device_id,
                config=self.engine.configs.get(device_id),
                state=self.engine.state(device_id),
                window=self.detector.snapshot(device_id),
                latest=self.latest_reading(device_id),
            )

    # Maintenance

    def prune(self) -> tuple[int, int]:
        """Drop expired history entries and idle device windows."""
        expired = self.history.prune()
        idle = self.detector.prune_idle(self._clock(), guard=self._lock_for)
        if expired or idle:
            logger.debug("Pruned %d history entries and %d idle windows", expired, idle)
        return expired, idle

    def close(self) -> None:
        with self._subscribers_lock:
            for callbacks in self._subscribers.values():
                callbacks.clear()

    def _subscribe(self, kind: str, callback: Callback) -> Unsubscribe:
        with self._subscribers_lock:
            self._subscribers[kind].append(callback)

        def unsubscribe() -> None:
            with self._subscribers_lock:
                try:
                    self._subscribers[kind].remove(callback)
                except ValueError:
                    pass

        return unsubscribe

    def _publish(self, kind: str, event: Any) -> None:
        with self._subscribers_lock:
            callbacks = list(self._subscribers[kind])
        for callback in callbacks:
            try:
                callback(event)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Subscriber callback failed",
                    extra={"device_id": getattr(event, "device_id", None)},
                )

    def _lock_for(self, device_id: str) -> RLock:
        with self._device_locks_lock:
            lock = self._device_locks.get(device_id)
            if lock is None:
                lock = RLock()
                self._device_locks[device_id] = lock
            return lock

    def _coerce_timestamp(self, value: Optional[datetime]) -> datetime:
        if value is None:
            return self._clock()
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


@lru_cache
def build_default_pipeline() -> WeightPipeline:
    """Factory that wires the pipeline from environment settings."""
    settings = get_settings()
    detector = StabilizationDetector(
        window_seconds=settings.window_seconds,
        max_spread_kg=settings.max_spread_kg,
        min_publish_interval_ms=settings.min_publish_interval_ms,
        strategy=build_strategy(settings.stabilization_mode, settings.max_spread_kg),
    )
    configs: InventoryConfigStore = build_default_config_store()
    engine = InventoryEngine(configs)
    history = build_default_history()
    return WeightPipeline(
        detector=detector,
        engine=engine,
        history=history,
        default_device_id=settings.default_device_id,
    )
