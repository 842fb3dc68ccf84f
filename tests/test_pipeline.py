import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from datastore.history_buffer import HistoryBuffer
from models.records import (
    ChangeEvent,
    ConfigReset,
    EnrichedReading,
    InventoryConfig,
    InventoryConfigError,
    ManualCountSet,
    StabilityStatus,
)
from services.inventory import InventoryEngine
from services.pipeline import WeightPipeline
from services.stabilizer import ExplicitStatusStrategy, StabilizationDetector
from storage.config_store import InventoryConfigStore

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now


def _pipeline(clock: FakeClock | None = None, explicit: bool = False) -> WeightPipeline:
    clock = clock or FakeClock()
    detector = StabilizationDetector(
        window_seconds=2.5,
        max_spread_kg=0.02,
        min_publish_interval_ms=500,
        strategy=ExplicitStatusStrategy() if explicit else None,
    )
    configs = InventoryConfigStore(default=InventoryConfig(mass_per_item=0.5, tare_mass=2.0))
    return WeightPipeline(
        detector=detector,
        engine=InventoryEngine(configs),
        history=HistoryBuffer(clock=clock),
        default_device_id="WEIGHT_SCALE_001",
        clock=clock,
    )


def _feed(
    pipeline: WeightPipeline,
    payloads: List[str],
    start_seconds: int = 0,
    device_id: str = "scale",
) -> List[EnrichedReading]:
    return [
        pipeline.ingest_raw_reading(
            device_id=device_id,
            payload=payload,
            timestamp=T0 + timedelta(seconds=start_seconds + index),
        )
        for index, payload in enumerate(payloads)
    ]


def test_unparsable_payload_is_forwarded_without_value() -> None:
    pipeline = _pipeline()
    seen: List[EnrichedReading] = []
    pipeline.on_enriched_reading(seen.append)

    reading = pipeline.ingest_raw_reading("scale", "sensor booting", timestamp=T0)

    assert reading.weight_kg is None
    assert reading.status is StabilityStatus.unstable
    assert reading.raw_payload == "sensor booting"
    assert seen == [reading]
    assert pipeline.get_history_snapshot() == []


def test_missing_device_id_uses_default() -> None:
    pipeline = _pipeline()

    assert pipeline.ingest_raw_reading(None, "1.0").device_id == "WEIGHT_SCALE_001"
    assert pipeline.ingest_raw_reading("  ", "1.0").device_id == "WEIGHT_SCALE_001"


def test_every_reading_reaches_subscribers() -> None:
    pipeline = _pipeline()
    seen: List[EnrichedReading] = []
    pipeline.on_enriched_reading(seen.append)

    readings = _feed(pipeline, ["7.0", "7.5", "7.0", "7.0", "7.0"])

    assert seen == readings
    assert [item.status for item in seen] == [
        StabilityStatus.unstable,
        StabilityStatus.unstable,
        StabilityStatus.unstable,
        StabilityStatus.unstable,
        StabilityStatus.stable,
    ]


def test_stable_weights_drive_item_count_and_history() -> None:
    pipeline = _pipeline()
    changes: List[ChangeEvent] = []
    pipeline.on_change_event(changes.append)

    initial = _feed(pipeline, ["7.0", "7.0", "7.0"])
    added = _feed(pipeline, ["8.5kg", "8.5kg", "8.5kg"], start_seconds=3)

    assert initial[-1].stable_weight_kg == pytest.approx(7.0)
    assert initial[-1].item_count == 10
    assert initial[-1].item_count_delta == 0
    assert added[-1].item_count == 13
    assert added[-1].item_count_delta == 3
    assert [(event.item_count_delta, event.new_item_count) for event in changes] == [(3, 13)]

    history = pipeline.get_history_snapshot()
    assert [(entry.weight_kg, entry.item_count) for entry in history] == [
        (pytest.approx(7.0), 10),
        (pytest.approx(8.5), 13),
    ]
    assert pipeline.get_history_snapshot("other") == []


def test_blocked_increase_reports_zero_delta() -> None:
    pipeline = _pipeline()
    pipeline.set_config(
        "scale", mass_per_item=0.5, tare_mass=2.0, initial_item_count=10, allow_increase=False
    )
    changes: List[ChangeEvent] = []
    pipeline.on_change_event(changes.append)

    _feed(pipeline, ["7.0", "7.0", "7.0"])
    added = _feed(pipeline, ["8.5", "8.5", "8.5"], start_seconds=3)

    assert added[-1].item_count == 10
    assert added[-1].item_count_delta == 0
    assert changes == []
    state = pipeline.device_state("scale").state
    assert state is not None
    assert state.last_stable_weight_kg == pytest.approx(8.5)
    # Only the initialization is recorded; the blocked change is not.
    assert [entry.item_count for entry in pipeline.get_history_snapshot()] == [10]


def test_blocked_increase_holds_after_config_reset() -> None:
    pipeline = _pipeline()
    pipeline.set_config("scale", initial_item_count=10, allow_increase=False)

    readings = _feed(pipeline, ["12.0", "12.0", "12.0"])

    assert readings[-1].stable_weight_kg == pytest.approx(12.0)
    assert readings[-1].item_count == 10
    state = pipeline.device_state("scale").state
    assert state is not None
    assert state.last_stable_weight_kg == pytest.approx(12.0)

    removed = _feed(pipeline, ["9.0", "9.0", "9.0"], start_seconds=3)
    assert removed[-1].item_count == 4
    assert removed[-1].item_count_delta == -6


def test_blocked_decrease_holds_after_manual_count() -> None:
    pipeline = _pipeline()
    pipeline.set_config("scale", allow_decrease=False)
    pipeline.set_manual_count("scale", 30)

    readings = _feed(pipeline, ["7.0", "7.0", "7.0"])

    assert readings[-1].item_count == 30


def test_history_uses_receipt_time_for_retention() -> None:
    clock = FakeClock(T0 + timedelta(hours=1))
    pipeline = _pipeline(clock=clock)

    # Readings stamped well before the pipeline clock still leave history.
    _feed(pipeline, ["7.0", "7.0", "7.0"], start_seconds=-600)
    history = pipeline.get_history_snapshot()

    assert [(entry.item_count, entry.timestamp) for entry in history] == [(10, clock.now)]

    clock.now += timedelta(minutes=5)
    assert pipeline.get_history_snapshot() == []


def test_noise_is_not_recorded_in_history() -> None:
    pipeline = _pipeline()

    _feed(pipeline, ["7.0", "7.0", "7.0"])
    _feed(pipeline, ["7.1", "7.1", "7.1"], start_seconds=3)

    assert pipeline.device_state("scale").state.last_stable_weight_kg == pytest.approx(7.1)  # type: ignore[union-attr]
    assert len(pipeline.get_history_snapshot()) == 1


def test_set_config_resets_state_and_notifies() -> None:
    pipeline = _pipeline()
    resets: List[ConfigReset] = []
    pipeline.on_config_reset(resets.append)
    _feed(pipeline, ["7.0", "7.0", "7.0"])

    config = pipeline.set_config("scale", initial_item_count=3, allow_decrease=False)

    assert config.mass_per_item == 0.5
    assert config.allow_decrease is False
    assert len(resets) == 1
    assert resets[0].state.current_item_count == 3
    assert resets[0].state.last_stable_weight_kg is None
    assert pipeline.detector.snapshot("scale") is None


def test_invalid_config_is_rejected_without_side_effects() -> None:
    pipeline = _pipeline()
    resets: List[ConfigReset] = []
    pipeline.on_config_reset(resets.append)
    _feed(pipeline, ["7.0", "7.0", "7.0"])

    with pytest.raises(InventoryConfigError) as excinfo:
        pipeline.set_config("scale", mass_per_item=0)
    with pytest.raises(InventoryConfigError) as unknown:
        pipeline.set_config("scale", mass_per_widget=1.0)

    assert excinfo.value.field == "mass_per_item"
    assert unknown.value.field == "mass_per_widget"
    assert resets == []
    assert pipeline.device_state("scale").state.current_item_count == 10  # type: ignore[union-attr]


def test_manual_count_overrides_and_notifies() -> None:
    pipeline = _pipeline()
    events: List[ManualCountSet] = []
    pipeline.on_manual_count_set(events.append)
    _feed(pipeline, ["7.0", "7.0", "7.0"])

    assert pipeline.set_manual_count("scale", 25) == 25
    with pytest.raises(InventoryConfigError):
        pipeline.set_manual_count("scale", -2)

    assert events == [ManualCountSet(device_id="scale", new_item_count=25)]
    state = pipeline.device_state("scale").state
    assert state is not None
    assert state.current_item_count == 25
    assert state.last_stable_weight_kg == pytest.approx(7.0)


def test_failing_subscriber_does_not_break_ingestion(caplog) -> None:
    pipeline = _pipeline()
    seen: List[EnrichedReading] = []

    def explode(_reading: EnrichedReading) -> None:
        raise RuntimeError("observer failed")

    pipeline.on_enriched_reading(explode)
    pipeline.on_enriched_reading(seen.append)

    with caplog.at_level(logging.ERROR):
        reading = pipeline.ingest_raw_reading("scale", "1.0", timestamp=T0)

    assert seen == [reading]
    records = [record for record in caplog.records if record.name == "services.pipeline"]
    assert any("Subscriber callback failed" in record.getMessage() for record in records)
    assert any(getattr(record, "device_id", None) == "scale" for record in records)


def test_unsubscribe_stops_delivery() -> None:
    pipeline = _pipeline()
    seen: List[EnrichedReading] = []
    unsubscribe = pipeline.on_enriched_reading(seen.append)

    pipeline.ingest_raw_reading("scale", "1.0", timestamp=T0)
    unsubscribe()
    unsubscribe()
    pipeline.ingest_raw_reading("scale", "1.0", timestamp=T0 + timedelta(seconds=1))

    assert len(seen) == 1


def test_prune_discards_idle_windows_and_old_history() -> None:
    clock = FakeClock()
    pipeline = _pipeline(clock=clock)
    _feed(pipeline, ["7.0", "7.0", "7.0"])

    clock.now = T0 + timedelta(minutes=6)
    expired, idle = pipeline.prune()

    assert (expired, idle) == (1, 1)
    assert pipeline.detector.devices() == []
    assert pipeline.get_history_snapshot() == []
    # Inventory state survives window pruning.
    assert pipeline.device_state("scale").state.current_item_count == 10  # type: ignore[union-attr]


def test_device_state_for_unknown_device_raises() -> None:
    pipeline = _pipeline()

    with pytest.raises(KeyError):
        pipeline.device_state("ghost")


def test_device_state_reports_latest_reading_and_window() -> None:
    pipeline = _pipeline()
    readings = _feed(pipeline, ["7.0", "7.01"])

    snapshot = pipeline.device_state("scale")

    assert snapshot.latest == readings[-1]
    assert snapshot.window is not None and snapshot.window.count == 2
    assert snapshot.state is None
    assert snapshot.config.tare_mass == 2.0
    assert pipeline.devices() == ["scale"]


def test_naive_timestamps_are_treated_as_utc() -> None:
    pipeline = _pipeline()

    reading = pipeline.ingest_raw_reading("scale", "1.0", timestamp=datetime(2024, 1, 1, 12, 0))

    assert reading.timestamp == T0


def test_explicit_status_mode_uses_producer_tag() -> None:
    pipeline = _pipeline(explicit=True)

    unstable = pipeline.ingest_raw_reading("scale", "7.3", timestamp=T0, explicit_status="unstable")
    stable = pipeline.ingest_raw_reading(
        "scale", "7.0", timestamp=T0 + timedelta(seconds=1), explicit_status="STABLE"
    )

    assert unstable.status is StabilityStatus.unstable
    assert stable.status is StabilityStatus.stable
    assert stable.explicit_status == "stable"
    assert stable.item_count == 10


def test_devices_are_processed_independently_across_threads() -> None:
    pipeline = _pipeline()
    devices = [f"scale-{index}" for index in range(4)]
    errors: List[BaseException] = []

    def run(device_id: str, items: int) -> None:
        try:
            weight = f"{2.0 + items * 0.5}"
            _feed(pipeline, [weight] * 3, device_id=device_id)
        except BaseException as exc:  # pragma: no cover
            errors.append(exc)

    threads = [
        threading.Thread(target=run, args=(device_id, index + 1))
        for index, device_id in enumerate(devices)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert errors == []
    counts = {
        device_id: pipeline.device_state(device_id).state.current_item_count  # type: ignore[union-attr]
        for device_id in devices
    }
    assert counts == {"scale-0": 1, "scale-1": 2, "scale-2": 3, "scale-3": 4}
    assert len(pipeline.get_history_snapshot()) == 4
