from datetime import datetime, timedelta, timezone
from typing import Dict, Iterator, List

import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from datastore.history_buffer import HistoryBuffer
from models.records import InventoryConfig
from services.inventory import InventoryEngine
from services.pipeline import WeightPipeline, build_default_pipeline
from services.stabilizer import StabilizationDetector
from storage.config_store import InventoryConfigStore


@pytest.fixture
def pipelines() -> Dict[str, WeightPipeline]:
    return {}


@pytest.fixture
def api_client(monkeypatch, pipelines: Dict[str, WeightPipeline]) -> Iterator[TestClient]:
    def build_test_pipeline() -> WeightPipeline:
        pipeline = pipelines.get("default")
        if pipeline is None:
            configs = InventoryConfigStore(
                default=InventoryConfig(mass_per_item=0.5, tare_mass=2.0)
            )
            pipeline = WeightPipeline(
                detector=StabilizationDetector(),
                engine=InventoryEngine(configs),
                history=HistoryBuffer(),
                default_device_id="WEIGHT_SCALE_001",
            )
            pipelines["default"] = pipeline
        return pipeline

    def cache_clear() -> None:
        while pipelines:
            _, pipeline = pipelines.popitem()
            pipeline.close()

    build_test_pipeline.cache_clear = cache_clear  # type: ignore[attr-defined]

    monkeypatch.setattr("app.main.build_default_pipeline", build_test_pipeline)
    monkeypatch.setattr("app.api.build_default_pipeline", build_test_pipeline)

    app = create_app()
    with TestClient(app) as client:
        yield client

    cache_clear()


def _timestamps(count: int, start_seconds: int = 0) -> List[str]:
    base = datetime.now(timezone.utc) - timedelta(minutes=1)
    return [
        (base + timedelta(seconds=start_seconds + index)).isoformat()
        for index in range(count)
    ]


def _post_series(
    client: TestClient,
    payload: str,
    count: int = 3,
    start_seconds: int = 0,
    device_id: str = "scale-1",
) -> List[dict]:
    responses = []
    for timestamp in _timestamps(count, start_seconds):
        response = client.post(
            f"/devices/{device_id}/readings",
            json={"payload": payload, "timestamp": timestamp},
        )
        assert response.status_code == 202
        responses.append(response.json())
    return responses


def test_lifespan_closes_pipeline_and_clears_cache() -> None:
    app = create_app()

    with TestClient(app):
        pipeline_during = build_default_pipeline()

    pipeline_after = build_default_pipeline()
    try:
        assert pipeline_after is not pipeline_during
    finally:
        build_default_pipeline.cache_clear()


def test_post_reading_uses_default_device(api_client: TestClient) -> None:
    response = api_client.post("/readings", json={"payload": "Weight: 7.25kg"})

    assert response.status_code == 202
    body = response.json()
    assert body["device_id"] == "WEIGHT_SCALE_001"
    assert body["weight_kg"] == pytest.approx(7.25)
    assert body["status"] == "unstable"
    assert body["item_count"] is None
    assert body["raw_payload"] == "Weight: 7.25kg"


def test_post_reading_derives_device_from_topic(api_client: TestClient) -> None:
    response = api_client.post(
        "/readings", json={"topic": "weight/sensor/SCALE_7", "payload": "Weight: 1.5"}
    )

    assert response.status_code == 202
    assert response.json()["device_id"] == "SCALE_7"


def test_unparsable_payload_is_accepted(api_client: TestClient) -> None:
    response = api_client.post("/readings", json={"device_id": "scale-1", "payload": "boot"})

    assert response.status_code == 202
    assert response.json()["weight_kg"] is None


def test_missing_payload_is_rejected(api_client: TestClient) -> None:
    response = api_client.post("/readings", json={"device_id": "scale-1"})

    assert response.status_code == 422


def test_stable_series_updates_count_and_history(api_client: TestClient) -> None:
    first = _post_series(api_client, "7.0")
    second = _post_series(api_client, "8.5", start_seconds=3)

    assert first[-1]["status"] == "stable"
    assert first[-1]["item_count"] == 10
    assert second[-1]["item_count"] == 13
    assert second[-1]["item_count_delta"] == 3

    history = api_client.get("/history").json()
    assert history["data_points"] == 2
    assert [point["item_count"] for point in history["history"]] == [10, 13]

    filtered = api_client.get("/history", params={"device_id": "other"}).json()
    assert filtered == {"data_points": 0, "history": []}


def test_device_state_and_listing(api_client: TestClient) -> None:
    _post_series(api_client, "7.0")

    assert api_client.get("/devices").json() == {"devices": ["scale-1"]}

    state = api_client.get("/devices/scale-1/state").json()
    assert state["device_id"] == "scale-1"
    assert state["config"]["mass_per_item"] == 0.5
    assert state["state"]["current_item_count"] == 10
    assert state["window"]["count"] == 3
    assert state["latest"]["status"] == "stable"


def test_unknown_device_state_returns_404(api_client: TestClient) -> None:
    response = api_client.get("/devices/ghost/state")

    assert response.status_code == 404


def test_put_config_accepts_dashboard_aliases(api_client: TestClient) -> None:
    _post_series(api_client, "7.0")

    response = api_client.put(
        "/devices/scale-1/config",
        json={"boardMass": 1.0, "initial_item_count": 4, "allowAdding": False},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["tare_mass"] == 1.0
    assert body["mass_per_item"] == 0.5
    assert body["allow_increase"] is False
    assert body["allow_decrease"] is True

    state = api_client.get("/devices/scale-1/state").json()
    assert state["state"] == {"current_item_count": 4, "last_stable_weight_kg": None}
    assert state["window"] is None


def test_put_config_rejects_invalid_values(api_client: TestClient) -> None:
    response = api_client.put("/devices/scale-1/config", json={"mass_per_item": 0})

    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["field"] == "mass_per_item"
    assert "mass_per_item" in detail["message"]


def test_put_count_overrides_and_validates(api_client: TestClient) -> None:
    _post_series(api_client, "7.0")

    response = api_client.put("/devices/scale-1/count", json={"item_count": 3})
    rejected = api_client.put("/devices/scale-1/count", json={"item_count": -1})

    assert response.status_code == 200
    assert response.json() == {"device_id": "scale-1", "item_count": 3}
    assert rejected.status_code == 422
    assert rejected.json()["detail"]["field"] == "item_count"
    state = api_client.get("/devices/scale-1/state").json()
    assert state["state"]["current_item_count"] == 3


def test_websocket_sends_history_then_live_events(api_client: TestClient) -> None:
    _post_series(api_client, "7.0")

    with api_client.websocket_connect("/ws") as websocket:
        greeting = websocket.receive_json()
        assert greeting["type"] == "history"
        assert greeting["data"]["data_points"] == 1

        api_client.post("/readings", json={"device_id": "scale-1", "payload": "7.3"})
        live = websocket.receive_json()
        assert live["type"] == "iot-data"
        assert live["data"]["device_id"] == "scale-1"
        assert live["data"]["weight_kg"] == pytest.approx(7.3)

        api_client.put("/devices/scale-1/count", json={"item_count": 8})
        assert websocket.receive_json() == {
            "type": "count-set",
            "data": {"device_id": "scale-1", "item_count": 8},
        }

        websocket.send_json({"type": "get-history", "device_id": "other"})
        refreshed = websocket.receive_json()
        assert refreshed == {"type": "history", "data": {"data_points": 0, "history": []}}

        websocket.send_json({"type": "subscribe"})
        error = websocket.receive_json()
        assert error["type"] == "error"


def test_websocket_receives_change_events(api_client: TestClient) -> None:
    _post_series(api_client, "7.0")

    with api_client.websocket_connect("/ws") as websocket:
        websocket.receive_json()
        _post_series(api_client, "8.5", start_seconds=3)

        kinds = [websocket.receive_json()["type"] for _ in range(4)]

    assert kinds == ["iot-data", "iot-data", "iot-data", "inventory-change"]


def test_healthcheck_reports_counts(api_client: TestClient) -> None:
    _post_series(api_client, "7.0")

    assert api_client.get("/health").json() == {
        "status": "ok",
        "devices": 1,
        "data_points": 1,
    }
    assert api_client.get("/").json()["status"] == "ok"
