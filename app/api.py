"""HTTP and WebSocket route definitions for the service."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from app.broadcast import ERROR_MESSAGE, EventBroadcaster, history_message, message
from app.schemas import (
    DeviceListResponse,
    DeviceReadingIn,
    DeviceStateOut,
    EnrichedReadingOut,
    HistoryResponse,
    InventoryConfigIn,
    InventoryConfigOut,
    ManualCountIn,
    ManualCountOut,
    ReadingIn,
    history_response,
)
from models.records import InventoryConfigError
from services.parser import device_id_from_topic
from services.pipeline import WeightPipeline, build_default_pipeline

logger = logging.getLogger(__name__)

router = APIRouter()


def get_pipeline() -> WeightPipeline:
    return build_default_pipeline()


def _validation_error(exc: InventoryConfigError) -> HTTPException:
    logger.info("Rejected inventory command", extra={"field": exc.field})
    return HTTPException(
        status_code=422,
        detail={"message": str(exc), "field": exc.field},
    )


@router.post(
    "/readings",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=EnrichedReadingOut,
    summary="Ingest a raw scale reading.",
)
async def ingest_reading(
    reading: ReadingIn,
    pipeline: WeightPipeline = Depends(get_pipeline),
) -> EnrichedReadingOut:
    enriched = pipeline.ingest_raw_reading(
        device_id=reading.device_id or device_id_from_topic(reading.topic),
        payload=reading.payload,
        timestamp=reading.timestamp,
        explicit_status=reading.status,
    )
    return EnrichedReadingOut.from_domain(enriched)


@router.post(
    "/devices/{device_id}/readings",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=EnrichedReadingOut,
    summary="Ingest a raw reading for a specific scale.",
)
async def ingest_device_reading(
    device_id: str,
    reading: DeviceReadingIn,
    pipeline: WeightPipeline = Depends(get_pipeline),
) -> EnrichedReadingOut:
    enriched = pipeline.ingest_raw_reading(
        device_id=device_id,
        payload=reading.payload,
        timestamp=reading.timestamp,
        explicit_status=reading.status,
    )
    return EnrichedReadingOut.from_domain(enriched)


@router.get(
    "/history",
    response_model=HistoryResponse,
    summary="Stabilized readings from the retention window, oldest first.",
)
async def get_history(
    device_id: Optional[str] = Query(default=None, description="Restrict to one scale."),
    pipeline: WeightPipeline = Depends(get_pipeline),
) -> HistoryResponse:
    return history_response(pipeline.get_history_snapshot(device_id))


@router.get("/devices", response_model=DeviceListResponse, summary="Known scales.")
async def list_devices(pipeline: WeightPipeline = Depends(get_pipeline)) -> DeviceListResponse:
    return DeviceListResponse(devices=pipeline.devices())


@router.get(
    "/devices/{device_id}/state",
    response_model=DeviceStateOut,
    summary="Configuration, count, window statistics and latest reading for a scale.",
)
async def get_device_state(
    device_id: str,
    pipeline: WeightPipeline = Depends(get_pipeline),
) -> DeviceStateOut:
    try:
        snapshot = pipeline.device_state(device_id)
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc.args[0]),
        ) from exc
    return DeviceStateOut.from_domain(snapshot)


@router.put(
    "/devices/{device_id}/config",
    response_model=InventoryConfigOut,
    summary="Replace a scale's inventory configuration and reset its count.",
)
async def put_device_config(
    device_id: str,
    body: InventoryConfigIn,
    pipeline: WeightPipeline = Depends(get_pipeline),
) -> InventoryConfigOut:
    try:
        config = pipeline.set_config(device_id, **body.changes())
    except InventoryConfigError as exc:
        raise _validation_error(exc) from exc
    return InventoryConfigOut.from_domain(config)


@router.put(
    "/devices/{device_id}/count",
    response_model=ManualCountOut,
    summary="Overwrite a scale's current item count.",
)
async def put_device_count(
    device_id: str,
    body: ManualCountIn,
    pipeline: WeightPipeline = Depends(get_pipeline),
) -> ManualCountOut:
    try:
        count = pipeline.set_manual_count(device_id, body.item_count)
    except InventoryConfigError as exc:
        raise _validation_error(exc) from exc
    return ManualCountOut(device_id=device_id, item_count=count)


@router.websocket("/ws")
async def stream_events(
    websocket: WebSocket,
    pipeline: WeightPipeline = Depends(get_pipeline),
) -> None:
    """Push channel.

    Protocol:
    1. Server -> {type: "history", data: {...}} right after connect
    2. Server -> {type: "iot-data" | "inventory-change" | "config-reset" | "count-set", data}
    3. Client -> {type: "get-history", device_id?} for a fresh snapshot
    """
    broadcaster: EventBroadcaster = websocket.app.state.broadcaster
    await websocket.accept()
    queue = broadcaster.connect()
    broadcaster.offer(queue, history_message(pipeline))

    async def forward() -> None:
        while True:
            payload = await queue.get()
            await websocket.send_json(payload)

    sender = asyncio.create_task(forward())
    try:
        while True:
            try:
                request = await websocket.receive_json()
            except ValueError:
                broadcaster.offer(queue, message(ERROR_MESSAGE, "Expected a JSON message"))
                continue
            kind = request.get("type") if isinstance(request, dict) else None
            if kind == "get-history":
                broadcaster.offer(queue, history_message(pipeline, request.get("device_id")))
            else:
                broadcaster.offer(queue, message(ERROR_MESSAGE, f"Unsupported message type {kind!r}"))
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
        broadcaster.disconnect(queue)


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck(pipeline: WeightPipeline = Depends(get_pipeline)) -> dict:
    return {
        "status": "ok",
        "devices": len(pipeline.devices()),
        "data_points": len(pipeline.history),
    }


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "See /health for service status."}
