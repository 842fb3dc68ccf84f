"""Fan-out of pipeline events to connected WebSocket clients."""

from __future__ import annotations

import asyncio
import logging
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from app.schemas import (
    ChangeEventOut,
    ConfigResetOut,
    EnrichedReadingOut,
    history_response,
    manual_count_out,
)
from models.records import ChangeEvent, ConfigReset, EnrichedReading, ManualCountSet
from services.pipeline import WeightPipeline

logger = logging.getLogger(__name__)

Message = Dict[str, Any]

READING_MESSAGE = "iot-data"
CHANGE_MESSAGE = "inventory-change"
CONFIG_RESET_MESSAGE = "config-reset"
COUNT_SET_MESSAGE = "count-set"
HISTORY_MESSAGE = "history"
ERROR_MESSAGE = "error"


def message(kind: str, data: Any) -> Message:
    return {"type": kind, "data": data}


def history_message(pipeline: WeightPipeline, device_id: Optional[str] = None) -> Message:
    snapshot = history_response(pipeline.get_history_snapshot(device_id))
    return message(HISTORY_MESSAGE, snapshot.model_dump(mode="json"))


class EventBroadcaster:
    """Delivers messages to every subscriber queue, from any thread.

    Each queue is bounded; when a slow client falls behind, its oldest
    pending message is dropped.
    """

    def __init__(self, max_queue: int = 100) -> None:
        self.max_queue = max_queue
        self._queues: Dict[asyncio.Queue, asyncio.AbstractEventLoop] = {}
        self._lock = Lock()

    def connect(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue)
        with self._lock:
            self._queues[queue] = asyncio.get_running_loop()
        logger.info("Push client connected", extra={"client_count": self.client_count})
        return queue

    def disconnect(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._queues.pop(queue, None)
        logger.info("Push client disconnected", extra={"client_count": self.client_count})

    @property
    def client_count(self) -> int:
        with self._lock:
            return len(self._queues)

    def publish(self, payload: Message) -> None:
        with self._lock:
            targets = list(self._queues.items())
        for queue, loop in targets:
            try:
                loop.call_soon_threadsafe(self.offer, queue, payload)
            except RuntimeError:
                # Loop already closed; the client is gone.
                self.disconnect(queue)

    @staticmethod
    def offer(queue: asyncio.Queue, payload: Message) -> None:
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(payload)

    def attach(self, pipeline: WeightPipeline) -> Callable[[], None]:
        """Subscribe to every pipeline event; returns a function that detaches."""

        def on_reading(reading: EnrichedReading) -> None:
            self.publish(
                message(READING_MESSAGE, EnrichedReadingOut.from_domain(reading).model_dump(mode="json"))
            )

        def on_change(event: ChangeEvent) -> None:
            self.publish(
                message(CHANGE_MESSAGE, ChangeEventOut.from_domain(event).model_dump(mode="json"))
            )

        def on_reset(event: ConfigReset) -> None:
            self.publish(
                message(CONFIG_RESET_MESSAGE, ConfigResetOut.from_domain(event).model_dump(mode="json"))
            )

        def on_count(event: ManualCountSet) -> None:
            self.publish(message(COUNT_SET_MESSAGE, manual_count_out(event).model_dump(mode="json")))

        unsubscribers: List[Callable[[], None]] = [
            pipeline.on_enriched_reading(on_reading),
            pipeline.on_change_event(on_change),
            pipeline.on_config_reset(on_reset),
            pipeline.on_manual_count_set(on_count),
        ]

        def detach() -> None:
            for unsubscribe in unsubscribers:
                unsubscribe()

        return detach
