"""Item counting from stabilized weights."""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from threading import Lock
from typing import Dict, List, Optional

from models.records import (
    InventoryConfig,
    InventoryConfigError,
    InventoryOutcome,
    InventoryState,
    InventoryUpdate,
)
from storage.config_store import InventoryConfigStore

logger = logging.getLogger(__name__)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def count_for_weight(weight_kg: float, config: InventoryConfig) -> int:
    """Absolute item count for a weight under the tare-and-divide model."""
    return max(0, round_half_up((weight_kg - config.tare_mass) / config.mass_per_item))


def gate_count(count: int, baseline: int, config: InventoryConfig) -> int:
    """Hold ``count`` at ``baseline`` in any direction the config disallows."""
    if count > baseline and not config.allow_increase:
        return baseline
    if count < baseline and not config.allow_decrease:
        return baseline
    return count


class InventoryEngine:
    """Turns stabilized weights into item count deltas, one state per device.

    Callers must serialize calls for the same device.
    """

    def __init__(self, configs: InventoryConfigStore) -> None:
        self.configs = configs
        self._states: Dict[str, InventoryState] = {}
        self._states_lock = Lock()

    def apply(self, device_id: str, weight_kg: float) -> InventoryUpdate:
        config = self.configs.get(device_id)
        state = self._state_for(device_id, config)

        if state.last_stable_weight_kg is None:
            count = count_for_weight(weight_kg, config)
            if state.baseline_set:
                count = gate_count(count, state.current_item_count, config)
            state.current_item_count = count
            state.last_stable_weight_kg = weight_kg
            logger.info(
                "Initialized item count from first stable weight",
                extra={"device_id": device_id, "weight_kg": weight_kg, "item_count": count},
            )
            return self._update(device_id, weight_kg, state, 0, InventoryOutcome.initialized)

        delta_weight = weight_kg - state.last_stable_weight_kg
        state.last_stable_weight_kg = weight_kg
        if abs(delta_weight) <= config.noise_band:
            return self._update(device_id, weight_kg, state, 0, InventoryOutcome.noise)

        expected = round_half_up(delta_weight / config.mass_per_item)
        if expected == 0:
            return self._update(device_id, weight_kg, state, 0, InventoryOutcome.noise)

        allowed = config.allow_increase if expected > 0 else config.allow_decrease
        if not allowed:
            logger.info(
                "Item count change blocked by direction policy",
                extra={"device_id": device_id, "weight_kg": weight_kg, "delta": expected},
            )
            return self._update(device_id, weight_kg, state, 0, InventoryOutcome.rejected)

        before = state.current_item_count
        state.current_item_count = max(0, before + expected)
        applied = state.current_item_count - before
        if applied == 0:
            # Already at zero and asked to remove more.
            return self._update(device_id, weight_kg, state, 0, InventoryOutcome.noise)
        return self._update(device_id, weight_kg, state, applied, InventoryOutcome.accepted)

    def replace_config(self, device_id: str, config: InventoryConfig) -> InventoryState:
        """Store ``config`` and reset the device to its initial count."""
        state = InventoryState(current_item_count=config.initial_item_count, baseline_set=True)
        with self._states_lock:
            self.configs.put(device_id, config)
            self._states[device_id] = state
        return replace(state)

    def set_count(self, device_id: str, item_count: int) -> InventoryState:
        if isinstance(item_count, bool) or not isinstance(item_count, int):
            raise InventoryConfigError("item_count", "item_count must be an integer")
        if item_count < 0:
            raise InventoryConfigError("item_count", "item_count must be >= 0")
        state = self._state_for(device_id, self.configs.get(device_id))
        state.current_item_count = item_count
        state.baseline_set = True
        return replace(state)

    def devices(self) -> List[str]:
        with self._states_lock:
            return sorted(self._states)

    def state(self, device_id: str) -> Optional[InventoryState]:
        with self._states_lock:
            state = self._states.get(device_id)
        return replace(state) if state is not None else None

    def _state_for(self, device_id: str, config: InventoryConfig) -> InventoryState:
        with self._states_lock:
            state = self._states.get(device_id)
            if state is None:
                state = InventoryState(current_item_count=config.initial_item_count)
                self._states[device_id] = state
            return state

    @staticmethod
    def _update(
        device_id: str,
        weight_kg: float,
        state: InventoryState,
        delta: int,
        outcome: InventoryOutcome,
    ) -> InventoryUpdate:
        return InventoryUpdate(
            device_id=device_id,
            weight_kg=weight_kg,
            item_count=state.current_item_count,
            delta=delta,
            outcome=outcome,
        )
