from __future__ import annotations

from functools import lru_cache
from threading import Lock
from typing import Dict, List, Optional, Tuple

from models.records import InventoryConfig
from settings import get_settings


class InventoryConfigStore:
    """Per-device inventory configuration with a process-wide fallback."""

    def __init__(self, default: Optional[InventoryConfig] = None) -> None:
        self.default = default or InventoryConfig()
        self._configs: Dict[str, InventoryConfig] = {}
        self._lock = Lock()

    def get(self, device_id: str) -> InventoryConfig:
        with self._lock:
            return self._configs.get(device_id, self.default)

    def has_override(self, device_id: str) -> bool:
        with self._lock:
            return device_id in self._configs

    def put(self, device_id: str, config: InventoryConfig) -> None:
        with self._lock:
            self._configs[device_id] = config

    def delete(self, device_id: str) -> None:
        with self._lock:
            if device_id not in self._configs:
                raise KeyError(f"No configuration stored for device {device_id!r}.")
            del self._configs[device_id]

    def items(self) -> List[Tuple[str, InventoryConfig]]:
        with self._lock:
            return sorted(self._configs.items())


def default_inventory_config() -> InventoryConfig:
    settings = get_settings()
    band = settings.error_band_kg
    return InventoryConfig(
        mass_per_item=settings.mass_per_item,
        tare_mass=settings.tare_mass,
        initial_item_count=settings.initial_item_count,
        error_band_min=-band,
        error_band_max=band,
    )


@lru_cache
def build_default_config_store() -> InventoryConfigStore:
    return InventoryConfigStore(default=default_inventory_config())
