"""Pydantic schemas for the HTTP and WebSocket layer."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from models.records import (
    ChangeEvent,
    ConfigReset,
    EnrichedReading,
    HistoryEntry,
    InventoryConfig,
    InventoryState,
    ManualCountSet,
    StabilityStatus,
)
from services.pipeline import DeviceSnapshot
from services.stabilizer import WindowStats


class ReadingIn(BaseModel):
    """Raw reading pushed by a scale or a broker bridge."""

    device_id: Optional[str] = Field(
        default=None, description="Scale identifier; the default device is used when omitted."
    )
    topic: Optional[str] = Field(
        default=None,
        description="Broker topic such as 'weight/sensor/SCALE_7'; its last segment names the scale.",
    )
    payload: str = Field(..., description="Raw payload text, e.g. '75.5kg'.")
    timestamp: Optional[datetime] = Field(
        default=None, description="Sample time; server receive time when omitted."
    )
    status: Optional[str] = Field(
        default=None, description="Out-of-band tag such as 'stable', 'unstable', 'boot' or 'tare'."
    )


class DeviceReadingIn(BaseModel):
    payload: str
    timestamp: Optional[datetime] = None
    status: Optional[str] = None


class EnrichedReadingOut(BaseModel):
    device_id: str
    weight_kg: Optional[float] = None
    status: StabilityStatus
    stable_weight_kg: Optional[float] = None
    item_count: Optional[int] = None
    item_count_delta: int = 0
    timestamp: datetime
    raw_payload: str
    explicit_status: Optional[str] = None

    @classmethod
    def from_domain(cls, reading: EnrichedReading) -> "EnrichedReadingOut":
        return cls(
            device_id=reading.device_id,
            weight_kg=reading.weight_kg,
            status=reading.status,
            stable_weight_kg=reading.stable_weight_kg,
            item_count=reading.item_count,
            item_count_delta=reading.item_count_delta,
            timestamp=reading.timestamp,
            raw_payload=reading.raw_payload,
            explicit_status=reading.explicit_status,
        )


class HistoryEntryOut(BaseModel):
    device_id: str
    weight_kg: float
    item_count: int = Field(..., ge=0)
    timestamp: datetime

    @classmethod
    def from_domain(cls, entry: HistoryEntry) -> "HistoryEntryOut":
        return cls(
            device_id=entry.device_id,
            weight_kg=entry.weight_kg,
            item_count=entry.item_count,
            timestamp=entry.timestamp,
        )


class HistoryResponse(BaseModel):
    data_points: int = Field(..., ge=0)
    history: List[HistoryEntryOut] = Field(default_factory=list)


class InventoryConfigIn(BaseModel):
    """Partial configuration; omitted fields keep the device's current value.

    The dashboard's ``allowAdding``/``allowRemoving`` names are accepted for
    the two direction flags.
    """

    model_config = ConfigDict(populate_by_name=True)

    mass_per_item: Optional[float] = None
    tare_mass: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("tare_mass", "board_mass", "boardMass")
    )
    initial_item_count: Optional[int] = None
    error_band_min: Optional[float] = None
    error_band_max: Optional[float] = None
    allow_increase: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("allow_increase", "allowAdding")
    )
    allow_decrease: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("allow_decrease", "allowRemoving")
    )

    def changes(self) -> dict:
        return self.model_dump(exclude_none=True)


class InventoryConfigOut(BaseModel):
    mass_per_item: float
    tare_mass: float
    initial_item_count: int
    error_band_min: float
    error_band_max: float
    allow_increase: bool
    allow_decrease: bool

    @classmethod
    def from_domain(cls, config: InventoryConfig) -> "InventoryConfigOut":
        return cls(
            mass_per_item=config.mass_per_item,
            tare_mass=config.tare_mass,
            initial_item_count=config.initial_item_count,
            error_band_min=config.error_band_min,
            error_band_max=config.error_band_max,
            allow_increase=config.allow_increase,
            allow_decrease=config.allow_decrease,
        )


class InventoryStateOut(BaseModel):
    current_item_count: int = Field(..., ge=0)
    last_stable_weight_kg: Optional[float] = None

    @classmethod
    def from_domain(cls, state: InventoryState) -> "InventoryStateOut":
        return cls(
            current_item_count=state.current_item_count,
            last_stable_weight_kg=state.last_stable_weight_kg,
        )


class WindowStatsOut(BaseModel):
    count: int
    min: Optional[float] = None
    max: Optional[float] = None
    spread: Optional[float] = None
    mean: Optional[float] = None
    last_emitted_value: Optional[float] = None
    last_emitted_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, stats: WindowStats) -> "WindowStatsOut":
        return cls(
            count=stats.count,
            min=stats.min,
            max=stats.max,
            spread=stats.spread,
            mean=stats.mean,
            last_emitted_value=stats.last_emitted_value,
            last_emitted_at=stats.last_emitted_at,
        )


class DeviceStateOut(BaseModel):
    device_id: str
    config: InventoryConfigOut
    state: Optional[InventoryStateOut] = None
    window: Optional[WindowStatsOut] = None
    latest: Optional[EnrichedReadingOut] = None

    @classmethod
    def from_domain(cls, snapshot: DeviceSnapshot) -> "DeviceStateOut":
        return cls(
            device_id=snapshot.device_id,
            config=InventoryConfigOut.from_domain(snapshot.config),
            state=InventoryStateOut.from_domain(snapshot.state) if snapshot.state is not None else None,
            window=WindowStatsOut.from_domain(snapshot.window) if snapshot.window is not None else None,
            latest=EnrichedReadingOut.from_domain(snapshot.latest) if snapshot.latest is not None else None,
        )


class DeviceListResponse(BaseModel):
    devices: List[str] = Field(default_factory=list)


class ManualCountIn(BaseModel):
    item_count: int


class ManualCountOut(BaseModel):
    device_id: str
    item_count: int


class ChangeEventOut(BaseModel):
    device_id: str
    item_count_delta: int
    new_item_count: int
    weight_kg: float
    timestamp: datetime

    @classmethod
    def from_domain(cls, event: ChangeEvent) -> "ChangeEventOut":
        return cls(
            device_id=event.device_id,
            item_count_delta=event.item_count_delta,
            new_item_count=event.new_item_count,
            weight_kg=event.weight_kg,
            timestamp=event.timestamp,
        )


class ConfigResetOut(BaseModel):
    device_id: str
    config: InventoryConfigOut
    state: InventoryStateOut

    @classmethod
    def from_domain(cls, event: ConfigReset) -> "ConfigResetOut":
        return cls(
            device_id=event.device_id,
            config=InventoryConfigOut.from_domain(event.config),
            state=InventoryStateOut.from_domain(event.state),
        )


def manual_count_out(event: ManualCountSet) -> ManualCountOut:
    return ManualCountOut(device_id=event.device_id, item_count=event.new_item_count)


def history_response(entries: List[HistoryEntry]) -> HistoryResponse:
    return HistoryResponse(
        data_points=len(entries),
        history=[HistoryEntryOut.from_domain(entry) for entry in entries],
    )
