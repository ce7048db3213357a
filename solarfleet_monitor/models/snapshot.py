# solarfleet_monitor/models/snapshot.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Grouping(str, Enum):
    ALL_1S = "ALL_1S"
    ALL_2P = "ALL_2P"
    ALL_3P = "ALL_3P"
    MIXED_4S_4_2P = "MIXED_4S_4_2P"
    MIXED_6_2P_2S = "MIXED_6_2P_2S"


@dataclass(frozen=True)
class EntityConfig:
    plant: str
    inverter: str
    vendor_kind: str
    grouping: Grouping
    active_channels: tuple[int, ...]
    owner_chat_id: str | None = None

    @property
    def entity(self) -> tuple[str, str]:
        return (self.plant, self.inverter)


@dataclass(frozen=True)
class InverterSnapshot:
    plant: str
    inverter: str
    currents: tuple[float | None, ...]   # index 0 holds channel 1
    vendor_kind: str
    status: int | None = None
    reported_at: datetime | None = None
    is_offline: bool = False              # stale or error status, set by the source

    @property
    def entity(self) -> tuple[str, str]:
        return (self.plant, self.inverter)

    @property
    def peak_current(self) -> float:
        present = [value for value in self.currents if value is not None]
        return max(present) if present else 0.0

    def reading(self, channel: int) -> float | None:
        if channel < 1 or channel > len(self.currents):
            return None
        return self.currents[channel - 1]


@dataclass
class RecoveryGraceStatus:
    vendor_kind: str
    last_status: str | None = None
    grace_until: datetime | None = None

    def in_grace(self, now: datetime) -> bool:
        return self.grace_until is not None and now < self.grace_until
