# solarfleet_monitor/models/alarm.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class RuleType(str, Enum):
    STRING_DOWN = "STRING_DOWN"
    HALF_STRING_WORKING = "HALF_STRING_WORKING"
    MPPT_ONE_STRING_DOWN = "MPPT_ONE_STRING_DOWN"
    MPPT_TWO_STRINGS_DOWN = "MPPT_TWO_STRINGS_DOWN"
    INVERTER_OFFLINE = "INVERTER_OFFLINE"
    EXTERNAL_VENDOR_EVENT = "EXTERNAL_VENDOR_EVENT"

    @property
    def auto_clears(self) -> bool:
        return self is not RuleType.EXTERNAL_VENDOR_EVENT

    @property
    def current_based(self) -> bool:
        return self in CURRENT_RULES


CURRENT_RULES = frozenset(
    {
        RuleType.STRING_DOWN,
        RuleType.HALF_STRING_WORKING,
        RuleType.MPPT_ONE_STRING_DOWN,
        RuleType.MPPT_TWO_STRINGS_DOWN,
    }
)


class Severity(str, Enum):
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"

    @classmethod
    def parse(cls, raw: str) -> "Severity":
        text = (raw or "").strip().lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        raise ValueError(f"Unknown severity: {raw!r}")


@dataclass(frozen=True)
class DetectionKey:
    plant: str
    inverter: str
    rule_type: RuleType
    detail: str = ""

    @property
    def entity(self) -> tuple[str, str]:
        return (self.plant, self.inverter)

    def __str__(self) -> str:
        suffix = f" ({self.detail})" if self.detail else ""
        return f"{self.plant}/{self.inverter} {self.rule_type.value}{suffix}"


@dataclass
class CounterEntry:
    count: int = 0
    last_detected_at: Optional[datetime] = None


@dataclass
class Alarm:
    key: DetectionKey
    severity: Severity
    message: str
    triggered_at: datetime
    alarm_id: Optional[int] = None
    cleared_at: Optional[datetime] = None
    cleared_by: Optional[str] = None
    observation: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.cleared_at is None


@dataclass
class Recipients:
    admin: str | None
    owner: str | None = None

    def targets(self) -> list[str]:
        out = [self.admin] if self.admin else []
        if self.owner and self.owner != self.admin:
            out.append(self.owner)
        return out


@dataclass
class NotificationIntent:
    kind: str  # "opened" | "cleared"
    key: DetectionKey
    severity: Severity
    message: str
    recipients: Recipients = field(default_factory=lambda: Recipients(admin=None))

    @property
    def plant(self) -> str:
        return self.key.plant

    @property
    def inverter(self) -> str:
        return self.key.inverter

    @property
    def rule_type(self) -> RuleType:
        return self.key.rule_type

    @property
    def detail(self) -> str:
        return self.key.detail
