# solarfleet_monitor/services/cycle_state.py

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Set

from solarfleet_monitor.models.alarm import Alarm, CounterEntry, DetectionKey, Severity


@dataclass
class CycleState:
    """
    Everything one cycle reads and mutates, owned by the coordinator and
    handed to the detection engine. Nothing here touches storage; the
    coordinator persists the result after reconciliation.
    """

    counters: Dict[DetectionKey, CounterEntry] = field(default_factory=dict)
    open_alarms: Dict[DetectionKey, Alarm] = field(default_factory=dict)
    still_detected: Set[DetectionKey] = field(default_factory=set)
    opened: List[Alarm] = field(default_factory=list)
    touched: Set[DetectionKey] = field(default_factory=set)

    @classmethod
    def load(cls, open_alarms: Iterable[Alarm], counters: Dict[DetectionKey, CounterEntry]) -> "CycleState":
        return cls(
            counters=dict(counters),
            open_alarms={alarm.key: alarm for alarm in open_alarms},
        )

    # ------------------------------------------------------------------
    def count(self, key: DetectionKey) -> int:
        entry = self.counters.get(key)
        return entry.count if entry else 0

    def increment(self, key: DetectionKey, now: datetime) -> int:
        self.touched.add(key)
        entry = self.counters.get(key)
        if entry is None:
            entry = CounterEntry()
            self.counters[key] = entry
        entry.count += 1
        entry.last_detected_at = now
        return entry.count

    def reset(self, key: DetectionKey) -> bool:
        """Zero the counter; returns True when it was nonzero."""
        self.touched.add(key)
        entry = self.counters.get(key)
        if entry is None or entry.count == 0:
            return False
        entry.count = 0
        return True

    def hold(self, key: DetectionKey) -> bool:
        """Freeze the counter and retain an open alarm; True when one was retained."""
        self.touched.add(key)
        if key in self.open_alarms:
            self.still_detected.add(key)
            return True
        return False

    def confirm(self, key: DetectionKey, severity: Severity, message: str, now: datetime) -> Alarm | None:
        """Mark ``key`` as detected; returns the new alarm if one had to be opened."""
        self.still_detected.add(key)
        if key in self.open_alarms:
            return None
        alarm = Alarm(key=key, severity=severity, message=message, triggered_at=now)
        self.open_alarms[key] = alarm
        self.opened.append(alarm)
        return alarm

    def hold_entity(self, plant: str, inverter: str, *, current_rules_only: bool = True) -> int:
        """Hold every open alarm and counter of one inverter (config error, offline)."""
        held = 0
        for key in list(self.open_alarms):
            if key.entity != (plant, inverter):
                continue
            if current_rules_only and not key.rule_type.current_based:
                continue
            if self.hold(key):
                held += 1
        for key in list(self.counters):
            if key.entity == (plant, inverter) and (key.rule_type.current_based or not current_rules_only):
                self.touched.add(key)
        return held

    def drop_untouched(self, entities: Set[tuple[str, str]]) -> List[DetectionKey]:
        """Zero counters of evaluated inverters whose keys were not evaluated this cycle."""
        dropped = []
        for key, entry in self.counters.items():
            if key.entity in entities and key not in self.touched and entry.count > 0:
                entry.count = 0
                dropped.append(key)
        return dropped

    def drop_unknown(self, known: Set[tuple[str, str]]) -> List[DetectionKey]:
        """Zero counters of inverters that are neither configured nor in the batch."""
        dropped = []
        for key, entry in self.counters.items():
            if key.entity not in known and entry.count > 0:
                entry.count = 0
                dropped.append(key)
        return dropped

    # ------------------------------------------------------------------
    def counter_upserts(self) -> Dict[DetectionKey, CounterEntry]:
        return {k: v for k, v in self.counters.items() if v.count > 0}

    def counter_deletes(self) -> List[DetectionKey]:
        return [k for k, v in self.counters.items() if v.count <= 0]
