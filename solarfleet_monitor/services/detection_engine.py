# solarfleet_monitor/services/detection_engine.py

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List

from solarfleet_monitor.config import DetectionConfig
from solarfleet_monitor.models.alarm import DetectionKey, RuleType, Severity
from solarfleet_monitor.models.snapshot import EntityConfig, InverterSnapshot
from solarfleet_monitor.services.cycle_state import CycleState
from solarfleet_monitor.services.entity_config import (
    half_string_eligible,
    is_aggregated,
    mppt_members,
)


class Outcome(str, Enum):
    DETECTED = "detected"
    ABSENT = "absent"
    HOLD = "hold"


OFFLINE_DETAIL = "Inverter offline"


# ----------------------------------------------------------------------
# Pure classifiers
# ----------------------------------------------------------------------

def classify_string_down(reading: float, peak: float, cfg: DetectionConfig) -> Outcome:
    if peak <= cfg.string_down_floor_a:
        return Outcome.HOLD
    if reading <= cfg.string_down_max_a:
        return Outcome.DETECTED
    return Outcome.ABSENT


def classify_mppt(reading: float, peak: float, cfg: DetectionConfig) -> tuple[Outcome, Outcome]:
    """Return (two_down, one_down); two-down wins when both bands match."""
    if peak < cfg.band_floor_a:
        return Outcome.HOLD, Outcome.HOLD
    two_lo, two_hi = cfg.mppt_two_down_band
    if two_lo * peak <= reading <= two_hi * peak:
        return Outcome.DETECTED, Outcome.ABSENT
    one_lo, one_hi = cfg.mppt_one_down_band
    if one_lo * peak <= reading <= one_hi * peak:
        return Outcome.ABSENT, Outcome.DETECTED
    return Outcome.ABSENT, Outcome.ABSENT


def classify_half_string(reading: float, peak: float, cfg: DetectionConfig) -> Outcome:
    if peak < cfg.band_floor_a:
        return Outcome.HOLD
    lo, hi = cfg.half_string_band
    if lo * peak <= reading <= hi * peak and reading < peak:
        return Outcome.DETECTED
    return Outcome.ABSENT


def channel_label(channel: int, aggregated: bool) -> str:
    if not aggregated:
        return f"String {channel}"
    members = ", ".join(str(m) for m in mppt_members(channel))
    return f"MPPT {channel} (strings {members})"


# ----------------------------------------------------------------------
# Engine
# ----------------------------------------------------------------------

class DetectionEngine:
    """
    Per-inverter rule evaluation. Every decision lands in the CycleState:
    counters are incremented, reset or held, and confirmed keys are added
    to the still-detected set (opening an alarm when none is open yet).
    """

    def __init__(self, cfg: DetectionConfig, log):
        self.cfg = cfg
        self.log = log

    # ------------------------------------------------------------------
    def _apply(
        self,
        state: CycleState,
        key: DetectionKey,
        outcome: Outcome,
        *,
        confirm_at: int,
        severity: Severity,
        message: str,
        now: datetime,
    ) -> None:
        if outcome is Outcome.HOLD:
            if state.hold(key):
                self.log.debug("%s held below activity floor; alarm retained", key)
            return

        if outcome is Outcome.ABSENT:
            if state.reset(key):
                self.log.info("Condition cleared for %s; counter reset", key)
            return

        count = state.increment(key, now)
        if count >= confirm_at or key in state.open_alarms:
            if state.confirm(key, severity, message, now):
                self.log.info("New alarm %s [%s]: %s", key, severity.value, message)
        else:
            self.log.info("%s detected (%d/%d); alarm not raised yet", key, count, confirm_at)

    def _channel_keys(self, cfg: EntityConfig, channel: int, aggregated: bool) -> List[DetectionKey]:
        label = channel_label(channel, aggregated)
        keys = [DetectionKey(cfg.plant, cfg.inverter, RuleType.STRING_DOWN, label)]
        if aggregated:
            keys.append(DetectionKey(cfg.plant, cfg.inverter, RuleType.MPPT_TWO_STRINGS_DOWN, label))
            keys.append(DetectionKey(cfg.plant, cfg.inverter, RuleType.MPPT_ONE_STRING_DOWN, label))
        elif half_string_eligible(cfg, channel):
            keys.append(DetectionKey(cfg.plant, cfg.inverter, RuleType.HALF_STRING_WORKING, label))
        return keys

    # ------------------------------------------------------------------
    def evaluate_entity(
        self,
        snapshot: InverterSnapshot,
        cfg: EntityConfig,
        state: CycleState,
        now: datetime,
    ) -> None:
        """Run the current-based rules over every active channel of one inverter."""
        if snapshot.is_offline:
            held = state.hold_entity(cfg.plant, cfg.inverter)
            self.log.debug(
                "%s/%s offline; current rules held (%d open alarms retained)",
                cfg.plant,
                cfg.inverter,
                held,
            )
            return

        peak = snapshot.peak_current
        aggregated = is_aggregated(cfg, self.cfg.aggregated_vendor_kinds)

        for channel in cfg.active_channels:
            reading = snapshot.reading(channel)
            if reading is None:
                self.log.warning(
                    "No reading for channel %s of %s/%s although it is configured active; skipping.",
                    channel,
                    cfg.plant,
                    cfg.inverter,
                )
                for key in self._channel_keys(cfg, channel, aggregated):
                    state.hold(key)
                continue

            label = channel_label(channel, aggregated)
            self._string_down(cfg, label, reading, peak, state, now)
            if aggregated:
                self._mppt(cfg, label, reading, peak, state, now)
            elif half_string_eligible(cfg, channel):
                self._half_string(cfg, label, reading, peak, state, now)

    # ------------------------------------------------------------------
    def _string_down(self, cfg, label, reading, peak, state, now) -> None:
        key = DetectionKey(cfg.plant, cfg.inverter, RuleType.STRING_DOWN, label)
        message = (
            f"{label} of inverter {cfg.inverter} at plant {cfg.plant} is near zero "
            f"({reading:.2f}A) while other strings are active (peak {peak:.2f}A)."
        )
        self._apply(
            state,
            key,
            classify_string_down(reading, peak, self.cfg),
            confirm_at=self.cfg.string_down_confirm_cycles,
            severity=Severity.HIGH,
            message=message,
            now=now,
        )

    def _mppt(self, cfg, label, reading, peak, state, now) -> None:
        two_key = DetectionKey(cfg.plant, cfg.inverter, RuleType.MPPT_TWO_STRINGS_DOWN, label)
        one_key = DetectionKey(cfg.plant, cfg.inverter, RuleType.MPPT_ONE_STRING_DOWN, label)
        two_outcome, one_outcome = classify_mppt(reading, peak, self.cfg)
        share = (reading / peak * 100.0) if peak else 0.0

        self._apply(
            state,
            two_key,
            two_outcome,
            confirm_at=self.cfg.band_confirm_cycles,
            severity=Severity.HIGH,
            message=(
                f"{label} of inverter {cfg.inverter} at plant {cfg.plant} carries {reading:.2f}A "
                f"({share:.0f}% of peak {peak:.2f}A); two of its strings look down."
            ),
            now=now,
        )
        self._apply(
            state,
            one_key,
            one_outcome,
            confirm_at=self.cfg.band_confirm_cycles,
            severity=Severity.MEDIUM,
            message=(
                f"{label} of inverter {cfg.inverter} at plant {cfg.plant} carries {reading:.2f}A "
                f"({share:.0f}% of peak {peak:.2f}A); one of its strings looks down."
            ),
            now=now,
        )

    def _half_string(self, cfg, label, reading, peak, state, now) -> None:
        key = DetectionKey(cfg.plant, cfg.inverter, RuleType.HALF_STRING_WORKING, label)
        lo, hi = self.cfg.half_string_band
        message = (
            f"{label} of inverter {cfg.inverter} at plant {cfg.plant} produces {reading:.2f}A, "
            f"between {lo:.0%} and {hi:.0%} of the strongest string ({peak:.2f}A); "
            f"one side of the parallel pair looks down."
        )
        self._apply(
            state,
            key,
            classify_half_string(reading, peak, self.cfg),
            confirm_at=self.cfg.band_confirm_cycles,
            severity=Severity.MEDIUM,
            message=message,
            now=now,
        )

    # ------------------------------------------------------------------
    def evaluate_offline(
        self,
        plant: str,
        inverter: str,
        *,
        offline: bool,
        in_grace: bool,
        state: CycleState,
        now: datetime,
        reason: str | None = None,
    ) -> Outcome:
        key = DetectionKey(plant, inverter, RuleType.INVERTER_OFFLINE, OFFLINE_DETAIL)
        if not offline:
            return Outcome.ABSENT

        if in_grace:
            retained = state.hold(key)
            self.log.info(
                "%s/%s looks offline but its vendor is in recovery grace; %s",
                plant,
                inverter,
                "keeping the open alarm" if retained else "not raising an alarm",
            )
            return Outcome.HOLD

        message = reason or "Inverter is offline or has not reported recent data."
        if state.confirm(key, Severity.CRITICAL, message, now):
            self.log.info("New alarm %s [%s]: %s", key, Severity.CRITICAL.value, message)
        return Outcome.DETECTED
