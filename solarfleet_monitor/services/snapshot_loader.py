# solarfleet_monitor/services/snapshot_loader.py

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, List, Mapping

from solarfleet_monitor.models.snapshot import InverterSnapshot


OFFLINE_STATUS = -1


def _parse_current(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return float(value)


def parse_currents(raw: Any) -> tuple[float | None, ...]:
    """
    Accept either a positional list (channel 1 first) or a mapping of
    channel number to current; gaps become ``None``.
    """
    if raw is None:
        return ()
    if isinstance(raw, Mapping):
        by_channel = {int(k): _parse_current(v) for k, v in raw.items()}
        if not by_channel:
            return ()
        if min(by_channel) < 1:
            raise ValueError("channel numbers start at 1")
        return tuple(by_channel.get(i) for i in range(1, max(by_channel) + 1))
    if isinstance(raw, (list, tuple)):
        return tuple(_parse_current(v) for v in raw)
    raise ValueError(f"currents must be a list or mapping (got {type(raw).__name__})")


def parse_timestamp(raw: Any) -> datetime | None:
    if not raw:
        return None
    dt = datetime.fromisoformat(str(raw))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def is_stale(reported_at: datetime | None, status: int | None, now: datetime, stale_after: timedelta) -> bool:
    if status == OFFLINE_STATUS:
        return True
    if reported_at is None:
        return True
    return reported_at < now - stale_after


def build_snapshot(row: Mapping[str, Any], now: datetime, stale_after: timedelta) -> InverterSnapshot:
    plant = str(row.get("plant") or "").strip()
    inverter = str(row.get("inverter") or "").strip()
    if not plant or not inverter:
        raise ValueError("snapshot needs plant and inverter")

    status_raw = row.get("status")
    status = int(status_raw) if status_raw is not None else None
    reported_at = parse_timestamp(row.get("reported_at"))

    offline = row.get("offline")
    if offline is None:
        offline = is_stale(reported_at, status, now, stale_after)

    return InverterSnapshot(
        plant=plant,
        inverter=inverter,
        currents=parse_currents(row.get("currents")),
        vendor_kind=str(row.get("vendor_kind") or "").strip(),
        status=status,
        reported_at=reported_at,
        is_offline=bool(offline),
    )


class SnapshotLoader:
    """Reads one cycle's telemetry batch from a JSON file."""

    def __init__(self, log, *, stale_after_minutes: int = 30):
        self.log = log
        self.stale_after = timedelta(minutes=stale_after_minutes)

    def load(self, path: str | Path, now: datetime) -> List[InverterSnapshot]:
        target = Path(path).expanduser()
        with target.open("r", encoding="utf-8") as fh:
            payload = json.load(fh)
        rows = payload.get("snapshots", []) if isinstance(payload, dict) else payload
        if not isinstance(rows, list):
            raise ValueError(f"Snapshot file {target} must contain a list of snapshots")
        return self.parse_rows(rows, now)

    def parse_rows(self, rows: List[Any], now: datetime) -> List[InverterSnapshot]:
        snapshots: List[InverterSnapshot] = []
        for idx, row in enumerate(rows):
            if not isinstance(row, Mapping):
                self.log.warning("Snapshot #%d is not an object; skipped.", idx)
                continue
            try:
                snap = build_snapshot(row, now, self.stale_after)
            except (TypeError, ValueError) as exc:
                self.log.warning(
                    "Snapshot #%d (%s/%s) is malformed: %s; skipped.",
                    idx,
                    row.get("plant"),
                    row.get("inverter"),
                    exc,
                )
                continue
            self.log.debug(
                "Snapshot %s/%s: peak=%.2fA offline=%s channels=%d",
                snap.plant,
                snap.inverter,
                snap.peak_current,
                snap.is_offline,
                len(snap.currents),
            )
            snapshots.append(snap)
        return snapshots
