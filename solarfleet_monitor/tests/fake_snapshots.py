# solarfleet_monitor/tests/fake_snapshots.py

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from solarfleet_monitor.models.snapshot import EntityConfig, Grouping, InverterSnapshot
from solarfleet_monitor.services.entity_config import EntityConfigProvider


T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def cycle_time(n: int) -> datetime:
    """Timestamp of the n-th 15-minute cycle after T0."""
    return T0 + timedelta(minutes=15 * n)


class RecordingLog:
    """Logger double that keeps every message for assertions."""

    def __init__(self):
        self.records = []

    def _record(self, level, msg, *args, **kwargs):
        self.records.append((level, msg % args if args else msg))

    def debug(self, msg, *args, **kwargs):
        self._record("debug", msg, *args)

    def info(self, msg, *args, **kwargs):
        self._record("info", msg, *args)

    def warning(self, msg, *args, **kwargs):
        self._record("warning", msg, *args)

    def error(self, msg, *args, **kwargs):
        self._record("error", msg, *args)

    def messages(self, level=None):
        return [text for lvl, text in self.records if level is None or lvl == level]


QUIET_LOG = SimpleNamespace(
    debug=lambda *a, **k: None,
    info=lambda *a, **k: None,
    warning=lambda *a, **k: None,
    error=lambda *a, **k: None,
)


def entity(
    plant="P1",
    inverter="INV-1",
    *,
    channels=(1, 2),
    grouping=Grouping.ALL_1S,
    vendor_kind="growatt",
    owner=None,
) -> EntityConfig:
    return EntityConfig(
        plant=plant,
        inverter=inverter,
        vendor_kind=vendor_kind,
        grouping=grouping,
        active_channels=tuple(channels),
        owner_chat_id=owner,
    )


def snapshot(
    currents,
    plant="P1",
    inverter="INV-1",
    *,
    vendor_kind="growatt",
    offline=False,
    reported_at=None,
) -> InverterSnapshot:
    return InverterSnapshot(
        plant=plant,
        inverter=inverter,
        currents=tuple(currents),
        vendor_kind=vendor_kind,
        status=None if not offline else -1,
        reported_at=reported_at,
        is_offline=offline,
    )


def provider(*configs, rows=None, log=QUIET_LOG) -> EntityConfigProvider:
    """Provider from ready EntityConfig objects plus optional raw rows."""
    raw = [
        {
            "plant": c.plant,
            "inverter": c.inverter,
            "vendor_kind": c.vendor_kind,
            "grouping": c.grouping.value,
            "active_channels": list(c.active_channels),
            "owner_chat_id": c.owner_chat_id,
        }
        for c in configs
    ]
    raw.extend(rows or [])
    return EntityConfigProvider(raw, log)
