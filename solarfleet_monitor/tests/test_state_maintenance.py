from datetime import timedelta

from solarfleet_monitor.models.alarm import Alarm, DetectionKey, RuleType, Severity
from solarfleet_monitor.services.alarm_store import AlarmStore, CycleChanges
from solarfleet_monitor.services import state_maintenance
from solarfleet_monitor.tests.fake_snapshots import T0


def _alarm(detail, triggered, cleared=None):
    return Alarm(
        key=DetectionKey("P1", "INV-1", RuleType.STRING_DOWN, detail),
        severity=Severity.HIGH,
        message=detail,
        triggered_at=triggered,
        cleared_at=cleared,
        cleared_by="auto" if cleared else None,
    )


def test_prune_removes_old_cleared_alarms(tmp_path):
    store = AlarmStore(path=tmp_path / "state.db")
    old = _alarm("String 1", T0 - timedelta(days=60))
    recent = _alarm("String 2", T0 - timedelta(days=10))
    still_open = _alarm("String 3", T0 - timedelta(days=90))
    store.commit_cycle(CycleChanges(inserts=[old, recent, still_open]))

    old.cleared_at, old.cleared_by = T0 - timedelta(days=45), "auto"
    recent.cleared_at, recent.cleared_by = T0 - timedelta(days=5), "auto"
    store.commit_cycle(CycleChanges(closures=[old, recent]))

    removed = state_maintenance.prune(store, closed_alarm_days=30, vacuum=True, now=T0)

    assert removed == 1
    assert [a.key.detail for a in store.list_alarms(history=True)] == ["String 2"]
    assert [a.key.detail for a in store.load_open_alarms()] == ["String 3"]
