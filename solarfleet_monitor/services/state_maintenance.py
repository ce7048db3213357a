from __future__ import annotations

import datetime as dt


def _cutoff(days: int, now: dt.datetime | None = None) -> str:
    now = now or dt.datetime.now(dt.timezone.utc)
    return (now - dt.timedelta(days=days)).isoformat()


def prune(store, closed_alarm_days: int, *, vacuum: bool = True, now: dt.datetime | None = None) -> int:
    """Delete alarm history cleared more than ``closed_alarm_days`` ago; open alarms are never touched."""
    cutoff = _cutoff(closed_alarm_days, now)
    conn = store._conn
    with conn:
        cur = conn.execute(
            "DELETE FROM alarms WHERE cleared_at IS NOT NULL AND cleared_at < ?",
            (cutoff,),
        )
        removed = cur.rowcount
    if vacuum and store.persistent:
        conn.execute("VACUUM")
    return removed
