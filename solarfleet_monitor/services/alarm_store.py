# solarfleet_monitor/services/alarm_store.py

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from solarfleet_monitor.models.alarm import Alarm, CounterEntry, DetectionKey, RuleType, Severity
from solarfleet_monitor.models.snapshot import RecoveryGraceStatus


class PersistenceError(RuntimeError):
    """A store write failed; the surrounding transaction was rolled back."""


class AlarmNotFound(LookupError):
    pass


class OperatorActionError(ValueError):
    """An operator request that the alarm's state does not allow."""


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    return datetime.fromisoformat(raw)


@dataclass
class CycleChanges:
    counter_upserts: Dict[DetectionKey, CounterEntry] = field(default_factory=dict)
    counter_deletes: List[DetectionKey] = field(default_factory=list)
    inserts: List[Alarm] = field(default_factory=list)
    closures: List[Alarm] = field(default_factory=list)


class AlarmStore:
    """SQLite-backed counter store and alarm registry."""

    def __init__(self, path: Optional[Union[Path, str]] = None, *, persist: bool = True):
        default_path = Path.home() / ".solarfleet_monitor_state.db"
        self._persist = persist
        self._log = logging.getLogger("solarfleet.store")
        if self._persist:
            resolved = Path(path).expanduser() if path else default_path
            resolved.parent.mkdir(parents=True, exist_ok=True)
            self.path: Optional[Path] = resolved
            self._conn = sqlite3.connect(self.path)
            self._conn.execute("PRAGMA journal_mode=WAL")
        else:
            # Tests: same schema, nothing survives the process.
            self.path = None
            self._conn = sqlite3.connect(":memory:")
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    # ------------------------------------------------------------------
    def _init_schema(self) -> None:
        stmts = [
            """
            CREATE TABLE IF NOT EXISTS alarms (
                alarm_id INTEGER PRIMARY KEY AUTOINCREMENT,
                plant TEXT NOT NULL,
                inverter TEXT NOT NULL,
                rule_type TEXT NOT NULL,
                problem_detail TEXT NOT NULL DEFAULT '',
                severity TEXT NOT NULL,
                message TEXT NOT NULL,
                triggered_at TEXT NOT NULL,
                cleared_at TEXT,
                cleared_by TEXT,
                observation TEXT
            )
            """,
            """
            CREATE UNIQUE INDEX IF NOT EXISTS alarms_one_open_per_key
            ON alarms(plant, inverter, rule_type, problem_detail)
            WHERE cleared_at IS NULL
            """,
            """
            CREATE TABLE IF NOT EXISTS consecutive_counts (
                plant TEXT NOT NULL,
                inverter TEXT NOT NULL,
                rule_type TEXT NOT NULL,
                problem_detail TEXT NOT NULL DEFAULT '',
                consecutive_count INTEGER NOT NULL CHECK (consecutive_count > 0),
                last_detected_at TEXT,
                PRIMARY KEY (plant, inverter, rule_type, problem_detail)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS vendor_status (
                vendor_kind TEXT PRIMARY KEY,
                last_status TEXT NOT NULL,
                last_success_at TEXT,
                grace_until TEXT
            )
            """,
        ]
        with self._conn:
            for stmt in stmts:
                self._conn.execute(stmt)

    @property
    def persistent(self) -> bool:
        return self._persist

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    @staticmethod
    def _row_to_alarm(row: sqlite3.Row) -> Alarm:
        return Alarm(
            key=DetectionKey(
                plant=row["plant"],
                inverter=row["inverter"],
                rule_type=RuleType(row["rule_type"]),
                detail=row["problem_detail"] or "",
            ),
            severity=Severity.parse(row["severity"]),
            message=row["message"],
            triggered_at=_parse_ts(row["triggered_at"]),
            alarm_id=row["alarm_id"],
            cleared_at=_parse_ts(row["cleared_at"]),
            cleared_by=row["cleared_by"],
            observation=row["observation"],
        )

    def load_open_alarms(self) -> List[Alarm]:
        cur = self._conn.execute("SELECT * FROM alarms WHERE cleared_at IS NULL ORDER BY alarm_id")
        return [self._row_to_alarm(row) for row in cur.fetchall()]

    def load_counters(self) -> Dict[DetectionKey, CounterEntry]:
        cur = self._conn.execute("SELECT * FROM consecutive_counts")
        counters: Dict[DetectionKey, CounterEntry] = {}
        for row in cur.fetchall():
            key = DetectionKey(
                plant=row["plant"],
                inverter=row["inverter"],
                rule_type=RuleType(row["rule_type"]),
                detail=row["problem_detail"] or "",
            )
            counters[key] = CounterEntry(
                count=int(row["consecutive_count"]),
                last_detected_at=_parse_ts(row["last_detected_at"]),
            )
        return counters

    def list_alarms(self, *, history: bool = False, limit: int | None = None) -> List[Alarm]:
        if history:
            sql = "SELECT * FROM alarms WHERE cleared_at IS NOT NULL ORDER BY cleared_at DESC"
        else:
            sql = "SELECT * FROM alarms WHERE cleared_at IS NULL ORDER BY triggered_at DESC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (int(limit),)
        return [self._row_to_alarm(row) for row in self._conn.execute(sql, params).fetchall()]

    def get_alarm(self, alarm_id: int) -> Alarm:
        row = self._conn.execute("SELECT * FROM alarms WHERE alarm_id = ?", (alarm_id,)).fetchone()
        if row is None:
            raise AlarmNotFound(f"Alarm {alarm_id} not found")
        return self._row_to_alarm(row)

    # Cycle commit ----------------------------------------------------
    def commit_cycle(self, changes: CycleChanges) -> None:
        """Apply one cycle's counter and alarm mutations atomically."""
        try:
            with self._conn:
                self._write_counters(changes.counter_upserts, changes.counter_deletes)
                self._write_inserts(changes.inserts)
                self._write_closures(changes.closures)
        except sqlite3.Error as exc:
            for alarm in changes.inserts:
                alarm.alarm_id = None
            raise PersistenceError(f"Cycle commit rolled back: {exc}") from exc

    def _write_counters(
        self,
        upserts: Dict[DetectionKey, CounterEntry],
        deletes: Iterable[DetectionKey],
    ) -> None:
        for key, entry in upserts.items():
            self._conn.execute(
                """
                INSERT INTO consecutive_counts(plant, inverter, rule_type, problem_detail, consecutive_count, last_detected_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(plant, inverter, rule_type, problem_detail) DO UPDATE SET
                    consecutive_count=excluded.consecutive_count,
                    last_detected_at=excluded.last_detected_at
                """,
                (key.plant, key.inverter, key.rule_type.value, key.detail, entry.count, _ts(entry.last_detected_at)),
            )
        for key in deletes:
            self._conn.execute(
                """
                DELETE FROM consecutive_counts
                WHERE plant = ? AND inverter = ? AND rule_type = ? AND problem_detail = ?
                """,
                (key.plant, key.inverter, key.rule_type.value, key.detail),
            )

    def _insert_alarm(self, alarm: Alarm) -> None:
        key = alarm.key
        cur = self._conn.execute(
            """
            INSERT INTO alarms(plant, inverter, rule_type, problem_detail, severity, message, triggered_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                key.plant,
                key.inverter,
                key.rule_type.value,
                key.detail,
                alarm.severity.value,
                alarm.message,
                _ts(alarm.triggered_at),
            ),
        )
        alarm.alarm_id = cur.lastrowid

    def _write_inserts(self, inserts: Iterable[Alarm]) -> None:
        for alarm in inserts:
            self._insert_alarm(alarm)

    def _write_closures(self, closures: Iterable[Alarm]) -> None:
        for alarm in closures:
            cur = self._conn.execute(
                "UPDATE alarms SET cleared_at = ?, cleared_by = ? WHERE alarm_id = ? AND cleared_at IS NULL",
                (_ts(alarm.cleared_at), alarm.cleared_by, alarm.alarm_id),
            )
            if cur.rowcount != 1:
                # Raised inside the transaction so the whole cycle rolls back.
                raise sqlite3.IntegrityError(f"alarm {alarm.alarm_id} is no longer open")

    # External events & operator actions -------------------------------
    def open_external_event(
        self,
        plant: str,
        inverter: str,
        detail: str,
        severity: Severity,
        message: str,
        triggered_at: datetime,
    ) -> tuple[Alarm, bool]:
        """Open a vendor-reported event, or refresh the one already open for the key."""
        key = DetectionKey(plant, inverter, RuleType.EXTERNAL_VENDOR_EVENT, detail)
        try:
            with self._conn:
                row = self._conn.execute(
                    """
                    SELECT * FROM alarms
                    WHERE plant = ? AND inverter = ? AND rule_type = ? AND problem_detail = ?
                      AND cleared_at IS NULL
                    """,
                    (plant, inverter, key.rule_type.value, detail),
                ).fetchone()
                if row is not None:
                    self._conn.execute(
                        "UPDATE alarms SET triggered_at = ?, message = ? WHERE alarm_id = ?",
                        (_ts(triggered_at), message, row["alarm_id"]),
                    )
                    alarm = self._row_to_alarm(row)
                    alarm.triggered_at = triggered_at
                    alarm.message = message
                    return alarm, False
                alarm = Alarm(key=key, severity=severity, message=message, triggered_at=triggered_at)
                self._insert_alarm(alarm)
                return alarm, True
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not record external event for {key}: {exc}") from exc

    def clear_alarm(self, alarm_id: int, *, cleared_by: str, now: datetime) -> Alarm:
        """Operator clear; only vendor events, which the cycle never clears itself."""
        alarm = self.get_alarm(alarm_id)
        if alarm.key.rule_type is not RuleType.EXTERNAL_VENDOR_EVENT:
            raise OperatorActionError(
                f"Alarm {alarm_id} is {alarm.key.rule_type.value}; only "
                f"{RuleType.EXTERNAL_VENDOR_EVENT.value} alarms can be cleared manually."
            )
        if not alarm.is_open:
            raise OperatorActionError(f"Alarm {alarm_id} is already cleared.")
        alarm.cleared_at = now
        alarm.cleared_by = cleared_by
        try:
            with self._conn:
                self._write_closures([alarm])
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not clear alarm {alarm_id}: {exc}") from exc
        return alarm

    def set_observation(self, alarm_id: int, observation: str | None) -> Alarm:
        alarm = self.get_alarm(alarm_id)
        with self._conn:
            self._conn.execute(
                "UPDATE alarms SET observation = ? WHERE alarm_id = ?",
                (observation, alarm_id),
            )
        alarm.observation = observation
        return alarm

    # Vendor API status -------------------------------------------------
    def record_vendor_poll(
        self,
        vendor_kind: str,
        success: bool,
        now: datetime,
        *,
        grace_minutes: int = 18,
    ) -> RecoveryGraceStatus:
        """
        Track the upstream API health for one vendor. A success that follows
        an error opens the recovery grace window; an error closes it.
        """
        current = self.grace_statuses().get(vendor_kind)
        if success:
            grace_until = current.grace_until if current else None
            if current is not None and current.last_status == "ERROR":
                grace_until = now + timedelta(minutes=grace_minutes)
            status = RecoveryGraceStatus(vendor_kind, "OK", grace_until)
            last_success = _ts(now)
        else:
            status = RecoveryGraceStatus(vendor_kind, "ERROR", None)
            last_success = None
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO vendor_status(vendor_kind, last_status, last_success_at, grace_until)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(vendor_kind) DO UPDATE SET
                    last_status=excluded.last_status,
                    last_success_at=COALESCE(excluded.last_success_at, vendor_status.last_success_at),
                    grace_until=excluded.grace_until
                """,
                (vendor_kind, status.last_status, last_success, _ts(status.grace_until)),
            )
        if status.grace_until and (current is None or current.grace_until != status.grace_until):
            self._log.info("Vendor %s recovered; offline grace until %s", vendor_kind, status.grace_until)
        return status

    def grace_statuses(self) -> Dict[str, RecoveryGraceStatus]:
        cur = self._conn.execute("SELECT vendor_kind, last_status, grace_until FROM vendor_status")
        return {
            row["vendor_kind"]: RecoveryGraceStatus(
                vendor_kind=row["vendor_kind"],
                last_status=row["last_status"],
                grace_until=_parse_ts(row["grace_until"]),
            )
            for row in cur.fetchall()
        }

    # ------------------------------------------------------------------
    def __del__(self):
        try:
            self._conn.close()
        except Exception:
            pass
