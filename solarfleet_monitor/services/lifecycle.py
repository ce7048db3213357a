# solarfleet_monitor/services/lifecycle.py

"""One monitoring cycle: load, evaluate, reconcile, persist, notify.

The coordinator owns the cycle's ``CycleState``. Notification intents are
queued while reconciling and handed to the notifier only after the store
commit succeeded; a notifier failure is logged and counted, never raised.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from solarfleet_monitor.config import DetectionConfig
from solarfleet_monitor.models.alarm import Alarm, NotificationIntent, Recipients
from solarfleet_monitor.models.snapshot import EntityConfig, InverterSnapshot, RecoveryGraceStatus
from solarfleet_monitor.services.alarm_store import AlarmStore, CycleChanges, PersistenceError
from solarfleet_monitor.services.cycle_state import CycleState
from solarfleet_monitor.services.detection_engine import DetectionEngine
from solarfleet_monitor.services.entity_config import EntityConfigError, EntityConfigProvider


AUTO_CLEARED_BY = "auto"


class CycleError(RuntimeError):
    """The cycle could not be committed; stored state is unchanged."""


@dataclass
class CycleResult:
    started_at: datetime
    snapshot_count: int
    opened: List[Alarm] = field(default_factory=list)
    cleared: List[Alarm] = field(default_factory=list)
    skipped_entities: List[str] = field(default_factory=list)
    intents: List[NotificationIntent] = field(default_factory=list)
    active_counters: int = 0
    open_alarms: int = 0
    notification_failures: int = 0


class LifecycleCoordinator:
    def __init__(
        self,
        store: AlarmStore,
        engine: DetectionEngine,
        log,
        *,
        notifier=None,
        admin_chat_id: str | None = None,
        notify_owners: bool = True,
    ):
        self.store = store
        self.engine = engine
        self.log = log
        self.notifier = notifier
        self.admin_chat_id = admin_chat_id
        self.notify_owners = notify_owners

    @classmethod
    def build(cls, store: AlarmStore, detection_cfg: DetectionConfig, log, **kwargs) -> "LifecycleCoordinator":
        return cls(store, DetectionEngine(detection_cfg, log), log, **kwargs)

    # ------------------------------------------------------------------
    def run_cycle(
        self,
        snapshots: Sequence[InverterSnapshot],
        configs: EntityConfigProvider,
        *,
        now: datetime,
        grace: Optional[Mapping[str, RecoveryGraceStatus]] = None,
    ) -> CycleResult:
        grace = grace or {}
        result = CycleResult(started_at=now, snapshot_count=len(snapshots))

        # 1. Load
        try:
            state = CycleState.load(self.store.load_open_alarms(), self.store.load_counters())
        except Exception as exc:
            raise CycleError(f"Could not load alarm state: {exc}") from exc
        self.log.debug(
            "Cycle start: %d snapshots, %d open alarms, %d active counters",
            len(snapshots),
            len(state.open_alarms),
            len(state.counters),
        )

        # 2. Evaluate
        owners = self._evaluate(snapshots, configs, state, now, grace, result)

        # 3. Reconcile
        closures = self._reconcile(state, now)

        # 4. Persist
        changes = CycleChanges(
            counter_upserts=state.counter_upserts(),
            counter_deletes=state.counter_deletes(),
            inserts=list(state.opened),
            closures=closures,
        )
        try:
            self.store.commit_cycle(changes)
        except PersistenceError as exc:
            self.log.error("Cycle aborted, nothing persisted: %s", exc)
            raise CycleError(str(exc)) from exc

        result.opened = list(state.opened)
        result.cleared = closures
        result.active_counters = len(changes.counter_upserts)
        result.open_alarms = len(state.open_alarms) - len(closures)
        self.log.info(
            "Cycle committed: %d opened, %d cleared, %d open, %d active counters",
            len(result.opened),
            len(result.cleared),
            result.open_alarms,
            result.active_counters,
        )

        # 5. Notify
        result.intents = self._build_intents(result.opened, result.cleared, owners)
        result.notification_failures = self._dispatch(result.intents)
        return result

    # ------------------------------------------------------------------
    def _evaluate(
        self,
        snapshots: Iterable[InverterSnapshot],
        configs: EntityConfigProvider,
        state: CycleState,
        now: datetime,
        grace: Mapping[str, RecoveryGraceStatus],
        result: CycleResult,
    ) -> Dict[Tuple[str, str], Optional[str]]:
        owners: Dict[Tuple[str, str], Optional[str]] = {}
        evaluated: Set[Tuple[str, str]] = set()
        seen: Set[Tuple[str, str]] = set()

        for snapshot in snapshots:
            entity = snapshot.entity
            if entity in seen:
                self.log.warning("Duplicate snapshot for %s/%s in batch; ignoring it.", *entity)
                continue
            seen.add(entity)

            cfg: EntityConfig | None = None
            try:
                cfg = configs.lookup(*entity)
            except EntityConfigError as exc:
                self.log.warning("Skipping string checks for %s: %s", f"{entity[0]}/{entity[1]}", exc.reason)
                result.skipped_entities.append(f"{entity[0]}/{entity[1]}")
                state.hold_entity(*entity)

            vendor = cfg.vendor_kind if cfg and cfg.vendor_kind else snapshot.vendor_kind
            self.engine.evaluate_offline(
                snapshot.plant,
                snapshot.inverter,
                offline=snapshot.is_offline,
                in_grace=self._in_grace(grace, vendor, now),
                state=state,
                now=now,
            )

            if cfg is None:
                continue
            owners[entity] = cfg.owner_chat_id
            self.engine.evaluate_entity(snapshot, cfg, state, now)
            evaluated.add(entity)

        # Configured inverters that the source did not report at all.
        for entity in configs.entities():
            if entity in seen:
                continue
            try:
                cfg = configs.lookup(*entity)
            except EntityConfigError as exc:
                self.log.warning("Configuration for %s/%s unusable: %s", entity[0], entity[1], exc.reason)
                cfg = None
            vendor = cfg.vendor_kind if cfg else ""
            if cfg is not None:
                owners[entity] = cfg.owner_chat_id
            self.log.warning("No snapshot for configured inverter %s/%s; treating as offline.", *entity)
            state.hold_entity(*entity)
            self.engine.evaluate_offline(
                entity[0],
                entity[1],
                offline=True,
                in_grace=self._in_grace(grace, vendor, now),
                state=state,
                now=now,
                reason="Inverter is configured but the data source returned no record for it.",
            )

        for key in state.drop_untouched(evaluated):
            self.log.info("Dropping counter for %s; channel no longer evaluated.", key)
        known = seen | set(configs.entities())
        for key in state.drop_unknown(known):
            self.log.info("Dropping counter for %s; inverter no longer configured or reported.", key)
        return owners

    @staticmethod
    def _in_grace(grace: Mapping[str, RecoveryGraceStatus], vendor: str, now: datetime) -> bool:
        status = grace.get(vendor)
        return bool(status and status.in_grace(now))

    def _reconcile(self, state: CycleState, now: datetime) -> List[Alarm]:
        closures: List[Alarm] = []
        for key, alarm in state.open_alarms.items():
            if key in state.still_detected:
                continue
            if not key.rule_type.auto_clears:
                continue
            alarm.cleared_at = now
            alarm.cleared_by = AUTO_CLEARED_BY
            closures.append(alarm)
            self.log.info("Alarm cleared: %s", key)
        return closures

    # ------------------------------------------------------------------
    def _recipients(self, owner: Optional[str]) -> Recipients:
        if not self.notify_owners or not owner or owner == self.admin_chat_id:
            owner = None
        return Recipients(admin=self.admin_chat_id, owner=owner)

    def _build_intents(
        self,
        opened: Iterable[Alarm],
        cleared: Iterable[Alarm],
        owners: Mapping[Tuple[str, str], Optional[str]],
    ) -> List[NotificationIntent]:
        intents = []
        for kind, alarms in (("opened", opened), ("cleared", cleared)):
            for alarm in alarms:
                intents.append(
                    NotificationIntent(
                        kind=kind,
                        key=alarm.key,
                        severity=alarm.severity,
                        message=alarm.message,
                        recipients=self._recipients(owners.get(alarm.key.entity)),
                    )
                )
        return intents

    def _dispatch(self, intents: List[NotificationIntent]) -> int:
        if not intents or self.notifier is None:
            return 0
        try:
            return self.notifier.dispatch(intents)
        except Exception as exc:
            self.log.warning("Notification dispatch failed after commit: %s", exc)
            return len(intents)
