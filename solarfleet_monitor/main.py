# solarfleet_monitor/main.py

from datetime import datetime, timezone
import json

from .cli import build_parser
from .config import AppConfig, Config
from .logging import ConsoleLog, StructuredLog, CycleLogEntry

from .models.alarm import NotificationIntent, Recipients, Severity
from .services.alarm_store import AlarmNotFound, AlarmStore, OperatorActionError, PersistenceError
from .services.entity_config import EntityConfigError, EntityConfigProvider
from .services.lifecycle import CycleError, CycleResult, LifecycleCoordinator
from .services.message_formatter import alarm_as_dict, emit_alarms, emit_cycle, format_alarm_line
from .services.notification_manager import NotificationManager
from .services.notifiers.healthchecks import HealthchecksNotifier
from .services.notifiers.telegram import TelegramNotifier
from .services.snapshot_loader import SnapshotLoader, parse_timestamp
from .services import state_maintenance


def _cycle_entry(now: datetime, snapshot_count: int, result: CycleResult | None, error: str | None = None) -> CycleLogEntry:
    if result is None:
        return CycleLogEntry(
            timestamp=now.isoformat(),
            snapshot_count=snapshot_count,
            opened=None,
            cleared=None,
            skipped_entities=None,
            active_counters=0,
            open_alarms=0,
            notification_failures=0,
            error=error,
        )
    return CycleLogEntry(
        timestamp=now.isoformat(),
        snapshot_count=snapshot_count,
        opened=[alarm_as_dict(a) for a in result.opened] or None,
        cleared=[alarm_as_dict(a) for a in result.cleared] or None,
        skipped_entities=result.skipped_entities or None,
        active_counters=result.active_counters,
        open_alarms=result.open_alarms,
        notification_failures=result.notification_failures,
    )


def _load_fleet(path: str | None, log) -> EntityConfigProvider:
    if not path:
        raise ValueError("No fleet configuration: set [fleet] path or pass --fleet")
    return EntityConfigProvider.from_file(path, log)


def run_cycle(args, app_cfg: AppConfig, store: AlarmStore, notifier: NotificationManager, structured_logger, log, now) -> int:
    configs = _load_fleet(args.fleet or app_cfg.fleet.path, log)
    loader = SnapshotLoader(log, stale_after_minutes=app_cfg.offline.stale_after_minutes)
    snapshots = loader.load(args.snapshots, now)

    coordinator = LifecycleCoordinator.build(
        store,
        app_cfg.detection,
        log,
        notifier=notifier,
        admin_chat_id=app_cfg.telegram.admin_chat_id,
        notify_owners=app_cfg.telegram.notify_owners,
    )

    try:
        result = coordinator.run_cycle(snapshots, configs, now=now, grace=store.grace_statuses())
    except CycleError as exc:
        log.error("Monitoring cycle failed: %s", exc)
        notifier.report_failure(f"cycle failed: {exc}")
        structured_logger.write(_cycle_entry(now, len(snapshots), None, error=str(exc)))
        return 1

    notifier.report_cycle(result)
    structured_logger.write(_cycle_entry(now, len(snapshots), result))
    if not args.quiet:
        emit_cycle(result, as_json=args.json)
    return 0


def open_event(args, app_cfg: AppConfig, store: AlarmStore, notifier: NotificationManager, log, now) -> int:
    severity = Severity.parse(args.severity)
    triggered_at = parse_timestamp(args.at) or now
    message = args.message or f'Vendor event: "{args.detail}" (plant {args.plant}, inverter {args.inverter})'

    alarm, created = store.open_external_event(
        args.plant,
        args.inverter,
        args.detail,
        severity,
        message,
        triggered_at,
    )
    if not created:
        log.info("Vendor event already open as alarm #%s; refreshed.", alarm.alarm_id)
    else:
        log.info("Vendor event recorded as alarm #%s", alarm.alarm_id)
        owner = None
        if app_cfg.fleet.path:
            try:
                owner = _load_fleet(app_cfg.fleet.path, log).lookup(args.plant, args.inverter).owner_chat_id
            except (EntityConfigError, OSError, ValueError) as exc:
                log.debug("No owner lookup for %s/%s: %s", args.plant, args.inverter, exc)
        admin = app_cfg.telegram.admin_chat_id
        if not app_cfg.telegram.notify_owners or owner == admin:
            owner = None
        notifier.dispatch(
            [
                NotificationIntent(
                    kind="opened",
                    key=alarm.key,
                    severity=alarm.severity,
                    message=alarm.message,
                    recipients=Recipients(admin=admin, owner=owner),
                )
            ]
        )

    if not args.quiet:
        print(json.dumps(alarm_as_dict(alarm), indent=2) if args.json else format_alarm_line(alarm))
    return 0


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    app_cfg = Config.load(args.config)
    console_logger = ConsoleLog(
        level="DEBUG" if args.debug else app_cfg.logging.console_level,
        quiet=args.quiet or app_cfg.logging.console_quiet,
        debug_modules=app_cfg.logging.debug_modules,
    )
    log = console_logger.setup()
    structured_logger = StructuredLog(
        app_cfg.logging.structured_path,
        app_cfg.logging.structured_enabled,
    )

    store = AlarmStore(path=app_cfg.state.path)
    notifier = NotificationManager(
        TelegramNotifier(app_cfg.telegram, log),
        HealthchecksNotifier(app_cfg.healthchecks, log),
        log,
    )
    now = datetime.now(timezone.utc)

    try:
        if args.command == "run-cycle":
            return run_cycle(args, app_cfg, store, notifier, structured_logger, log, now)

        if args.command == "open-event":
            return open_event(args, app_cfg, store, notifier, log, now)

        if args.command == "clear-alarm":
            alarm = store.clear_alarm(args.alarm_id, cleared_by=args.by, now=now)
            log.info("Alarm #%s cleared manually by %s", alarm.alarm_id, args.by)
            return 0

        if args.command == "annotate":
            store.set_observation(args.alarm_id, args.observation or None)
            log.info("Observation updated on alarm #%s", args.alarm_id)
            return 0

        if args.command == "list-alarms":
            emit_alarms(store.list_alarms(history=args.history, limit=args.limit), as_json=args.json)
            return 0

        if args.command == "vendor-status":
            status = store.record_vendor_poll(
                args.vendor,
                success=args.ok,
                now=now,
                grace_minutes=app_cfg.offline.recovery_grace_minutes,
            )
            log.info(
                "Vendor %s status=%s grace_until=%s",
                status.vendor_kind,
                status.last_status,
                status.grace_until.isoformat() if status.grace_until else "-",
            )
            return 0

        if args.command == "notify-test":
            notifier.send_test_notifications()
            return 0

        if args.command == "maintain-db":
            closed_days = args.closed_days if args.closed_days is not None else app_cfg.retention.closed_alarm_days
            vacuum = app_cfg.retention.vacuum_after_prune and not args.no_vacuum
            removed = state_maintenance.prune(store, closed_days, vacuum=vacuum)
            log.info("Database maintenance complete (%d alarms cleared >%sdays removed)", removed, closed_days)
            return 0

        raise ValueError(f"Unsupported command: {args.command}")
    except (AlarmNotFound, OperatorActionError) as exc:
        log.error("%s", exc)
        return 2
    except PersistenceError as exc:
        log.error("Store write failed: %s", exc)
        return 1
    except (OSError, ValueError) as exc:
        log.error("Cannot run %s: %s", args.command, exc)
        return 2
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
