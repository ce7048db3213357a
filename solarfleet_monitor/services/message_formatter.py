# solarfleet_monitor/services/message_formatter.py

from __future__ import annotations

import json
from html import escape
from typing import Iterable, List

from solarfleet_monitor.models.alarm import Alarm, NotificationIntent, Severity


SEVERITY_ICON = {
    Severity.CRITICAL: "🚨",
    Severity.HIGH: "🚨",
    Severity.MEDIUM: "⚠️",
    Severity.LOW: "ℹ️",
}


def _title(rule_type) -> str:
    return rule_type.value.replace("_", " ")


def format_intent(intent: NotificationIntent, *, for_owner: bool = False) -> str:
    """Telegram HTML body for one opened/cleared alarm."""
    plant = escape(intent.plant)
    inverter = escape(intent.inverter)
    detail = escape(intent.detail) if intent.detail else "N/A"
    title = escape(_title(intent.rule_type))

    if intent.kind == "cleared":
        lines = [f"✅ <b>ALARM CLEARED: {title}</b> ✅"]
        if for_owner:
            lines.append(f"The alarm on your plant <b>{plant}</b> has been resolved.")
        else:
            lines.append(f"Plant: <b>{plant}</b>")
        lines.append(f"Inverter: <b>{inverter}</b>")
        lines.append(f"Details: {detail}")
        return "\n".join(lines)

    icon = SEVERITY_ICON.get(intent.severity, "🚨")
    lines = [f"{icon} <b>NEW ALARM: {title}</b> {icon}"]
    if for_owner:
        lines.append(f"Your plant <b>{plant}</b> needs attention.")
    else:
        lines.append(f"Plant: <b>{plant}</b>")
    lines.append(f"Inverter: <b>{inverter}</b>")
    lines.append(f"Severity: {escape(intent.severity.value)}")
    lines.append(f"Details: {detail}")
    if intent.message:
        lines.append(f"<i>{escape(intent.message)}</i>")
    return "\n".join(lines)


# ----------------------------------------------------------------------
# CLI output
# ----------------------------------------------------------------------

def alarm_as_dict(alarm: Alarm) -> dict:
    return {
        "alarm_id": alarm.alarm_id,
        "plant": alarm.key.plant,
        "inverter": alarm.key.inverter,
        "rule_type": alarm.key.rule_type.value,
        "detail": alarm.key.detail,
        "severity": alarm.severity.value,
        "message": alarm.message,
        "triggered_at": alarm.triggered_at.isoformat() if alarm.triggered_at else None,
        "cleared_at": alarm.cleared_at.isoformat() if alarm.cleared_at else None,
        "cleared_by": alarm.cleared_by,
        "observation": alarm.observation,
    }


def format_alarm_line(alarm: Alarm) -> str:
    ident = f"#{alarm.alarm_id}" if alarm.alarm_id is not None else "#-"
    line = (
        f"{ident:<6} {alarm.severity.value:<8} {alarm.key.rule_type.value:<22} "
        f"{alarm.key.plant}/{alarm.key.inverter}"
    )
    if alarm.key.detail:
        line += f" [{alarm.key.detail}]"
    line += f" since {alarm.triggered_at:%Y-%m-%d %H:%M}"
    if alarm.cleared_at:
        line += f", cleared {alarm.cleared_at:%Y-%m-%d %H:%M}"
    if alarm.observation:
        line += f"\n       note: {alarm.observation}"
    return line


def emit_alarms(alarms: Iterable[Alarm], *, as_json: bool = False) -> None:
    alarm_list: List[Alarm] = list(alarms)
    if as_json:
        print(json.dumps([alarm_as_dict(a) for a in alarm_list], indent=2))
        return
    if not alarm_list:
        print("No alarms.")
        return
    for alarm in alarm_list:
        print(format_alarm_line(alarm))


def emit_cycle(result, *, as_json: bool = False) -> None:
    if as_json:
        payload = {
            "started_at": result.started_at.isoformat(),
            "snapshot_count": result.snapshot_count,
            "opened": [alarm_as_dict(a) for a in result.opened],
            "cleared": [alarm_as_dict(a) for a in result.cleared],
            "skipped_entities": result.skipped_entities,
            "open_alarms": result.open_alarms,
            "active_counters": result.active_counters,
            "notification_failures": result.notification_failures,
        }
        print(json.dumps(payload, indent=2))
        return

    print(f"=== CYCLE {result.started_at:%Y-%m-%d %H:%M:%S} ===")
    print(
        f"Snapshots: {result.snapshot_count}  open alarms: {result.open_alarms}  "
        f"active counters: {result.active_counters}"
    )
    if result.skipped_entities:
        print("Skipped (config): " + ", ".join(result.skipped_entities))
    for label, alarms in (("Opened", result.opened), ("Cleared", result.cleared)):
        if not alarms:
            continue
        print(f"{label}:")
        for alarm in alarms:
            print("  " + format_alarm_line(alarm))
    if result.notification_failures:
        print(f"Notification failures: {result.notification_failures}")
