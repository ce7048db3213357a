# solarfleet_monitor/cli.py
import argparse


def build_parser():
    parser = argparse.ArgumentParser(
        prog="solarfleet-monitor",
        description="Solar fleet string/offline alarm monitor"
    )

    parser.add_argument(
        "--config",
        default="solarfleet_monitor.conf",
        help="Path to configuration file"
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable verbose debug logging"
    )

    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Suppress stdout output (cron-friendly)"
    )

    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit JSON instead of human-readable text"
    )

    sub = parser.add_subparsers(dest="command", required=True)

    # One monitoring cycle
    cmd_cycle = sub.add_parser("run-cycle", help="Evaluate one telemetry batch and reconcile alarms")
    cmd_cycle.add_argument("--snapshots", required=True, help="JSON file with this cycle's snapshots")
    cmd_cycle.add_argument("--fleet", help="Override [fleet] path (JSON entity configuration)")

    # Vendor-reported events
    cmd_event = sub.add_parser("open-event", help="Record a vendor-reported alarm event")
    cmd_event.add_argument("--plant", required=True)
    cmd_event.add_argument("--inverter", required=True)
    cmd_event.add_argument("--detail", required=True, help="Event description from the vendor")
    cmd_event.add_argument("--severity", default="Critical", help="Critical, High, Medium or Low")
    cmd_event.add_argument("--message", help="Free-text message (defaults to the detail)")
    cmd_event.add_argument("--at", help="Event time (ISO 8601); defaults to now")

    # Operator actions
    cmd_clear = sub.add_parser("clear-alarm", help="Manually clear a vendor event alarm")
    cmd_clear.add_argument("alarm_id", type=int)
    cmd_clear.add_argument("--by", default="operator", help="Who cleared the alarm")

    cmd_note = sub.add_parser("annotate", help="Set the operator observation on an alarm")
    cmd_note.add_argument("alarm_id", type=int)
    cmd_note.add_argument("observation", help="Observation text (empty string removes it)")

    cmd_list = sub.add_parser("list-alarms", help="Show open alarms (or cleared history)")
    cmd_list.add_argument("--history", action="store_true", help="List cleared alarms instead")
    cmd_list.add_argument("--limit", type=int, help="Maximum rows to show")

    # Upstream API health (feeds the recovery grace window)
    cmd_vendor = sub.add_parser("vendor-status", help="Record the result of a vendor API poll")
    cmd_vendor.add_argument("--vendor", required=True, help="Vendor kind, e.g. growatt")
    outcome = cmd_vendor.add_mutually_exclusive_group(required=True)
    outcome.add_argument("--ok", action="store_true", help="The poll succeeded")
    outcome.add_argument("--error", action="store_true", help="The poll failed")

    # Notification test helper
    sub.add_parser("notify-test", help="Send a test Telegram message and Healthchecks ping")

    # Database retention
    cmd_maint = sub.add_parser("maintain-db", help="Prune old cleared alarms")
    cmd_maint.add_argument("--closed-days", type=int, help="Override [retention] closed_alarm_days")
    cmd_maint.add_argument("--no-vacuum", action="store_true", help="Skip VACUUM after pruning")

    return parser
