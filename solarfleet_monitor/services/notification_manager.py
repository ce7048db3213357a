# solarfleet_monitor/services/notification_manager.py

from __future__ import annotations

from typing import Iterable, List

from solarfleet_monitor.models.alarm import NotificationIntent
from solarfleet_monitor.services.message_formatter import format_intent
from solarfleet_monitor.services.notifiers.healthchecks import HealthchecksNotifier
from solarfleet_monitor.services.notifiers.telegram import TelegramNotifier


class NotificationManager:
    """Delivers committed alarm changes (Telegram) and cycle pings (Healthchecks)."""

    def __init__(self, telegram: TelegramNotifier, healthchecks: HealthchecksNotifier, log):
        self.log = log
        self.telegram = telegram
        self.healthchecks = healthchecks

    # ------------------------------------------------------------------
    def dispatch(self, intents: Iterable[NotificationIntent]) -> int:
        """Send every intent to its recipients; returns the number of failed sends."""
        intent_list: List[NotificationIntent] = list(intents)
        if not intent_list:
            return 0
        if not self.telegram.enabled:
            self.log.info("Telegram disabled; %d alarm notifications not sent.", len(intent_list))
            return 0

        failures = 0
        for intent in intent_list:
            admin = intent.recipients.admin
            for target in intent.recipients.targets():
                text = format_intent(intent, for_owner=target != admin)
                try:
                    sent = self.telegram.send_message(text, target)
                except Exception as exc:
                    self.log.warning("Notification to %s for %s raised: %s", target, intent.key, exc)
                    sent = False
                if not sent:
                    failures += 1
            if not intent.recipients.targets():
                self.log.warning("No recipients for %s notification of %s", intent.kind, intent.key)

        if failures:
            self.log.warning("%d notification sends failed; alarm state is already committed.", failures)
        return failures

    # ------------------------------------------------------------------
    def report_cycle(self, result) -> None:
        summary = f"opened={len(result.opened)} cleared={len(result.cleared)} open={result.open_alarms}"
        self.healthchecks.cycle_ok(summary)

    def report_failure(self, reason: str) -> None:
        self.healthchecks.cycle_failed(reason)

    # ------------------------------------------------------------------
    def send_test_notifications(self) -> None:
        """Trigger manual test messages for both channels."""
        self.log.info("Sending test notification via Telegram and Healthchecks...")
        self.telegram.send_test()
        self.healthchecks.cycle_ok("solarfleet monitor test ping")
