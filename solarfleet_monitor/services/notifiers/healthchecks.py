# solarfleet_monitor/services/notifiers/healthchecks.py

from __future__ import annotations

from typing import Optional

import requests

from solarfleet_monitor.config import HealthchecksConfig


class HealthchecksNotifier:
    """Dead-man's switch for the cycle scheduler: one ping per cycle."""

    def __init__(self, cfg: HealthchecksConfig, log, session: Optional[requests.Session] = None):
        self.cfg = cfg
        self.log = log
        self.session = session or requests.Session()
        self._base_url = (cfg.ping_url or "").rstrip("/")

    @property
    def enabled(self) -> bool:
        return bool(self.cfg.enabled and self._base_url)

    # ------------------------------------------------------------------
    def _ping(self, suffix: str, message: str) -> bool:
        if not self.enabled:
            self.log.debug("[Healthchecks] Disabled; skipping ping %s", suffix or "/")
            return False

        params = {"msg": message[:200]} if message else None
        try:
            resp = self.session.get(f"{self._base_url}{suffix}", params=params, timeout=10)
        except requests.RequestException as exc:
            self.log.warning("[Healthchecks] Ping failed: %s", exc)
            return False
        if resp.status_code >= 400:
            self.log.warning("[Healthchecks] Ping %s returned HTTP %s", suffix or "/", resp.status_code)
            return False
        self.log.debug("[Healthchecks] Ping sent to %s", suffix or "/")
        return True

    # ------------------------------------------------------------------
    def cycle_ok(self, summary: str = "") -> bool:
        return self._ping("", summary)

    def cycle_failed(self, reason: str = "") -> bool:
        return self._ping("/fail", reason)
