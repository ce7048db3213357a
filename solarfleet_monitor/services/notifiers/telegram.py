# solarfleet_monitor/services/notifiers/telegram.py

from __future__ import annotations

from datetime import datetime
from typing import Optional

import requests

from solarfleet_monitor.config import TelegramConfig


class TelegramNotifier:
    """Minimal Telegram Bot API client (sendMessage only)."""

    API_BASE_DEFAULT = "https://api.telegram.org"
    MAX_MESSAGE_CHARS = 4096

    def __init__(self, cfg: TelegramConfig, log, session: Optional[requests.Session] = None):
        self.cfg = cfg
        self.log = log
        self.session = session or requests.Session()
        self.base_url = (cfg.base_url or self.API_BASE_DEFAULT).rstrip("/")

    # ------------------------------------------------------------------
    @property
    def enabled(self) -> bool:
        return bool(self.cfg.enabled and self.cfg.bot_token)

    # ------------------------------------------------------------------
    def send_message(self, text: str, chat_id: str | None = None) -> bool:
        target = chat_id or self.cfg.admin_chat_id
        if not self.enabled:
            self.log.debug("[Telegram] Disabled; skipping message to %s", target)
            return False
        if not target:
            self.log.warning("[Telegram] No chat id configured; message dropped.")
            return False

        url = f"{self.base_url}/bot{self.cfg.bot_token}/sendMessage"
        payload = {
            "chat_id": target,
            "text": text[: self.MAX_MESSAGE_CHARS],
            "parse_mode": "HTML",
        }

        try:
            resp = self.session.post(url, json=payload, timeout=self.cfg.timeout)
        except requests.RequestException as exc:
            self.log.warning("[Telegram] Failed to send message to %s: %s", target, exc)
            return False

        if resp.status_code != 200:
            self.log.warning(
                "[Telegram] sendMessage to %s returned HTTP %s: %s",
                target,
                resp.status_code,
                (resp.text or "")[:200],
            )
            return False

        try:
            data = resp.json()
        except ValueError:
            self.log.warning("[Telegram] sendMessage to %s returned non-JSON payload", target)
            return False

        if not isinstance(data, dict) or not data.get("ok"):
            self.log.warning("[Telegram] sendMessage to %s rejected: %s", target, data)
            return False

        self.log.debug("[Telegram] Sent message to %s", target)
        return True

    # ------------------------------------------------------------------
    def send_test(self) -> bool:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        return self.send_message(f"Test message from solarfleet monitor at {timestamp}")
