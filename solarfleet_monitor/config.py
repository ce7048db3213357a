# solarfleet_monitor/config.py
from dataclasses import dataclass, field
from pathlib import Path
import configparser


@dataclass
class StateConfig:
    path: str | None = None


@dataclass
class FleetConfig:
    path: str | None = None


@dataclass
class DetectionConfig:
    string_down_floor_a: float = 8.0
    string_down_max_a: float = 0.5
    string_down_confirm_cycles: int = 2
    band_floor_a: float = 13.0
    mppt_two_down_band: tuple[float, float] = (0.15, 0.45)
    mppt_one_down_band: tuple[float, float] = (0.50, 0.80)
    half_string_band: tuple[float, float] = (0.30, 0.70)
    band_confirm_cycles: int = 4
    aggregated_vendor_kinds: list[str] = field(default_factory=lambda: ["aggregated"])


@dataclass
class OfflineConfig:
    stale_after_minutes: int = 30
    recovery_grace_minutes: int = 18


@dataclass
class TelegramConfig:
    enabled: bool = False
    bot_token: str | None = None
    admin_chat_id: str | None = None
    notify_owners: bool = True
    base_url: str = "https://api.telegram.org"
    timeout: float = 10.0


@dataclass
class HealthchecksConfig:
    ping_url: str | None = None
    enabled: bool = False


@dataclass
class RetentionConfig:
    closed_alarm_days: int = 180
    vacuum_after_prune: bool = True


@dataclass
class LoggingConfig:
    console_level: str = "INFO"
    console_quiet: bool = False
    debug_modules: list[str] = field(default_factory=list)
    structured_enabled: bool = False
    structured_path: str | None = None


@dataclass
class AppConfig:
    state: StateConfig
    fleet: FleetConfig
    detection: DetectionConfig
    offline: OfflineConfig
    telegram: TelegramConfig
    healthchecks: HealthchecksConfig
    retention: RetentionConfig
    logging: LoggingConfig


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"true", "yes", "on", "1"}


def _as_list(value: str) -> list[str]:
    return [x.strip() for x in value.split(",") if x.strip()]


def _as_band(name: str, value: str) -> tuple[float, float]:
    parts = _as_list(value)
    if len(parts) != 2:
        raise ValueError(f"[detection] {name} must be 'low, high' (got {value!r})")
    low, high = float(parts[0]), float(parts[1])
    if not 0.0 <= low <= high <= 1.0:
        raise ValueError(f"[detection] {name} must satisfy 0 <= low <= high <= 1 (got {value!r})")
    return (low, high)


class Config:
    def __init__(self, path: str):
        self.path = Path(path)
        self.parser = configparser.ConfigParser(inline_comment_prefixes=("#",))
        read = self.parser.read(self.path)
        if not read:
            raise FileNotFoundError(f"Config file not found: {self.path}")

    @classmethod
    def load(cls, path: str) -> AppConfig:
        cfg = cls(path)
        return cls.from_parser(cfg.parser)

    @staticmethod
    def from_parser(p: configparser.ConfigParser) -> AppConfig:
        # --- State / fleet ---
        state_kwargs = {}
        if "state" in p and "path" in p["state"]:
            state_kwargs["path"] = p["state"]["path"]
        state_cfg = StateConfig(**state_kwargs)

        fleet_kwargs = {}
        if "fleet" in p and "path" in p["fleet"]:
            fleet_kwargs["path"] = p["fleet"]["path"]
        fleet_cfg = FleetConfig(**fleet_kwargs)

        # --- Detection ---
        detection_kwargs = {}
        if "detection" in p:
            det_sec = p["detection"]
            for key in ("string_down_floor_a", "string_down_max_a", "band_floor_a"):
                if key in det_sec:
                    detection_kwargs[key] = float(det_sec[key])
            for key in ("string_down_confirm_cycles", "band_confirm_cycles"):
                if key in det_sec:
                    value = int(det_sec[key])
                    if value < 1:
                        raise ValueError(f"[detection] {key} must be >= 1")
                    detection_kwargs[key] = value
            for key in ("mppt_two_down_band", "mppt_one_down_band", "half_string_band"):
                if key in det_sec:
                    detection_kwargs[key] = _as_band(key, det_sec[key])
            if "aggregated_vendor_kinds" in det_sec:
                detection_kwargs["aggregated_vendor_kinds"] = [
                    x.lower() for x in _as_list(det_sec["aggregated_vendor_kinds"])
                ]
        detection_cfg = DetectionConfig(**detection_kwargs)

        # --- Offline ---
        offline_kwargs = {}
        if "offline" in p:
            off_sec = p["offline"]
            if "stale_after_minutes" in off_sec:
                offline_kwargs["stale_after_minutes"] = int(off_sec["stale_after_minutes"])
            if "recovery_grace_minutes" in off_sec:
                offline_kwargs["recovery_grace_minutes"] = int(off_sec["recovery_grace_minutes"])
        offline_cfg = OfflineConfig(**offline_kwargs)

        # --- Telegram ---
        telegram_kwargs = {}
        if "telegram" in p:
            tg_sec = p["telegram"]
            if "enabled" in tg_sec:
                telegram_kwargs["enabled"] = _as_bool(tg_sec["enabled"])
            token = tg_sec.get("bot_token") or tg_sec.get("token")
            if token is not None:
                telegram_kwargs["bot_token"] = token
            if "admin_chat_id" in tg_sec:
                telegram_kwargs["admin_chat_id"] = tg_sec["admin_chat_id"].strip() or None
            if "notify_owners" in tg_sec:
                telegram_kwargs["notify_owners"] = _as_bool(tg_sec["notify_owners"])
            if "base_url" in tg_sec:
                telegram_kwargs["base_url"] = tg_sec["base_url"]
            if "timeout" in tg_sec:
                telegram_kwargs["timeout"] = float(tg_sec["timeout"])
        telegram_cfg = TelegramConfig(**telegram_kwargs)

        # --- Healthchecks ---
        healthchecks_kwargs = {}
        if "healthchecks" in p:
            hc_sec = p["healthchecks"]
            if "ping_url" in hc_sec:
                healthchecks_kwargs["ping_url"] = hc_sec["ping_url"]
            if "enabled" in hc_sec:
                healthchecks_kwargs["enabled"] = _as_bool(hc_sec["enabled"])
        healthchecks_cfg = HealthchecksConfig(**healthchecks_kwargs)

        # --- Retention ---
        if "retention" in p:
            retention_sec = p["retention"]
        else:
            retention_sec = {}

        retention_cfg = RetentionConfig(
            closed_alarm_days=int(retention_sec.get("closed_alarm_days", 180) or 180),
            vacuum_after_prune=_as_bool(retention_sec.get("vacuum_after_prune", "true")),
        )

        # --- Logging ---
        logging_kwargs = {}
        if "logging" in p:
            logging_sec = p["logging"]
            if "console_level" in logging_sec:
                logging_kwargs["console_level"] = logging_sec["console_level"]
            if "console_quiet" in logging_sec:
                logging_kwargs["console_quiet"] = _as_bool(logging_sec["console_quiet"])
            if "debug_modules" in logging_sec:
                logging_kwargs["debug_modules"] = _as_list(logging_sec["debug_modules"])
            if "structured_enabled" in logging_sec:
                logging_kwargs["structured_enabled"] = _as_bool(logging_sec["structured_enabled"])
            if "structured_path" in logging_sec:
                logging_kwargs["structured_path"] = logging_sec["structured_path"]
        logging_cfg = LoggingConfig(**logging_kwargs)

        return AppConfig(
            state=state_cfg,
            fleet=fleet_cfg,
            detection=detection_cfg,
            offline=offline_cfg,
            telegram=telegram_cfg,
            healthchecks=healthchecks_cfg,
            retention=retention_cfg,
            logging=logging_cfg,
        )
