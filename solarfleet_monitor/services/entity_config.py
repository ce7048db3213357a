# solarfleet_monitor/services/entity_config.py

"""Validated per-inverter configuration.

Raw rows (from the fleet JSON file or any other provider) carry the
active-channel set either as a list or as a JSON-encoded string. Rows are
validated once, when the provider is built; a row that fails validation is
remembered as an ``EntityConfigError`` and re-raised on every lookup so the
coordinator can log and skip that inverter for the cycle.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Mapping, Tuple

from solarfleet_monitor.models.snapshot import EntityConfig, Grouping


MAX_CHANNEL = 32

# Channels on which a parallel pair can lose one of its strings.
HALF_STRING_ELIGIBLE: Dict[Grouping, range | None] = {
    Grouping.ALL_1S: None,
    Grouping.ALL_2P: range(1, MAX_CHANNEL + 1),
    Grouping.ALL_3P: None,
    Grouping.MIXED_4S_4_2P: range(5, 9),
    Grouping.MIXED_6_2P_2S: range(1, 7),
}

STRINGS_PER_MPPT = 3


class EntityConfigError(ValueError):
    """Raised when an inverter's configuration cannot be used for detection."""

    def __init__(self, plant: str, inverter: str, reason: str):
        super().__init__(f"{plant}/{inverter}: {reason}")
        self.plant = plant
        self.inverter = inverter
        self.reason = reason


def parse_active_channels(raw: Any) -> tuple[int, ...]:
    """Return the sorted, de-duplicated channel set or raise ValueError."""
    value = raw
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as exc:
            raise ValueError(f"active channels are not valid JSON ({exc.msg})") from exc
    if value is None:
        raise ValueError("active channels missing")
    if not isinstance(value, (list, tuple)):
        raise ValueError(f"active channels must be a list (got {type(value).__name__})")

    channels: set[int] = set()
    for item in value:
        # bool is an int subclass; reject it explicitly
        if isinstance(item, bool):
            raise ValueError(f"invalid channel index {item!r}")
        if isinstance(item, str) and item.strip().isdigit():
            item = int(item.strip())
        if not isinstance(item, int):
            raise ValueError(f"invalid channel index {item!r}")
        if item < 1 or item > MAX_CHANNEL:
            raise ValueError(f"channel index {item} out of range 1..{MAX_CHANNEL}")
        channels.add(item)

    if not channels:
        raise ValueError("active channels empty")
    return tuple(sorted(channels))


def parse_grouping(raw: Any) -> Grouping:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return Grouping.ALL_1S
    try:
        return Grouping(str(raw).strip().upper())
    except ValueError as exc:
        raise ValueError(f"unknown string grouping {raw!r}") from exc


def _identity(row: Mapping[str, Any]) -> Tuple[str, str] | None:
    plant = str(row.get("plant") or "").strip()
    inverter = str(row.get("inverter") or "").strip()
    if not plant or not inverter:
        return None
    return (plant, inverter)


def parse_entity_config(row: Mapping[str, Any]) -> EntityConfig:
    plant = str(row.get("plant") or "").strip()
    inverter = str(row.get("inverter") or "").strip()
    if not plant or not inverter:
        raise EntityConfigError(plant or "?", inverter or "?", "plant and inverter are required")

    try:
        channels = parse_active_channels(row.get("active_channels"))
        grouping = parse_grouping(row.get("grouping"))
    except ValueError as exc:
        raise EntityConfigError(plant, inverter, str(exc)) from exc

    owner = row.get("owner_chat_id")
    return EntityConfig(
        plant=plant,
        inverter=inverter,
        vendor_kind=str(row.get("vendor_kind") or "").strip(),
        grouping=grouping,
        active_channels=channels,
        owner_chat_id=str(owner).strip() if owner not in (None, "") else None,
    )


def is_aggregated(cfg: EntityConfig, aggregated_vendor_kinds: Iterable[str]) -> bool:
    kinds = {k.lower() for k in aggregated_vendor_kinds}
    return cfg.grouping is Grouping.ALL_3P or cfg.vendor_kind.lower() in kinds


def half_string_eligible(cfg: EntityConfig, channel: int) -> bool:
    eligible = HALF_STRING_ELIGIBLE.get(cfg.grouping)
    return eligible is not None and channel in eligible


def mppt_members(unit: int) -> tuple[int, ...]:
    first = (unit - 1) * STRINGS_PER_MPPT + 1
    return tuple(range(first, first + STRINGS_PER_MPPT))


class EntityConfigProvider:
    """In-memory provider keyed by (plant, inverter)."""

    def __init__(self, rows: Iterable[Mapping[str, Any]], log):
        self.log = log
        self._configs: Dict[Tuple[str, str], EntityConfig | EntityConfigError] = {}
        for idx, row in enumerate(rows):
            if not isinstance(row, Mapping) or not _identity(row):
                self.log.warning("Fleet row #%d has no plant/inverter; ignored.", idx)
                continue
            try:
                cfg = parse_entity_config(row)
            except EntityConfigError as exc:
                self.log.warning("Invalid configuration for %s/%s: %s", exc.plant, exc.inverter, exc.reason)
                self._configs[(exc.plant, exc.inverter)] = exc
                continue
            if cfg.entity in self._configs:
                self.log.warning("Duplicate configuration for %s/%s; keeping the last one.", *cfg.entity)
            self._configs[cfg.entity] = cfg

    @classmethod
    def from_file(cls, path: str | Path, log) -> "EntityConfigProvider":
        target = Path(path).expanduser()
        with target.open("r", encoding="utf-8") as fh:
            payload = json.load(fh)
        rows = payload.get("entities", []) if isinstance(payload, dict) else payload
        if not isinstance(rows, list):
            raise ValueError(f"Fleet file {target} must contain a list of entities")
        return cls(rows, log)

    def lookup(self, plant: str, inverter: str) -> EntityConfig:
        found = self._configs.get((plant, inverter))
        if found is None:
            raise EntityConfigError(plant, inverter, "no configuration")
        if isinstance(found, EntityConfigError):
            raise found
        return found

    def entities(self) -> Iterator[Tuple[str, str]]:
        return iter(self._configs.keys())

    def __contains__(self, entity: object) -> bool:
        return entity in self._configs

    def __len__(self) -> int:
        return len(self._configs)
