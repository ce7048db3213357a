from solarfleet_monitor.config import DetectionConfig
from solarfleet_monitor.models.alarm import Alarm, CounterEntry, DetectionKey, RuleType, Severity
from solarfleet_monitor.models.snapshot import Grouping
from solarfleet_monitor.services.cycle_state import CycleState
from solarfleet_monitor.services.detection_engine import (
    OFFLINE_DETAIL,
    DetectionEngine,
    Outcome,
    channel_label,
    classify_half_string,
    classify_mppt,
    classify_string_down,
)
from solarfleet_monitor.tests.fake_snapshots import QUIET_LOG, RecordingLog, cycle_time, entity, snapshot


CFG = DetectionConfig()


def _engine(log=QUIET_LOG):
    return DetectionEngine(DetectionConfig(), log)


def _run(engine, cfg, currents_per_cycle, state=None, **snap_kwargs):
    state = state or CycleState()
    for n, currents in enumerate(currents_per_cycle):
        # fresh per-cycle sets, persistent counters and alarms
        state.still_detected = set()
        state.touched = set()
        engine.evaluate_entity(snapshot(currents, **snap_kwargs), cfg, state, cycle_time(n))
    return state


def _key(rule, label, plant="P1", inverter="INV-1"):
    return DetectionKey(plant, inverter, rule, label)


# ----------------------------------------------------------------------
# Classifiers
# ----------------------------------------------------------------------

def test_string_down_classifier_boundaries():
    assert classify_string_down(0.5, 15.0, CFG) is Outcome.DETECTED
    assert classify_string_down(0.51, 15.0, CFG) is Outcome.ABSENT
    assert classify_string_down(0.0, 8.0, CFG) is Outcome.HOLD
    assert classify_string_down(0.0, 8.01, CFG) is Outcome.DETECTED


def test_mppt_classifier_prefers_two_down():
    assert classify_mppt(8.0, 20.0, CFG) == (Outcome.DETECTED, Outcome.ABSENT)  # 40%
    assert classify_mppt(12.0, 20.0, CFG) == (Outcome.ABSENT, Outcome.DETECTED)  # 60%
    assert classify_mppt(19.0, 20.0, CFG) == (Outcome.ABSENT, Outcome.ABSENT)
    assert classify_mppt(5.0, 12.9, CFG) == (Outcome.HOLD, Outcome.HOLD)


def test_mppt_classifier_overlapping_bands_fire_two_down_only():
    cfg = DetectionConfig(mppt_two_down_band=(0.15, 0.60), mppt_one_down_band=(0.50, 0.80))
    assert classify_mppt(11.0, 20.0, cfg) == (Outcome.DETECTED, Outcome.ABSENT)


def test_half_string_classifier_requires_reading_below_peak():
    assert classify_half_string(7.0, 14.0, CFG) is Outcome.DETECTED
    assert classify_half_string(14.0, 14.0, CFG) is Outcome.ABSENT
    assert classify_half_string(3.0, 14.0, CFG) is Outcome.ABSENT
    assert classify_half_string(5.0, 12.0, CFG) is Outcome.HOLD


def test_half_string_degenerate_band_never_fires_at_peak():
    cfg = DetectionConfig(half_string_band=(1.0, 1.0))
    assert classify_half_string(14.0, 14.0, cfg) is Outcome.ABSENT


def test_channel_labels():
    assert channel_label(3, aggregated=False) == "String 3"
    assert channel_label(2, aggregated=True) == "MPPT 2 (strings 4, 5, 6)"


# ----------------------------------------------------------------------
# STRING_DOWN
# ----------------------------------------------------------------------

def test_string_down_debounces_then_opens_single_alarm():
    engine = _engine()
    cfg = entity(channels=(1, 2))
    key = _key(RuleType.STRING_DOWN, "String 2")

    state = _run(engine, cfg, [[15.0, 0.3]])
    assert state.count(key) == 1
    assert state.opened == []

    state = _run(engine, cfg, [[15.0, 0.3]], state=state)
    assert state.count(key) == 2
    assert [a.key for a in state.opened] == [key]
    assert state.opened[0].severity is Severity.HIGH
    assert key in state.still_detected

    state = _run(engine, cfg, [[15.0, 0.3]], state=state)
    assert len(state.opened) == 1
    assert key in state.still_detected


def test_string_down_resets_on_recovery():
    log = RecordingLog()
    engine = _engine(log)
    cfg = entity(channels=(1, 2))
    key = _key(RuleType.STRING_DOWN, "String 2")

    state = _run(engine, cfg, [[15.0, 0.3], [15.0, 0.3], [15.0, 2.0]])

    assert state.count(key) == 0
    assert key not in state.still_detected
    assert key in state.counter_deletes()
    assert any("counter reset" in m for m in log.messages("info"))


def test_low_light_holds_counter_and_alarm():
    engine = _engine()
    cfg = entity(channels=(1, 2))
    key = _key(RuleType.STRING_DOWN, "String 2")

    state = _run(engine, cfg, [[15.0, 0.3], [15.0, 0.3]])
    assert key in state.open_alarms

    state = _run(engine, cfg, [[5.0, 0.0]], state=state)
    assert state.count(key) == 2
    assert key in state.still_detected


def test_hold_at_floor_keeps_partial_counter():
    engine = _engine()
    cfg = entity(channels=(1, 2))
    key = _key(RuleType.STRING_DOWN, "String 2")

    state = _run(engine, cfg, [[15.0, 0.3], [8.0, 0.0], [15.0, 0.3]])
    assert state.count(key) == 2
    assert len(state.opened) == 1


def test_inactive_channel_is_never_evaluated():
    engine = _engine()
    cfg = entity(channels=(1,))
    state = _run(engine, cfg, [[15.0, 0.0], [15.0, 0.0], [15.0, 0.0]])
    assert state.opened == []
    assert state.counters == {}


def test_missing_reading_holds_channel_and_warns():
    log = RecordingLog()
    engine = _engine(log)
    cfg = entity(channels=(1, 2, 3))
    key = _key(RuleType.STRING_DOWN, "String 3")

    state = _run(engine, cfg, [[15.0, 14.0, 0.2], [15.0, 14.0, 0.2]])
    assert key in state.open_alarms

    state = _run(engine, cfg, [[15.0, 14.0]], state=state)
    assert key in state.still_detected
    assert state.count(key) == 2
    assert any("No reading for channel 3" in m for m in log.messages("warning"))


def test_offline_snapshot_holds_current_rules():
    engine = _engine()
    cfg = entity(channels=(1, 2))
    key = _key(RuleType.STRING_DOWN, "String 2")

    state = _run(engine, cfg, [[15.0, 0.3], [15.0, 0.3]])
    state = _run(engine, cfg, [[0.0, 0.0]], state=state, offline=True)

    assert key in state.still_detected
    assert state.count(key) == 2


def test_open_alarm_below_confirm_count_stays_detected():
    engine = _engine()
    cfg = entity(channels=(1, 2))
    key = _key(RuleType.STRING_DOWN, "String 2")
    existing = Alarm(key=key, severity=Severity.HIGH, message="x", triggered_at=cycle_time(0), alarm_id=7)
    state = CycleState.load([existing], {})

    state = _run(engine, cfg, [[15.0, 0.3]], state=state)

    assert key in state.still_detected
    assert state.opened == []


# ----------------------------------------------------------------------
# Aggregated MPPT
# ----------------------------------------------------------------------

def test_mppt_two_down_confirms_after_four_cycles():
    engine = _engine()
    cfg = entity(channels=(1, 2), grouping=Grouping.ALL_3P)
    two = _key(RuleType.MPPT_TWO_STRINGS_DOWN, "MPPT 2 (strings 4, 5, 6)")

    state = _run(engine, cfg, [[20.0, 8.0]] * 3)
    assert state.opened == []
    assert state.count(two) == 3

    state = _run(engine, cfg, [[20.0, 8.0]], state=state)
    assert [a.key for a in state.opened] == [two]
    assert state.opened[0].severity is Severity.HIGH


def test_mppt_two_down_resets_accruing_one_down_counter():
    engine = _engine()
    cfg = entity(channels=(1, 2), grouping=Grouping.ALL_3P)
    label = "MPPT 2 (strings 4, 5, 6)"
    two = _key(RuleType.MPPT_TWO_STRINGS_DOWN, label)
    one = _key(RuleType.MPPT_ONE_STRING_DOWN, label)

    # 60% of peak: one string down, accruing
    state = _run(engine, cfg, [[20.0, 12.0]] * 2)
    assert state.count(one) == 2
    assert state.count(two) == 0

    # 40% of peak: a second string went down
    state = _run(engine, cfg, [[20.0, 8.0]], state=state)
    assert state.count(one) == 0
    assert one in state.counter_deletes()
    assert state.count(two) == 1
    assert state.opened == []


def test_mppt_one_down_is_medium():
    engine = _engine()
    cfg = entity(channels=(1, 2), vendor_kind="aggregated")
    state = _run(engine, cfg, [[20.0, 12.0]] * 4, vendor_kind="aggregated")
    assert len(state.opened) == 1
    assert state.opened[0].key.rule_type is RuleType.MPPT_ONE_STRING_DOWN
    assert state.opened[0].severity is Severity.MEDIUM


def test_aggregated_inverter_skips_half_string():
    engine = _engine()
    cfg = entity(channels=(1, 2), grouping=Grouping.ALL_3P)
    state = _run(engine, cfg, [[14.0, 7.0]] * 4)
    assert all(k.rule_type is not RuleType.HALF_STRING_WORKING for k in state.counters)


# ----------------------------------------------------------------------
# Half string
# ----------------------------------------------------------------------

def test_half_string_confirms_after_four_cycles():
    engine = _engine()
    cfg = entity(channels=(1, 2), grouping=Grouping.ALL_2P)
    key = _key(RuleType.HALF_STRING_WORKING, "String 2")

    state = _run(engine, cfg, [[14.0, 7.0]] * 3)
    assert state.opened == []

    state = _run(engine, cfg, [[14.0, 7.0]], state=state)
    assert [a.key for a in state.opened] == [key]
    assert state.opened[0].severity is Severity.MEDIUM


def test_half_string_only_on_eligible_channels():
    engine = _engine()
    # MIXED_4S_4_2P: only channels 5..8 are parallel pairs
    cfg = entity(channels=(1, 2, 5, 6), grouping=Grouping.MIXED_4S_4_2P)
    state = _run(engine, cfg, [[14.0, 7.0, 0.0, 0.0, 14.0, 7.0]] * 4)

    half = [a.key.detail for a in state.opened if a.key.rule_type is RuleType.HALF_STRING_WORKING]
    assert half == ["String 6"]


def test_half_string_disabled_for_single_strings():
    engine = _engine()
    cfg = entity(channels=(1, 2), grouping=Grouping.ALL_1S)
    state = _run(engine, cfg, [[14.0, 7.0]] * 5)
    assert state.opened == []


def test_string_down_and_half_string_are_independent_keys():
    engine = _engine()
    cfg = entity(channels=(1, 2, 3), grouping=Grouping.ALL_2P)
    state = _run(engine, cfg, [[14.0, 7.0, 0.1]] * 4)

    kinds = {(a.key.rule_type, a.key.detail) for a in state.opened}
    assert (RuleType.STRING_DOWN, "String 3") in kinds
    assert (RuleType.HALF_STRING_WORKING, "String 2") in kinds


# ----------------------------------------------------------------------
# Offline
# ----------------------------------------------------------------------

def test_offline_opens_critical_alarm_immediately():
    engine = _engine()
    state = CycleState()
    outcome = engine.evaluate_offline("P1", "INV-1", offline=True, in_grace=False, state=state, now=cycle_time(0))

    assert outcome is Outcome.DETECTED
    assert len(state.opened) == 1
    assert state.opened[0].key == DetectionKey("P1", "INV-1", RuleType.INVERTER_OFFLINE, OFFLINE_DETAIL)
    assert state.opened[0].severity is Severity.CRITICAL


def test_offline_in_grace_does_not_open_but_keeps_existing():
    engine = _engine()
    key = DetectionKey("P1", "INV-1", RuleType.INVERTER_OFFLINE, OFFLINE_DETAIL)

    state = CycleState()
    assert engine.evaluate_offline("P1", "INV-1", offline=True, in_grace=True, state=state, now=cycle_time(0)) is Outcome.HOLD
    assert state.opened == []

    existing = Alarm(key=key, severity=Severity.CRITICAL, message="x", triggered_at=cycle_time(0), alarm_id=3)
    state = CycleState.load([existing], {})
    engine.evaluate_offline("P1", "INV-1", offline=True, in_grace=True, state=state, now=cycle_time(1))
    assert key in state.still_detected


def test_counter_state_loads_from_store_shape():
    engine = _engine()
    cfg = entity(channels=(1, 2))
    key = _key(RuleType.STRING_DOWN, "String 2")
    state = CycleState.load([], {key: CounterEntry(count=1, last_detected_at=cycle_time(0))})

    state = _run(engine, cfg, [[15.0, 0.3]], state=state)
    assert [a.key for a in state.opened] == [key]
