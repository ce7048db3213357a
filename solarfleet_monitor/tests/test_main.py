import json
import logging

import pytest

from solarfleet_monitor.main import main


@pytest.fixture(autouse=True)
def _restore_root_logger():
    root = logging.getLogger()
    orig_handlers = list(root.handlers)
    orig_level = root.level
    yield
    root.handlers.clear()
    root.handlers.extend(orig_handlers)
    root.setLevel(orig_level)


@pytest.fixture
def workspace(tmp_path):
    fleet = tmp_path / "fleet.json"
    fleet.write_text(
        json.dumps([{"plant": "P1", "inverter": "INV-1", "vendor_kind": "growatt", "active_channels": [1, 2]}])
    )
    snapshots = tmp_path / "snapshots.json"
    snapshots.write_text(
        json.dumps([{"plant": "P1", "inverter": "INV-1", "currents": [15.0, 0.2], "offline": False}])
    )
    structured = tmp_path / "cycles.jsonl"
    conf = tmp_path / "solarfleet.conf"
    conf.write_text(
        f"""
[state]
path = {tmp_path / "state.db"}

[fleet]
path = {fleet}

[logging]
structured_enabled = true
structured_path = {structured}
"""
    )
    return {"conf": str(conf), "snapshots": str(snapshots), "structured": structured}


def test_two_cycles_open_alarm_and_list_it(workspace, capsys):
    args = ["--config", workspace["conf"], "--quiet", "run-cycle", "--snapshots", workspace["snapshots"]]
    assert main(args) == 0
    assert main(args) == 0
    capsys.readouterr()

    assert main(["--config", workspace["conf"], "--quiet", "--json", "list-alarms"]) == 0
    listed = json.loads(capsys.readouterr().out)
    assert [(a["rule_type"], a["detail"]) for a in listed] == [("STRING_DOWN", "String 2")]

    entries = [json.loads(line) for line in workspace["structured"].read_text().splitlines()]
    assert len(entries) == 2
    assert entries[0]["opened"] is None
    assert entries[1]["opened"][0]["severity"] == "High"


def test_vendor_event_lifecycle_through_cli(workspace, capsys):
    conf = ["--config", workspace["conf"], "--quiet"]
    assert main(conf + ["open-event", "--plant", "P1", "--inverter", "INV-1", "--detail", "Arc fault"]) == 0
    assert main(conf + ["--json", "list-alarms"]) == 0
    capsys.readouterr()

    # second report of the same event refreshes it
    assert main(conf + ["open-event", "--plant", "P1", "--inverter", "INV-1", "--detail", "Arc fault"]) == 0
    assert main(conf + ["--json", "list-alarms"]) == 0
    [event] = json.loads(capsys.readouterr().out)
    assert event["rule_type"] == "EXTERNAL_VENDOR_EVENT"
    assert event["severity"] == "Critical"

    assert main(conf + ["annotate", str(event["alarm_id"]), "Inspected on site"]) == 0
    assert main(conf + ["clear-alarm", str(event["alarm_id"]), "--by", "ana"]) == 0
    assert main(conf + ["clear-alarm", str(event["alarm_id"])]) == 2

    assert main(conf + ["--json", "list-alarms", "--history"]) == 0
    [past] = json.loads(capsys.readouterr().out)
    assert past["cleared_by"] == "ana"
    assert past["observation"] == "Inspected on site"


def test_vendor_status_and_maintenance(workspace):
    conf = ["--config", workspace["conf"], "--quiet"]
    assert main(conf + ["vendor-status", "--vendor", "growatt", "--error"]) == 0
    assert main(conf + ["vendor-status", "--vendor", "growatt", "--ok"]) == 0
    assert main(conf + ["maintain-db", "--closed-days", "30", "--no-vacuum"]) == 0


def test_bad_input_exits_with_usage_error(workspace, tmp_path):
    conf = ["--config", workspace["conf"], "--quiet"]
    assert main(conf + ["open-event", "--plant", "P1", "--inverter", "INV-1", "--detail", "x", "--severity", "urgent"]) == 2
    assert main(conf + ["run-cycle", "--snapshots", str(tmp_path / "missing.json")]) == 2
