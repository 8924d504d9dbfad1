"""Tests for CLI entry point."""

import json

import pytest

from ryvie_storage import ryvie_storage
from ryvie_storage.topology import (
    FINDMNT_ROOT_COMMAND,
    LSBLK_SIZES_COMMAND,
    LSBLK_TREE_COMMAND,
    CommandOutput,
    TopologyEnvironment,
)

GB = 1000 ** 3

TREE = {
    "blockdevices": [
        {
            "name": "sda",
            "kname": "sda",
            "size": 500 * GB,
            "type": "disk",
            "children": [
                {"name": "sda1", "kname": "sda1", "size": 500 * GB, "type": "part", "fstype": "ext4", "mountpoint": "/"}
            ],
        },
        {"name": "sdb", "kname": "sdb", "size": 1000 * GB, "type": "disk"},
        {"name": "sdc", "kname": "sdc", "size": 1005 * GB, "type": "disk"},
    ]
}

SIZES = {
    "blockdevices": [
        {"name": "sda", "kname": "sda", "size": 500 * GB, "type": "disk"},
        {"name": "sdb", "kname": "sdb", "size": 1000 * GB, "type": "disk"},
        {"name": "sdc", "kname": "sdc", "size": 1005 * GB, "type": "disk"},
        {"name": "sdd", "kname": "sdd", "size": 998 * GB, "type": "disk"},
    ]
}


@pytest.fixture
def commands(monkeypatch):
    """Replace external commands with canned outputs and record invocations."""

    outputs = {
        LSBLK_TREE_COMMAND: CommandOutput(stdout=json.dumps(TREE)),
        FINDMNT_ROOT_COMMAND: CommandOutput(stdout="/dev/sda1\n"),
        LSBLK_SIZES_COMMAND: CommandOutput(stdout=json.dumps(SIZES)),
    }
    calls = []

    def fake_run(cmd):
        calls.append(tuple(cmd))
        return outputs[tuple(cmd)]

    monkeypatch.setattr(TopologyEnvironment, "_default_run", staticmethod(fake_run))
    return outputs, calls


def run_cli(capsys, argv):
    ryvie_storage.main(argv)
    out = capsys.readouterr().out
    assert out.endswith("\n")
    assert len(out.splitlines()) == 1
    return json.loads(out)


def test_scan_lists_disks(capsys, commands):
    response = run_cli(capsys, ["scan"])
    assert response["ok"] is True
    assert response["command"] == "scan"
    assert "args" not in response
    disks = {disk["id"]: disk for disk in response["disks"]}
    assert list(disks) == ["/dev/sda", "/dev/sdb", "/dev/sdc"]
    assert disks["/dev/sda"]["isSystem"] is True
    assert disks["/dev/sda"]["mountpoint"] == "/"
    assert disks["/dev/sdb"]["isSystem"] is False
    assert disks["/dev/sdb"]["health"] == "unknown"


def test_scan_echoes_args(capsys, commands):
    response = run_cli(capsys, ["scan", "--json", '{"requestId": "42"}'])
    assert response["ok"] is True
    assert response["args"] == {"requestId": "42"}


def test_scan_reports_lsblk_failure(capsys, commands):
    outputs, _ = commands
    outputs[LSBLK_TREE_COMMAND] = CommandOutput(stdout="", returncode=1, stderr="boom")
    response = run_cli(capsys, ["scan"])
    assert response == {"ok": False, "error": "lsblk_failed", "command": "scan", "detail": "boom"}


def test_scan_reports_parse_failure(capsys, commands):
    outputs, _ = commands
    outputs[LSBLK_TREE_COMMAND] = CommandOutput(stdout="{")
    response = run_cli(capsys, ["scan"])
    assert response["ok"] is False
    assert response["error"] == "parse_failed"
    assert response["detail"]


def test_proposal_success(capsys, commands):
    response = run_cli(
        capsys, ["proposal", "--json", '{"diskIds": ["/dev/sdb", "/dev/sdc", "/dev/sdd"]}']
    )
    assert response["ok"] is True
    assert response["command"] == "proposal"
    assert response["selectedDisks"] == ["/dev/sdb", "/dev/sdc", "/dev/sdd"]
    assert response["suggested"] == "raid5"
    assert response["capacityBytes"] == 2 * 998 * GB
    assert response["faultTolerance"] == 1
    assert [stage["stage"] for stage in response["planPreview"]] == [
        "partition",
        "mdadm",
        "persist",
        "lvm",
        "format",
        "mount",
    ]


def test_proposal_only_queries_sizes(capsys, commands):
    _, calls = commands
    run_cli(capsys, ["proposal", "--json", '{"diskIds": ["/dev/sda", "/dev/sdb"]}'])
    assert calls == [LSBLK_SIZES_COMMAND]


@pytest.mark.parametrize(
    ("payload", "error"),
    [
        ("{}", "missing_diskIds"),
        ('{"diskIds": "/dev/sda"}', "invalid_diskIds"),
        ('{"diskIds": ["/dev/sda"]}', "need_at_least_two_disks"),
        ('{"diskIds": ["/dev/sda", "/dev/sdx"]}', "unknown_disks_in_selection"),
    ],
)
def test_proposal_errors(capsys, commands, payload, error):
    response = run_cli(capsys, ["proposal", "--json", payload])
    assert response["ok"] is False
    assert response["error"] == error
    assert response["command"] == "proposal"
    assert "planPreview" not in response


@pytest.mark.parametrize("command", ryvie_storage.STUB_COMMANDS)
def test_stub_commands_echo_args(capsys, commands, command):
    payload = '{"diskIds": ["/dev/sdb"], "nested": {"html": "<b>&</b>", "text": "café"}}'
    ryvie_storage.main([command, "--json", payload])
    out = capsys.readouterr().out
    response = json.loads(out)
    assert response["ok"] is False
    assert response["error"] == "not_implemented"
    assert response["command"] == command
    assert response["args"] == json.loads(payload)
    assert response["note"]
    assert '"args":{"diskIds":["/dev/sdb"],"nested":{"html":"<b>&</b>","text":"café"}}' in out
    _, calls = commands
    assert calls == []


def test_unknown_command(capsys, commands):
    response = run_cli(capsys, ["explode"])
    assert response["ok"] is False
    assert response["error"] == "unknown_command"
    assert response["command"] == "explode"
    assert response["args"] == {"requested": "explode"}


def test_malformed_payload_on_stub(capsys, commands):
    response = run_cli(capsys, ["status", "--json", "{not json"])
    assert response["error"] == "not_implemented"
    assert "parse_error" in response["args"]


def test_malformed_payload_on_scan(capsys, commands):
    response = run_cli(capsys, ["scan", "--json", "[1, 2]"])
    assert response["ok"] is False
    assert response["error"] == "parse_error"
    assert response["args"]["parse_error"] == response["detail"]
    _, calls = commands
    assert calls == []


def test_empty_payload_defaults_to_object(capsys, commands):
    response = run_cli(capsys, ["proposal", "--json", ""])
    assert response["error"] == "missing_diskIds"


def test_bare_json_flag_means_empty_object(capsys, commands):
    response = run_cli(capsys, ["status", "--json"])
    assert response == {
        "ok": False,
        "error": "not_implemented",
        "command": "status",
        "note": ryvie_storage.NOT_IMPLEMENTED_NOTE,
    }


def test_bare_json_flag_on_proposal(capsys, commands):
    response = run_cli(capsys, ["proposal", "--json"])
    assert response["error"] == "missing_diskIds"


def test_unknown_flags_are_ignored(capsys, commands):
    response = run_cli(capsys, ["status", "--verbose"])
    assert response["error"] == "not_implemented"


def test_missing_command_exits_with_usage(capsys):
    with pytest.raises(SystemExit) as excinfo:
        ryvie_storage.main([])
    assert excinfo.value.code != 0
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "usage" in captured.err
