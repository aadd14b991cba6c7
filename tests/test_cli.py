import json

import pytest

from parcelfi import __version__
from parcelfi.settlement.cli import CLIError, LendingCLI, OutputFormat, format_output


def _run(capsys, *args):
    code = LendingCLI().run(list(args))
    captured = capsys.readouterr()
    return code, captured.out, captured.err


def test_no_command_prints_help(capsys):
    code, out, _ = _run(capsys)
    assert code == 0
    assert "usage: parcelfi" in out


def test_version(capsys):
    with pytest.raises(SystemExit) as exc_info:
        LendingCLI().run(["--version"])
    assert exc_info.value.code == 0
    assert __version__ in capsys.readouterr().out


def test_config_get(capsys):
    code, out, _ = _run(capsys, "config", "get", "settlement.max_retries")
    assert code == 0
    assert json.loads(out) == {"path": "settlement.max_retries", "value": 20}


def test_config_get_decimal_is_a_string(capsys):
    code, out, _ = _run(capsys, "config", "get", "settlement.amount_tolerance")
    assert json.loads(out)["value"] == "0.0001"


def test_config_get_unknown_path(capsys):
    code, _, err = _run(capsys, "config", "get", "settlement.nope")
    assert code == 2
    assert "Invalid config path" in err


def test_config_set_invalid_value(capsys):
    code, _, err = _run(capsys, "config", "set", "settlement.max_retries", "0")
    assert code == 2
    assert "Invalid value" in err


def test_config_file_is_loaded(capsys, tmp_path):
    path = tmp_path / "parcelfi.yaml"
    path.write_text("settlement:\n  max_retries: 9\n", encoding="utf-8")
    code, out, _ = _run(capsys, "--config", str(path), "config", "get", "settlement.max_retries")
    assert code == 0
    assert json.loads(out)["value"] == 9


def test_config_validate(capsys, tmp_path):
    code, out, _ = _run(capsys, "config", "validate")
    assert code == 0
    assert json.loads(out) == {"valid": True, "errors": []}

    path = tmp_path / "slow.yaml"
    path.write_text("settlement:\n  max_retries: 100\n  retry_delay_seconds: 2\n", encoding="utf-8")
    code, _, err = _run(capsys, "--config", str(path), "config", "validate")
    assert code == 2
    assert "polling budget" in err


def test_config_show_yaml(capsys):
    code, out, _ = _run(capsys, "--format", "yaml", "config", "show")
    assert code == 0
    assert "max_retries: 20" in out


def test_quote(capsys):
    code, out, _ = _run(
        capsys,
        "quote", "--principal", "10000", "--rate-bps", "850",
        "--funded-at", "2026-01-01T00:00:00Z", "--as-of", "2026-02-15T00:00:00Z",
    )
    assert code == 0
    result = json.loads(out)
    assert result["months_elapsed"] == 1
    assert result["interest"] == "70.83"
    assert result["total"] == "10070.83"


def test_quote_rejects_bad_timestamp(capsys):
    code, _, err = _run(
        capsys, "quote", "--principal", "10000", "--rate-bps", "850", "--funded-at", "yesterday",
    )
    assert code == 2
    assert "--funded-at" in err


def test_quote_rejects_bad_amount(capsys):
    with pytest.raises(SystemExit):
        LendingCLI().run(["quote", "--principal", "lots", "--rate-bps", "850", "--funded-at", "2026-01-01T00:00:00Z"])


def test_demo_express(capsys):
    code, out, _ = _run(capsys, "demo", "--kind", "express", "--principal", "20000")
    assert code == 0
    result = json.loads(out)
    assert result["loan"]["status"] == "repaid"
    assert result["loan"]["lender_id"] == "PLATFORM"
    assert [e["event_type"] for e in result["events"]] == ["loan_opened", "loan_funded", "loan_repaid"]
    assert all(e["mirror"] == "mirrored" for e in result["events"])
    assert [e["sequence_number"] for e in result["events"]] == [1, 2, 3]
    assert result["custody_retries"]["total_attempts"] == 2  # lock + release
    assert result["custody_retries"]["failed_attempts"] == 0


def test_demo_p2p(capsys):
    code, out, _ = _run(capsys, "demo", "--kind", "p2p", "--principal", "20000")
    assert code == 0
    result = json.loads(out)
    assert result["loan"]["lender_id"] == "lender"
    assert result["quote"]["months_elapsed"] == 1


def test_demo_reports_engine_rejections(capsys):
    code, _, err = _run(capsys, "demo", "--kind", "express", "--principal", "90000")
    assert code == 1
    assert "express principal" in err


def test_format_table():
    table = format_output({"events": [{"a": 1, "b": "x"}, {"a": 22, "b": "y"}]}, OutputFormat.TABLE)
    lines = table.splitlines()
    assert lines[0].split("|")[0].strip() == "a"
    assert len(lines) == 4


def test_cli_error_carries_exit_code():
    assert CLIError("bad", exit_code=3).exit_code == 3
