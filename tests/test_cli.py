"""CLI tests using typer's CliRunner (no broker or capture binary needed)."""

from pathlib import Path

import pytest
from typer.testing import CliRunner

from capture_helpers import build_write_frame, encode_global_header, encode_record
from sniff_cli import app

runner = CliRunner()

SAMPLE_MAP = Path(__file__).resolve().parent.parent / "config" / "register-map.yaml"


@pytest.fixture
def bad_map(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("mappings:\n  - register: '1'\n    datatype: uint16\n", encoding="utf-8")
    return path


def test_validate_sample_map():
    result = runner.invoke(app, ["validate", str(SAMPLE_MAP)])
    assert result.exit_code == 0
    assert "entries OK" in result.output


def test_validate_reports_errors(bad_map):
    result = runner.invoke(app, ["validate", str(bad_map)])
    assert result.exit_code == 1
    assert "missing topic" in result.output


def test_replay_prints_values(tmp_path):
    pcap = tmp_path / "capture.pcap"
    pcap.write_bytes(encode_global_header() + encode_record(build_write_frame(1, 40001, [25]), timestamp=1700000000))
    result = runner.invoke(app, ["replay", str(pcap), "--map", str(SAMPLE_MAP)])
    assert result.exit_code == 0
    assert "2.5" in result.output
    assert "1 records" in result.output


def test_replay_framing_error_exit_code(tmp_path):
    pcap = tmp_path / "garbage.pcap"
    pcap.write_bytes(b"\x00" * 64)
    result = runner.invoke(app, ["replay", str(pcap), "--map", str(SAMPLE_MAP)])
    assert result.exit_code == 1


def test_capture_rejects_address_base():
    result = runner.invoke(app, ["capture", "--map", str(SAMPLE_MAP), "--address-base", "3"])
    assert result.exit_code == 2


def test_capture_address_base_from_environment():
    result = runner.invoke(app, ["capture", "--map", str(SAMPLE_MAP)], env={"MODBUS_ADDRESS_BASE": "5"})
    assert result.exit_code == 2


def test_capture_rejects_bad_mqtt_url():
    result = runner.invoke(app, ["capture", "--map", str(SAMPLE_MAP), "--mqtt-url", "http://broker"])
    assert result.exit_code == 2


def test_capture_invalid_map(bad_map):
    result = runner.invoke(app, ["capture", "--map", str(bad_map)])
    assert result.exit_code == 1
    assert "missing topic" in result.output
