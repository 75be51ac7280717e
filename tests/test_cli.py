"""Tests for the tandem command line."""

import json
import stat

import pytest
from click.testing import CliRunner

from tandem import __version__
from tandem.audit import AUDIT_KEY_ENV
from tandem.cli import main
from tandem.signing import load_merchant_key


@pytest.fixture
def private_audit(tmp_path, monkeypatch):
    monkeypatch.setenv(AUDIT_KEY_ENV, "cli-test-key")
    monkeypatch.setattr("tandem.audit.DEFAULT_AUDIT_KEY_PATH", tmp_path / "secrets" / "audit_hmac.key")
    return tmp_path / "audit.jsonl"


def test_version():
    result = CliRunner().invoke(main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_demo_completes_purchase():
    result = CliRunner().invoke(main, ["demo"])

    assert result.exit_code == 0, result.output
    assert "🛒 cart_" in result.output
    assert "Total: $93.49" in result.output
    assert "American Express ending in 4444" in result.output
    assert "✅ Payment complete: txn_" in result.output


def test_demo_wrong_challenge_code_fails():
    result = CliRunner().invoke(main, ["demo", "--challenge-code", "000"])

    assert result.exit_code == 1
    assert "❌ Payment input-required: Challenge response incorrect." in result.output


def test_demo_writes_audit_trail_then_audit_reads_it(private_audit):
    runner = CliRunner()
    result = runner.invoke(main, ["demo", "--audit-path", str(private_audit)])
    assert result.exit_code == 0, result.output

    shown = runner.invoke(main, ["audit", "--path", str(private_audit), "--type", "payment_completed"])
    assert shown.exit_code == 0, shown.output
    assert "payment_completed [Generic Merchant]" in shown.output
    assert "payment_completed [merchant_payment_processor_agent]" in shown.output


def test_audit_reports_broken_chain(private_audit):
    runner = CliRunner()
    runner.invoke(main, ["demo", "--audit-path", str(private_audit)])

    lines = private_audit.read_text().splitlines()
    first = json.loads(lines[0])
    first["agent"] = "someone else"
    lines[0] = json.dumps(first, separators=(",", ":"))
    private_audit.write_text("\n".join(lines) + "\n")

    result = runner.invoke(main, ["audit", "--path", str(private_audit)])
    assert result.exit_code == 1
    assert "Audit chain broken" in result.output


def test_audit_empty(private_audit):
    result = CliRunner().invoke(main, ["audit", "--path", str(private_audit)])
    assert result.exit_code == 0
    assert "No audit events found." in result.output


def test_keygen_writes_private_key(tmp_path):
    out = tmp_path / "keys" / "merchant.pem"
    result = CliRunner().invoke(main, ["keygen", "--out", str(out)])

    assert result.exit_code == 0, result.output
    assert "BEGIN PUBLIC KEY" in result.output
    assert stat.S_IMODE(out.stat().st_mode) == 0o600
    load_merchant_key(out.read_bytes())


def test_keygen_refuses_to_overwrite(tmp_path):
    out = tmp_path / "merchant.pem"
    runner = CliRunner()
    runner.invoke(main, ["keygen", "--out", str(out)])
    original = out.read_bytes()

    refused = runner.invoke(main, ["keygen", "--out", str(out)])
    assert refused.exit_code == 1
    assert "already exists" in refused.output
    assert out.read_bytes() == original

    forced = runner.invoke(main, ["keygen", "--out", str(out), "--force"])
    assert forced.exit_code == 0
    assert out.read_bytes() != original


def test_config_prints_resolved_values(tmp_path, monkeypatch):
    monkeypatch.delenv("TANDEM_CONFIG", raising=False)
    monkeypatch.setenv("TANDEM_MERCHANT_PORT", "9101")
    path = tmp_path / "tandem.json"
    path.write_text(json.dumps({"merchant": {"name": "Shoe Shop"}}))

    result = CliRunner().invoke(main, ["config", "--role", "merchant", "--config", str(path)])
    assert result.exit_code == 0, result.output
    data = json.loads(result.output)
    assert data["name"] == "Shoe Shop"
    assert data["port"] == 9101


def test_config_error(tmp_path, monkeypatch):
    monkeypatch.delenv("TANDEM_CONFIG", raising=False)
    result = CliRunner().invoke(main, ["config", "--role", "merchant", "--config", str(tmp_path / "nope.json")])
    assert result.exit_code == 1
    assert "Config file not found" in result.output
