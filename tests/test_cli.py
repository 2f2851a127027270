"""CLI command tests."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from paysentry.cli import main
from paysentry.provenance import AUDIT_HMAC_KEY_ENV, ProvenanceOutcome, TransactionProvenance


def _policy_file(tmp_path: Path, rules=None) -> Path:
    path = tmp_path / "policy.json"
    path.write_text(json.dumps({
        "id": "default",
        "name": "Default",
        "rules": rules if rules is not None else [
            {"type": "block_above", "threshold": "100", "currency": "USDC"},
            {"type": "require_approval_above", "threshold": "40", "currency": "USDC"},
            {"type": "allow_all"},
        ],
        "budgets": [{"window": "daily", "max_amount": "500", "currency": "USDC"}],
    }))
    return path


@pytest.fixture(autouse=True)
def _no_env_key(monkeypatch):
    monkeypatch.delenv(AUDIT_HMAC_KEY_ENV, raising=False)


class TestEvaluate:
    def test_allowed_payment_exits_zero(self, tmp_path):
        result = CliRunner().invoke(main, ["evaluate", "--policy", str(_policy_file(tmp_path)), "--amount", "25"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["action"] == "allow"
        assert data["policy_id"] == "default"

    def test_approval_exits_one(self, tmp_path):
        result = CliRunner().invoke(main, ["evaluate", "--policy", str(_policy_file(tmp_path)), "--amount", "45"])
        assert result.exit_code == 1
        data = json.loads(result.output)
        assert data["action"] == "require_approval"
        assert data["triggered_rule"] == "require_approval_above"

    def test_bad_amount_exits_two(self, tmp_path):
        result = CliRunner().invoke(main, ["evaluate", "--policy", str(_policy_file(tmp_path)), "--amount", "-3"])
        assert result.exit_code == 2


class TestChecks:
    def test_policy_check_lists_rules(self, tmp_path):
        result = CliRunner().invoke(main, ["policy", "check", str(_policy_file(tmp_path))])
        assert result.exit_code == 0
        assert "Policy default: Default [all agents]" in result.output
        assert "Require approval above" in result.output
        assert "No allow_all rule" not in result.output

    def test_policy_check_warns_without_catch_all(self, tmp_path):
        path = _policy_file(tmp_path, rules=[{"type": "block_above", "threshold": "100", "currency": "USDC"}])
        result = CliRunner().invoke(main, ["policy", "check", str(path)])
        assert result.exit_code == 0
        assert "No allow_all rule" in result.output

    def test_policy_check_rejects_bad_file(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"rules": []}))
        result = CliRunner().invoke(main, ["policy", "check", str(path)])
        assert result.exit_code == 1
        assert "missing 'id'" in result.output

    def test_alerts_check(self, tmp_path):
        path = tmp_path / "alerts.json"
        path.write_text(json.dumps([{"id": "big", "type": "large_transaction", "threshold": "50"}]))
        result = CliRunner().invoke(main, ["alerts", "check", str(path)])
        assert result.exit_code == 0
        assert "big: large_transaction [warning]" in result.output


class TestAudit:
    def _write_log(self, tmp_path: Path) -> tuple[Path, Path]:
        log = tmp_path / "provenance.jsonl"
        key = tmp_path / "audit_hmac.key"
        provenance = TransactionProvenance(path=log, key_path=key)
        provenance.record_execution("tx_a", ProvenanceOutcome.PASS)
        provenance.record_settlement("tx_a", ProvenanceOutcome.PASS)
        provenance.record_execution("tx_b", ProvenanceOutcome.FAIL)
        return log, key

    def test_prints_verified_records(self, tmp_path):
        log, key = self._write_log(tmp_path)
        result = CliRunner().invoke(main, ["audit", str(log), "--key-file", str(key)])
        assert result.exit_code == 0, result.output
        assert result.output.count("tx_a") == 2
        assert "tx_b execution" in result.output

    def test_filter_by_transaction(self, tmp_path):
        log, key = self._write_log(tmp_path)
        result = CliRunner().invoke(main, ["audit", str(log), "--key-file", str(key), "--tx-id", "tx_missing"])
        assert result.exit_code == 0
        assert "No provenance records found." in result.output

    def test_tampered_log_exits_one(self, tmp_path):
        log, key = self._write_log(tmp_path)
        lines = log.read_text().splitlines()
        record = json.loads(lines[1])
        record["transaction_id"] = "tx_forged"
        lines[1] = json.dumps(record)
        log.write_text("\n".join(lines) + "\n")

        result = CliRunner().invoke(main, ["audit", str(log), "--key-file", str(key)])
        assert result.exit_code == 1
        assert "Audit chain broken" in result.output
