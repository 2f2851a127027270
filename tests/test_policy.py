"""Tests for rule types, budgets and policy loading."""

from decimal import Decimal

import pytest

from paysentry.errors import ConfigError
from paysentry.ledger import BudgetWindow
from paysentry.policy import (
    AllowAll,
    PolicyAction,
    allow_all,
    allow_recipients,
    block_above,
    block_recipients,
    budget,
    flag_above,
    policy_from_dict,
    register_rule_type,
    require_approval_above,
    rule_from_dict,
)
from paysentry.transaction import create_transaction


def _tx(amount, currency="USD", recipient="0xAbC"):
    return create_transaction("agent-1", recipient, amount, currency)


class TestRules:
    def test_threshold_is_strict(self):
        rule = block_above(100, "USD")
        assert not rule.matches(_tx("100"))
        assert rule.matches(_tx("100.01"))

    def test_currency_mismatch_never_matches(self):
        assert not block_above(1, "USD").matches(_tx("1000", currency="EUR"))

    def test_actions(self):
        assert block_above(1, "USD").action is PolicyAction.DENY
        assert require_approval_above(1, "USD").action is PolicyAction.REQUIRE_APPROVAL
        assert flag_above(1, "USD").action is PolicyAction.FLAG
        assert allow_all().action is PolicyAction.ALLOW

    def test_recipient_lists_are_case_insensitive(self):
        assert block_recipients(["0xABC"]).matches(_tx("1", recipient="0xabc"))
        allow = allow_recipients(["0xabc"])
        assert not allow.matches(_tx("1", recipient="0xABC"))
        assert allow.matches(_tx("1", recipient="0xdef"))

    def test_describe_is_human_readable(self):
        assert block_above(100, "USD").describe() == "Block payments above 100.00 USD"

    def test_allowed_only_for_allow_and_flag(self):
        assert PolicyAction.ALLOW.allowed
        assert PolicyAction.FLAG.allowed
        assert not PolicyAction.DENY.allowed
        assert not PolicyAction.REQUIRE_APPROVAL.allowed


class TestLoading:
    def test_policy_from_dict(self):
        policy = policy_from_dict(
            {
                "id": "p1",
                "name": "Default",
                "agents": ["agent-1"],
                "rules": [
                    {"type": "block_above", "threshold": "100", "currency": "USD"},
                    {"type": "require_approval_above", "threshold": 40, "currency": "USD"},
                    {"type": "allow_all"},
                ],
                "budgets": [{"window": "daily", "max_amount": "500", "currency": "USD"}],
            }
        )
        assert policy.id == "p1"
        assert policy.agents == ["agent-1"]
        assert [r.name for r in policy.rules] == ["block_above", "require_approval_above", "allow_all"]
        assert policy.budgets[0].window is BudgetWindow.DAILY
        assert policy.budgets[0].max_amount == Decimal("500")
        assert policy.has_catch_all

    def test_unknown_rule_type_raises(self):
        with pytest.raises(ConfigError, match="Unknown rule type"):
            rule_from_dict({"type": "teleport"})

    def test_missing_field_raises(self):
        with pytest.raises(ConfigError, match="threshold"):
            rule_from_dict({"type": "block_above", "currency": "USD"})

    def test_invalid_budget_window_raises(self):
        with pytest.raises(ConfigError):
            policy_from_dict({"id": "p", "budgets": [{"window": "weekly", "max_amount": 1, "currency": "USD"}]})

    def test_missing_id_raises(self):
        with pytest.raises(ConfigError):
            policy_from_dict({"name": "nameless"})

    def test_register_custom_rule_type(self):
        register_rule_type("always_allow_test", lambda c: AllowAll(name="always_allow_test"))
        rule = rule_from_dict({"type": "always_allow_test"})
        assert rule.name == "always_allow_test"
        assert rule.matches(_tx("1"))

    def test_budget_factory_accepts_strings(self):
        b = budget("hourly", "2.5", "USD")
        assert b.window is BudgetWindow.HOURLY
        assert b.describe() == "hourly budget 2.50 USD"
