"""Tests for the transaction entity and factory."""

from decimal import Decimal

import pytest

from paysentry.errors import InvalidTransitionError
from paysentry.transaction import TransactionStatus, create_transaction


class TestCreateTransaction:
    def test_new_transaction_is_pending_with_unique_id(self):
        a = create_transaction("agent-1", "0xabc", "12.50", "USDC")
        b = create_transaction("agent-1", "0xabc", "12.50", "USDC")
        assert a.status is TransactionStatus.PENDING
        assert a.id.startswith("tx_")
        assert a.id != b.id
        assert a.amount == Decimal("12.50")

    def test_float_amount_has_no_binary_artefacts(self):
        tx = create_transaction("agent-1", "0xabc", 0.1, "USDC")
        assert tx.amount == Decimal("0.1")

    def test_timestamps_default_to_now_argument(self):
        tx = create_transaction("agent-1", "0xabc", 1, "USDC", now=1000.0)
        assert tx.created_at == 1000.0
        assert tx.updated_at == 1000.0

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"amount": "-1"},
            {"amount": "abc"},
            {"agent_id": ""},
            {"recipient": ""},
            {"currency": ""},
        ],
    )
    def test_rejects_invalid_input(self, kwargs):
        args = dict(agent_id="agent-1", recipient="0xabc", amount="1", currency="USDC")
        args.update(kwargs)
        with pytest.raises(ValueError):
            create_transaction(**args)

    def test_zero_amount_is_allowed(self):
        assert create_transaction("agent-1", "0xabc", 0, "USDC").amount == Decimal("0")


class TestTransition:
    def test_pending_to_completed_sets_reference(self):
        tx = create_transaction("agent-1", "0xabc", 1, "USDC", now=1.0)
        tx.transition(TransactionStatus.COMPLETED, protocol_tx_id="0xhash", now=2.0)
        assert tx.status is TransactionStatus.COMPLETED
        assert tx.protocol_tx_id == "0xhash"
        assert tx.updated_at == 2.0

    def test_terminal_to_different_status_raises(self):
        tx = create_transaction("agent-1", "0xabc", 1, "USDC")
        tx.transition(TransactionStatus.FAILED)
        with pytest.raises(InvalidTransitionError):
            tx.transition(TransactionStatus.COMPLETED)
        assert tx.status is TransactionStatus.FAILED

    def test_terminal_to_same_status_only_refreshes(self):
        tx = create_transaction("agent-1", "0xabc", 1, "USDC")
        tx.transition(TransactionStatus.COMPLETED, now=5.0)
        tx.transition(TransactionStatus.COMPLETED, protocol_tx_id="0xlate", now=9.0)
        assert tx.protocol_tx_id == "0xlate"
        assert tx.updated_at == 9.0

    def test_accepts_string_status(self):
        tx = create_transaction("agent-1", "0xabc", 1, "USDC")
        tx.transition("rejected")
        assert tx.status is TransactionStatus.REJECTED

    def test_to_dict_serializes_amount_as_string(self):
        tx = create_transaction("agent-1", "0xabc", "3.25", "USD", metadata={"k": "v"})
        d = tx.to_dict()
        assert d["amount"] == "3.25"
        assert d["status"] == "pending"
        assert d["metadata"] == {"k": "v"}
