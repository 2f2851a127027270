"""Tests for x402 payload mapping."""

from decimal import Decimal

from paysentry.mapper import (
    MapperConfig,
    extract_agent,
    fingerprint,
    infer_currency,
    infer_decimals,
    map_to_transaction,
)
from paysentry.transaction import TransactionStatus

PAYER = "0xAbCdEf0123456789abcdef0123456789ABCDEF01"
PAY_TO = "0x1234567890123456789012345678901234567890"


def _payload(**kwargs):
    data = {"x402Version": 1, "scheme": "exact", "network": "base-sepolia", "payload": "opaque", "resource": "/r"}
    data.update(kwargs)
    return data


def _requirements(**kwargs):
    data = {
        "scheme": "exact",
        "network": "base-sepolia",
        "maxAmountRequired": "1500000",
        "resource": "https://api.example.com/data",
        "payTo": PAY_TO,
    }
    data.update(kwargs)
    return data


class TestAgentResolution:
    def test_payer_is_lowercased(self):
        assert extract_agent(_payload(payer=PAYER), MapperConfig()) == PAYER.lower()

    def test_from_field_used_when_no_payer(self):
        assert extract_agent(_payload(**{"from": "agent-x"}), MapperConfig()) == "agent-x"

    def test_custom_resolver_wins(self):
        config = MapperConfig(resolve_agent_id=lambda payer: f"agent:{payer[:4]}")
        assert extract_agent(_payload(payer=PAYER), config) == "agent:0xab"

    def test_failing_resolver_falls_back_to_payer(self, caplog):
        def broken(payer):
            raise LookupError("directory offline")

        config = MapperConfig(resolve_agent_id=broken)
        assert extract_agent(_payload(payer=PAYER), config) == PAYER.lower()
        assert "resolve_agent_id failed" in caplog.text

    def test_default_then_unknown(self):
        assert extract_agent(_payload(), MapperConfig(default_agent_id="fallback")) == "fallback"
        assert extract_agent(_payload(), MapperConfig()) == "unknown-agent"


class TestAmountAndCurrency:
    def test_usdc_uses_six_decimals(self):
        tx = map_to_transaction(_payload(payer=PAYER), _requirements())
        assert tx.amount == Decimal("1.5")
        assert tx.currency == "USDC"

    def test_eth_schemes_use_eighteen_decimals(self):
        assert infer_decimals({"scheme": "exact-eth"}) == 18
        assert infer_decimals({"scheme": "ether"}) == 18
        assert infer_decimals({"scheme": "exact"}) == 6

    def test_explicit_decimals_in_extra(self):
        assert infer_decimals({"scheme": "exact", "extra": {"decimals": 2}}) == 2

    def test_pluggable_decimals_resolver(self):
        config = MapperConfig(decimals_resolver=lambda req: 0)
        tx = map_to_transaction(_payload(), _requirements(maxAmountRequired="7"), config)
        assert tx.amount == Decimal("7")

    def test_invalid_amount_maps_to_zero(self):
        tx = map_to_transaction(_payload(), _requirements(maxAmountRequired="lots"))
        assert tx.amount == Decimal("0")

    def test_currency_inference_and_default(self):
        assert infer_currency("usdt-exact") == "USDT"
        assert infer_currency("dai") == "DAI"
        assert infer_currency("exact") is None
        tx = map_to_transaction(_payload(), _requirements(), MapperConfig(default_currency="USD"))
        assert tx.currency == "USD"


class TestMapping:
    def test_transaction_fields(self):
        tx = map_to_transaction(_payload(payer=PAYER), _requirements(description="Weather data"), now=10.0)
        assert tx.status is TransactionStatus.PENDING
        assert tx.recipient == PAY_TO
        assert tx.purpose == "Weather data"
        assert tx.protocol == "x402"
        assert tx.created_at == 10.0
        assert tx.metadata == {
            "x402Version": 1,
            "scheme": "exact",
            "network": "base-sepolia",
            "resource": "/r",
            "maxAmountRequired": "1500000",
        }

    def test_missing_pay_to(self):
        requirements = _requirements()
        del requirements["payTo"]
        tx = map_to_transaction(_payload(), requirements)
        assert tx.recipient == "unknown-recipient"
        assert tx.purpose == "x402 payment to unknown-recipient"

    def test_fingerprint(self):
        assert fingerprint(_payload(payer=PAYER), _requirements()) == f"x402:{PAYER.lower()}:{PAY_TO}:1500000"
        assert fingerprint(_payload(), {}) == "x402:unknown:unknown:0"
