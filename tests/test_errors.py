"""Tests for retryability classification and amount helpers."""

from decimal import Decimal

import httpx
import pytest

from paysentry.errors import CircuitOpenError, FacilitatorError, classify_retryability
from paysentry.money import base_units_to_amount, format_amount, to_amount


class TestClassifyRetryability:
    @pytest.mark.parametrize(
        "error",
        [
            ConnectionError("read ECONNRESET"),
            TimeoutError("request timed out"),
            RuntimeError("network unreachable"),
            FacilitatorError(503, "unavailable"),
            FacilitatorError(429, "slow down"),
            CircuitOpenError("fac", 1200),
            httpx.ReadTimeout("read timeout"),
            httpx.ConnectError("refused"),
        ],
    )
    def test_retryable(self, error):
        assert classify_retryability(error) is True

    @pytest.mark.parametrize(
        "error",
        [
            FacilitatorError(401, "unauthorized"),
            FacilitatorError(400, "invalid payload (503 bytes)"),
            FacilitatorError(500, "internal"),
            ValueError("insufficient funds"),
            RuntimeError("signature mismatch"),
        ],
    )
    def test_not_retryable(self, error):
        assert classify_retryability(error) is False


class TestMoney:
    def test_to_amount_avoids_float_artefacts(self):
        assert to_amount(0.1) == Decimal("0.1")
        assert to_amount("45.00") == Decimal("45")

    def test_to_amount_rejects_garbage(self):
        with pytest.raises(ValueError):
            to_amount("forty")

    @pytest.mark.parametrize(
        "raw,decimals,expected",
        [("1500000", 6, "1.5"), ("1", 18, "0.000000000000000001"), (None, 6, "0"), ("abc", 6, "0")],
    )
    def test_base_units(self, raw, decimals, expected):
        assert base_units_to_amount(raw, decimals) == Decimal(expected)

    @pytest.mark.parametrize("raw", ["-1000000", -5, "1.5"])
    def test_negative_or_fractional_base_units_raise(self, raw):
        with pytest.raises(ValueError):
            base_units_to_amount(raw, 6)

    def test_format_amount(self):
        assert format_amount(Decimal("45"), "USD") == "45.00 USD"
