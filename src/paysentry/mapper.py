"""
Maps x402 payment payloads and requirements onto Transactions.

Payloads and requirements are the plain JSON dicts exchanged with the
facilitator (camelCase keys, amounts as base-unit integer strings).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional

from .money import DEFAULT_TOKEN_DECIMALS, NATIVE_TOKEN_DECIMALS, base_units_to_amount
from .transaction import Transaction, create_transaction

logger = logging.getLogger(__name__)

UNKNOWN_AGENT = "unknown-agent"
UNKNOWN_RECIPIENT = "unknown-recipient"
DEFAULT_CURRENCY = "USDC"

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

AgentResolver = Callable[[str], str]
DecimalsResolver = Callable[[Mapping[str, Any]], int]


@dataclass
class MapperConfig:
    default_agent_id: Optional[str] = None
    default_currency: Optional[str] = None
    resolve_agent_id: Optional[AgentResolver] = None
    decimals_resolver: Optional[DecimalsResolver] = None


def normalize_payer(value: str) -> str:
    """Lower-case EVM addresses; leave other identifiers untouched."""
    candidate = value.strip()
    if candidate.startswith("0X"):
        candidate = "0x" + candidate[2:]
    if _ADDRESS_RE.match(candidate):
        return "0x" + candidate[2:].lower()
    return candidate


def extract_payer(payload: Mapping[str, Any]) -> Optional[str]:
    for key in ("payer", "from"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return normalize_payer(value)
    return None


def extract_agent(payload: Mapping[str, Any], config: MapperConfig) -> str:
    """Custom resolver, then payer address, then configured default."""
    payer = extract_payer(payload)
    if payer and config.resolve_agent_id is not None:
        try:
            resolved = config.resolve_agent_id(payer)
            if resolved:
                return resolved
        except Exception:
            logger.warning("resolve_agent_id failed for %s; using fallback", payer, exc_info=True)
    if payer:
        return payer
    return config.default_agent_id or UNKNOWN_AGENT


def infer_decimals(requirements: Mapping[str, Any]) -> int:
    extra = requirements.get("extra")
    if isinstance(extra, Mapping) and extra.get("decimals") is not None:
        try:
            return int(extra["decimals"])
        except (TypeError, ValueError):
            logger.warning("Ignoring non-integer extra.decimals: %r", extra["decimals"])
    scheme = str(requirements.get("scheme") or "").lower()
    if "eth" in scheme:
        return NATIVE_TOKEN_DECIMALS
    return DEFAULT_TOKEN_DECIMALS


def infer_currency(scheme: Optional[str]) -> Optional[str]:
    normalized = (scheme or "").lower()
    if "usdc" in normalized:
        return "USDC"
    if "usdt" in normalized:
        return "USDT"
    if "eth" in normalized:
        return "ETH"
    if "dai" in normalized:
        return "DAI"
    return None


def extract_amount(requirements: Mapping[str, Any], config: Optional[MapperConfig] = None) -> Decimal:
    resolver = (config.decimals_resolver if config else None) or infer_decimals
    return base_units_to_amount(requirements.get("maxAmountRequired"), resolver(requirements))


def extract_recipient(requirements: Mapping[str, Any]) -> str:
    return requirements.get("payTo") or UNKNOWN_RECIPIENT


def map_to_transaction(
    payload: Mapping[str, Any],
    requirements: Mapping[str, Any],
    config: Optional[MapperConfig] = None,
    now: Optional[float] = None,
) -> Transaction:
    """Build a pending Transaction for one payment attempt."""
    config = config or MapperConfig()
    recipient = extract_recipient(requirements)
    currency = config.default_currency or infer_currency(requirements.get("scheme")) or DEFAULT_CURRENCY

    return create_transaction(
        agent_id=extract_agent(payload, config),
        recipient=recipient,
        amount=extract_amount(requirements, config),
        currency=currency,
        purpose=requirements.get("description") or f"x402 payment to {recipient}",
        protocol="x402",
        metadata={
            "x402Version": payload.get("x402Version"),
            "scheme": payload.get("scheme") or requirements.get("scheme"),
            "network": payload.get("network") or requirements.get("network"),
            "resource": payload.get("resource") or requirements.get("resource"),
            "maxAmountRequired": requirements.get("maxAmountRequired"),
        },
        now=now,
    )


def fingerprint(payload: Mapping[str, Any], requirements: Mapping[str, Any]) -> str:
    """Key correlating the verify and settle stages of one payment attempt.

    Two attempts from the same payer to the same recipient for the same
    amount share a key; callers needing stronger separation should include
    a nonce in the payer field.
    """
    payer = extract_payer(payload) or "unknown"
    pay_to = requirements.get("payTo") or "unknown"
    amount = requirements.get("maxAmountRequired") or "0"
    return f"x402:{payer}:{pay_to}:{amount}"
