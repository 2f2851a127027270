"""
Transaction entity: the canonical representation of a spend attempt.

Created pending by the factory, moved to a terminal status exactly once.
Once terminal only the settlement reference and updated_at may change.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from .errors import InvalidTransitionError
from .money import ZERO, to_amount


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


@dataclass
class Transaction:
    """A single spend attempt by an agent."""

    id: str
    agent_id: str
    recipient: str
    amount: Decimal
    currency: str
    purpose: str = ""
    protocol: str = "x402"
    metadata: dict[str, Any] = field(default_factory=dict)
    status: TransactionStatus = TransactionStatus.PENDING
    created_at: float = 0.0
    updated_at: float = 0.0
    protocol_tx_id: Optional[str] = None

    def transition(
        self,
        status: TransactionStatus,
        protocol_tx_id: Optional[str] = None,
        now: Optional[float] = None,
    ) -> "Transaction":
        status = TransactionStatus(status)
        if self.status.is_terminal and status is not self.status:
            raise InvalidTransitionError(self.id, self.status.value, status.value)
        self.status = status
        if protocol_tx_id is not None:
            self.protocol_tx_id = protocol_tx_id
        self.updated_at = time.time() if now is None else now
        return self

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "recipient": self.recipient,
            "amount": str(self.amount),
            "currency": self.currency,
            "purpose": self.purpose,
            "protocol": self.protocol,
            "metadata": dict(self.metadata),
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "protocol_tx_id": self.protocol_tx_id,
        }


def new_transaction_id() -> str:
    return f"tx_{uuid.uuid4().hex}"


def create_transaction(
    agent_id: str,
    recipient: str,
    amount: Decimal | float | int | str,
    currency: str,
    purpose: str = "",
    protocol: str = "x402",
    metadata: Optional[dict[str, Any]] = None,
    now: Optional[float] = None,
) -> Transaction:
    """Build a new pending Transaction with a fresh id."""
    value = to_amount(amount)
    if value.is_nan() or value < ZERO:
        raise ValueError(f"Amount must be non-negative, got {amount!r}")
    if not agent_id:
        raise ValueError("agent_id is required")
    if not recipient:
        raise ValueError("recipient is required")
    if not currency:
        raise ValueError("currency is required")

    created = time.time() if now is None else now
    return Transaction(
        id=new_transaction_id(),
        agent_id=agent_id,
        recipient=recipient,
        amount=value,
        currency=currency,
        purpose=purpose,
        protocol=protocol,
        metadata=dict(metadata or {}),
        status=TransactionStatus.PENDING,
        created_at=created,
        updated_at=created,
    )
