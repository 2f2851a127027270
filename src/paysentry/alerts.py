"""
Alert engine: spending anomalies the per-transaction policy view cannot see.

Rule kinds:
- large_transaction: amount above a threshold
- rate_spike: too many transactions from one agent inside a trailing window
- new_recipient: first payment from an agent to a recipient
- budget_threshold: cumulative window spend crosses a fraction of a cap

Evaluation is not deduplicated by transaction id; call evaluate() once per
completed transaction.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional, Union

from .errors import ConfigError
from .ledger import BudgetWindow, SpendLedger
from .money import format_amount, to_amount
from .transaction import Transaction, TransactionStatus

logger = logging.getLogger(__name__)


class AlertType(str, Enum):
    LARGE_TRANSACTION = "large_transaction"
    RATE_SPIKE = "rate_spike"
    NEW_RECIPIENT = "new_recipient"
    BUDGET_THRESHOLD = "budget_threshold"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class LargeTransactionConfig:
    threshold: Decimal
    currency: Optional[str] = None
    type: AlertType = AlertType.LARGE_TRANSACTION


@dataclass(frozen=True)
class RateSpikeConfig:
    max_transactions: int
    window_ms: int = 60_000
    type: AlertType = AlertType.RATE_SPIKE


@dataclass(frozen=True)
class NewRecipientConfig:
    type: AlertType = AlertType.NEW_RECIPIENT


@dataclass(frozen=True)
class BudgetThresholdConfig:
    """alert_at_percent is a fraction of max_amount, e.g. 0.8."""

    window: BudgetWindow
    max_amount: Decimal
    currency: str
    alert_at_percent: float = 0.8
    type: AlertType = AlertType.BUDGET_THRESHOLD


AlertRuleConfig = Union[LargeTransactionConfig, RateSpikeConfig, NewRecipientConfig, BudgetThresholdConfig]


@dataclass
class AlertRule:
    id: str
    name: str
    config: AlertRuleConfig
    severity: AlertSeverity = AlertSeverity.WARNING
    enabled: bool = True

    @property
    def type(self) -> AlertType:
        return self.config.type


@dataclass(frozen=True)
class Alert:
    id: str
    rule_id: str
    type: AlertType
    severity: AlertSeverity
    message: str
    transaction_id: str
    timestamp: float
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "transaction_id": self.transaction_id,
            "timestamp": self.timestamp,
            "details": dict(self.details),
        }


AlertCallback = Callable[[Alert], Any]


class AlertEngine:
    """Evaluates alert rules against the ledger and notifies subscribers."""

    def __init__(
        self,
        ledger: SpendLedger,
        clock: Callable[[], float] = time.time,
        history_size: int = 1000,
    ):
        self._ledger = ledger
        self._clock = clock
        self._history_size = history_size
        self._rules: dict[str, AlertRule] = {}
        self._subscribers: list[AlertCallback] = []
        self._seen_pairs: set[tuple[str, str]] = set()
        self._budget_crossed: set[tuple[str, str]] = set()
        self._history: list[Alert] = []
        self._lock = threading.Lock()

    def add_rule(self, rule: AlertRule) -> None:
        with self._lock:
            self._rules[rule.id] = rule

    def remove_rule(self, rule_id: str) -> bool:
        with self._lock:
            self._budget_crossed = {k for k in self._budget_crossed if k[0] != rule_id}
            return self._rules.pop(rule_id, None) is not None

    def get_rules(self) -> list[AlertRule]:
        with self._lock:
            return list(self._rules.values())

    def on_alert(self, callback: AlertCallback) -> Callable[[], None]:
        """Subscribe to alerts. Returns a function that unsubscribes."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def history(self, limit: Optional[int] = None) -> list[Alert]:
        with self._lock:
            alerts = list(self._history)
        return alerts[-limit:] if limit else alerts

    def evaluate(self, tx: Transaction) -> list[Alert]:
        fired: list[Alert] = []
        for rule in self.get_rules():
            if not rule.enabled:
                continue
            try:
                alert = self._evaluate_rule(rule, tx)
            except Exception:
                logger.exception("Alert rule %s failed on %s", rule.id, tx.id)
                continue
            if alert is not None:
                fired.append(alert)

        if fired:
            with self._lock:
                self._history.extend(fired)
                del self._history[: max(0, len(self._history) - self._history_size)]
            for alert in fired:
                self._notify(alert)
        return fired

    # ── Rule evaluation ───────────────────────────────────────────

    def _evaluate_rule(self, rule: AlertRule, tx: Transaction) -> Optional[Alert]:
        config = rule.config
        if isinstance(config, LargeTransactionConfig):
            return self._large_transaction(rule, config, tx)
        if isinstance(config, RateSpikeConfig):
            return self._rate_spike(rule, config, tx)
        if isinstance(config, NewRecipientConfig):
            return self._new_recipient(rule, tx)
        if isinstance(config, BudgetThresholdConfig):
            return self._budget_threshold(rule, config, tx)
        raise ConfigError(f"Unsupported alert rule config: {type(config).__name__}")

    def _large_transaction(
        self, rule: AlertRule, config: LargeTransactionConfig, tx: Transaction
    ) -> Optional[Alert]:
        if config.currency is not None and tx.currency != config.currency:
            return None
        if tx.amount <= config.threshold:
            return None
        return self._make_alert(
            rule,
            tx,
            f"Large transaction: {format_amount(tx.amount, tx.currency)} to {tx.recipient} "
            f"(threshold {format_amount(config.threshold, tx.currency)})",
            {"amount": str(tx.amount), "threshold": str(config.threshold)},
        )

    def _rate_spike(self, rule: AlertRule, config: RateSpikeConfig, tx: Transaction) -> Optional[Alert]:
        since = self._clock() - config.window_ms / 1000.0
        count = self._ledger.count_since(since, agent_id=tx.agent_id)
        if tx.id not in self._ledger:
            count += 1
        if count <= config.max_transactions:
            return None
        return self._make_alert(
            rule,
            tx,
            f"Rate spike: agent {tx.agent_id} made {count} transactions in "
            f"{config.window_ms / 1000:.0f}s (max {config.max_transactions})",
            {"count": count, "max_transactions": config.max_transactions, "window_ms": config.window_ms},
        )

    def _new_recipient(self, rule: AlertRule, tx: Transaction) -> Optional[Alert]:
        pair = (tx.agent_id, tx.recipient)
        with self._lock:
            if pair in self._seen_pairs:
                return None
            self._seen_pairs.add(pair)
        return self._make_alert(
            rule,
            tx,
            f"New recipient: agent {tx.agent_id} paid {tx.recipient} for the first time",
            {"recipient": tx.recipient},
        )

    def _budget_threshold(
        self, rule: AlertRule, config: BudgetThresholdConfig, tx: Transaction
    ) -> Optional[Alert]:
        if tx.currency != config.currency or tx.status is not TransactionStatus.COMPLETED:
            return None
        previous = self._ledger.sum_since(
            config.window, config.currency, agent_id=tx.agent_id, exclude_tx_id=tx.id
        )
        current = previous + tx.amount
        threshold = config.max_amount * to_amount(config.alert_at_percent)
        # One alert per (rule, agent) until spend drops back below the threshold.
        key = (rule.id, tx.agent_id)
        with self._lock:
            if current < threshold:
                self._budget_crossed.discard(key)
                return None
            already = previous >= threshold or key in self._budget_crossed
            self._budget_crossed.add(key)
        if already:
            return None
        return self._make_alert(
            rule,
            tx,
            f"Budget threshold: agent {tx.agent_id} has used {format_amount(current, config.currency)} "
            f"of {config.window.value} budget {format_amount(config.max_amount, config.currency)} "
            f"({config.alert_at_percent:.0%} alert level)",
            {
                "window": config.window.value,
                "spent": str(current),
                "max_amount": str(config.max_amount),
                "alert_at_percent": config.alert_at_percent,
            },
        )

    def _make_alert(self, rule: AlertRule, tx: Transaction, message: str, details: dict) -> Alert:
        return Alert(
            id=f"alert_{uuid.uuid4().hex[:16]}",
            rule_id=rule.id,
            type=rule.type,
            severity=rule.severity,
            message=message,
            transaction_id=tx.id,
            timestamp=self._clock(),
            details=details,
        )

    def _notify(self, alert: Alert) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(alert)
            except Exception:
                logger.exception("Alert subscriber %r failed for %s", callback, alert.id)


# ── Config loading ────────────────────────────────────────────────

def alert_rule_from_dict(data: dict[str, Any]) -> AlertRule:
    try:
        rule_type = AlertType(data["type"])
        rule_id = str(data["id"])
    except (KeyError, ValueError) as e:
        raise ConfigError(f"Invalid alert rule: {e}") from e

    try:
        if rule_type is AlertType.LARGE_TRANSACTION:
            config: AlertRuleConfig = LargeTransactionConfig(
                threshold=to_amount(data["threshold"]),
                currency=data.get("currency"),
            )
        elif rule_type is AlertType.RATE_SPIKE:
            config = RateSpikeConfig(
                max_transactions=int(data["max_transactions"]),
                window_ms=int(data.get("window_ms", 60_000)),
            )
        elif rule_type is AlertType.NEW_RECIPIENT:
            config = NewRecipientConfig()
        else:
            config = BudgetThresholdConfig(
                window=BudgetWindow(data["window"]),
                max_amount=to_amount(data["max_amount"]),
                currency=str(data["currency"]),
                alert_at_percent=float(data.get("alert_at_percent", 0.8)),
            )
        severity = AlertSeverity(data.get("severity", AlertSeverity.WARNING.value))
    except (KeyError, ValueError) as e:
        raise ConfigError(f"Invalid {rule_type.value} alert rule {rule_id}: {e}") from e

    return AlertRule(
        id=rule_id,
        name=str(data.get("name", rule_id)),
        config=config,
        severity=severity,
        enabled=bool(data.get("enabled", True)),
    )
