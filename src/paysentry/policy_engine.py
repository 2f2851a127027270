"""
Policy engine: admission control for agent payments.

Flow per transaction:
1. Resolve the applicable enabled policy (pluggable resolver)
2. Scan rules top-down, first match wins; no match means deny
3. For non-deny outcomes, check every budget in the transaction's currency
4. Optionally reserve the amount so concurrent attempts see it

Budget usage = completed spend recorded via record_transaction()
+ reservations held by other in-flight transactions + the candidate.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Optional

from .ledger import BudgetWindow, SpendLedger
from .money import ZERO, format_amount
from .policy import Budget, Policy, PolicyAction, PolicyEvaluation
from .transaction import Transaction, TransactionStatus

logger = logging.getLogger(__name__)

PolicyResolver = Callable[[Transaction, list[Policy]], Optional[Policy]]


def default_policy_resolver(tx: Transaction, policies: list[Policy]) -> Optional[Policy]:
    """Agent's assigned policy, else the single global policy if exactly one."""
    enabled = [p for p in policies if p.enabled]
    for policy in enabled:
        if tx.agent_id in policy.agents:
            return policy
    global_policies = [p for p in enabled if not p.agents]
    if len(global_policies) == 1:
        return global_policies[0]
    return None


@dataclass
class SpendSnapshot:
    """Current usage of one budget window."""

    amount: Decimal
    reserved: Decimal
    currency: str
    window: BudgetWindow
    max_amount: Decimal

    @property
    def remaining(self) -> Decimal:
        return max(ZERO, self.max_amount - self.amount - self.reserved)

    def to_dict(self) -> dict:
        return {
            "amount": str(self.amount),
            "reserved": str(self.reserved),
            "currency": self.currency,
            "window": self.window.value,
            "max_amount": str(self.max_amount),
            "remaining": str(self.remaining),
        }


@dataclass
class _Reservation:
    policy_id: str
    tx: Transaction


class PolicyEngine:
    """Evaluates transactions against loaded policies and tracks budget spend."""

    def __init__(
        self,
        resolver: PolicyResolver = default_policy_resolver,
        clock: Callable[[], float] = time.time,
    ):
        self._resolver = resolver
        self._clock = clock
        self._policies: dict[str, Policy] = {}
        self._spend = SpendLedger(clock=clock)
        self._reservations: dict[str, _Reservation] = {}
        self._lock = threading.Lock()
        self._policy_locks: dict[str, threading.RLock] = {}

    # ── Policy registry ───────────────────────────────────────────

    def load_policy(self, policy: Policy) -> None:
        if not policy.has_catch_all:
            logger.warning(
                "Policy %s has no catch-all rule; unmatched payments will be denied",
                policy.id,
            )
        with self._lock:
            self._policies[policy.id] = policy
            self._policy_locks.setdefault(policy.id, threading.RLock())
        logger.info("Loaded policy %s (%d rules, %d budgets)", policy.id, len(policy.rules), len(policy.budgets))

    def remove_policy(self, policy_id: str) -> bool:
        with self._lock:
            return self._policies.pop(policy_id, None) is not None

    def get_policy(self, policy_id: str) -> Optional[Policy]:
        with self._lock:
            return self._policies.get(policy_id)

    def get_policies(self) -> list[Policy]:
        with self._lock:
            return list(self._policies.values())

    # ── Evaluation ────────────────────────────────────────────────

    def evaluate(self, tx: Transaction) -> PolicyEvaluation:
        """Decide a transaction without changing any state."""
        try:
            policy = self._resolve(tx)
            if policy is None:
                return _no_policy(tx)
            with self._policy_lock(policy.id):
                return self._evaluate_locked(tx, policy)
        except Exception as e:
            logger.exception("Policy evaluation failed for %s; denying", tx.id)
            return PolicyEvaluation(
                action=PolicyAction.DENY,
                reason=f"Internal evaluation error: {type(e).__name__}: {e}",
                details={"error": True},
            )

    def authorize(self, tx: Transaction) -> PolicyEvaluation:
        """Evaluate and, if allowed, reserve the amount in one atomic step.

        Re-authorizing the same transaction replaces its reservation, so the
        pre-settlement re-check never counts the transaction twice.
        """
        try:
            policy = self._resolve(tx)
            if policy is None:
                self.release(tx.id)
                return _no_policy(tx)
            with self._policy_lock(policy.id):
                evaluation = self._evaluate_locked(tx, policy)
                with self._lock:
                    if evaluation.allowed:
                        self._reservations[tx.id] = _Reservation(policy_id=policy.id, tx=tx)
                    else:
                        self._reservations.pop(tx.id, None)
                return evaluation
        except Exception as e:
            logger.exception("Policy authorization failed for %s; denying", tx.id)
            self.release(tx.id)
            return PolicyEvaluation(
                action=PolicyAction.DENY,
                reason=f"Internal evaluation error: {type(e).__name__}: {e}",
                details={"error": True},
            )

    def release(self, tx_id: str) -> None:
        """Drop a reservation (payment denied, failed or abandoned)."""
        with self._lock:
            self._reservations.pop(tx_id, None)

    def record_transaction(self, tx: Transaction) -> None:
        """Count a completed transaction toward future budget sums."""
        if tx.status is not TransactionStatus.COMPLETED:
            logger.warning("Ignoring spend record for %s with status %s", tx.id, tx.status.value)
            return

        with self._lock:
            reservation = self._reservations.get(tx.id)
        policy_id = reservation.policy_id if reservation else None
        if policy_id is None:
            policy = self._resolve(tx)
            policy_id = policy.id if policy else None

        if policy_id is None:
            with self._lock:
                self._spend.record(tx)
            return

        with self._policy_lock(policy_id):
            with self._lock:
                self._spend.record(tx)
                self._reservations.pop(tx.id, None)

    def get_current_spend(self, policy_id: str, budget: Budget) -> SpendSnapshot:
        policy = self.get_policy(policy_id)
        agent_ids = policy.agents if policy and policy.agents else None
        with self._policy_lock(policy_id):
            amount = self._spend.sum_since(budget.window, budget.currency, agent_ids=agent_ids)
            reserved = self._reserved(policy_id, budget.currency)
        return SpendSnapshot(
            amount=amount,
            reserved=reserved,
            currency=budget.currency,
            window=budget.window,
            max_amount=budget.max_amount,
        )

    # ── Internals ─────────────────────────────────────────────────

    def _resolve(self, tx: Transaction) -> Optional[Policy]:
        return self._resolver(tx, self.get_policies())

    def _policy_lock(self, policy_id: str) -> threading.RLock:
        with self._lock:
            lock = self._policy_locks.get(policy_id)
            if lock is None:
                lock = threading.RLock()
                self._policy_locks[policy_id] = lock
            return lock

    def _reserved(self, policy_id: str, currency: str, exclude_tx_id: Optional[str] = None) -> Decimal:
        with self._lock:
            return sum(
                (
                    r.tx.amount
                    for tx_id, r in self._reservations.items()
                    if r.policy_id == policy_id and r.tx.currency == currency and tx_id != exclude_tx_id
                ),
                ZERO,
            )

    def _evaluate_locked(self, tx: Transaction, policy: Policy) -> PolicyEvaluation:
        for index, rule in enumerate(policy.rules):
            if rule.matches(tx):
                action = rule.action
                triggered = rule.name
                reason = rule.describe()
                break
        else:
            return PolicyEvaluation(
                action=PolicyAction.DENY,
                reason=f"No rule in policy '{policy.name}' matched; denied by default",
                policy_id=policy.id,
            )

        if action is not PolicyAction.DENY:
            exceeded = self._check_budgets(tx, policy)
            if exceeded is not None:
                return exceeded

        logger.debug("Policy %s: %s -> %s (%s)", policy.id, tx.id, action.value, triggered)
        return PolicyEvaluation(
            action=action,
            reason=reason,
            triggered_rule=triggered,
            policy_id=policy.id,
            details={"rule_index": index},
        )

    def _check_budgets(self, tx: Transaction, policy: Policy) -> Optional[PolicyEvaluation]:
        now = self._clock()
        agent_ids = policy.agents or None
        for b in policy.budgets:
            if b.currency != tx.currency:
                continue
            spent = self._spend.sum_since(
                b.window, b.currency, agent_ids=agent_ids, now=now, exclude_tx_id=tx.id
            )
            reserved = self._reserved(policy.id, b.currency, exclude_tx_id=tx.id)
            projected = spent + reserved + tx.amount
            if projected > b.max_amount:
                return PolicyEvaluation(
                    action=PolicyAction.DENY,
                    reason=(
                        f"Exceeds {b.describe()}: {format_amount(spent + reserved, b.currency)} used, "
                        f"{format_amount(tx.amount, b.currency)} requested"
                    ),
                    triggered_rule=f"budget:{b.window.value}",
                    policy_id=policy.id,
                    details={
                        "window": b.window.value,
                        "spent": str(spent),
                        "reserved": str(reserved),
                        "requested": str(tx.amount),
                        "max_amount": str(b.max_amount),
                    },
                )
        return None


def _no_policy(tx: Transaction) -> PolicyEvaluation:
    return PolicyEvaluation(
        action=PolicyAction.DENY,
        reason=f"No applicable policy for agent {tx.agent_id}",
    )
