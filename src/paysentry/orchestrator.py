"""
Payment orchestrator: threads one x402 payment through
policy -> verify -> settle -> ledger -> alerts -> provenance.

Stages of one payment attempt are correlated by fingerprint (payer, payTo,
amount). Every stage returns a structured response; facilitator exceptions
are recorded with a retryability flag and never escape to the caller.
Retrying is the caller's decision.

Two ways in:
    verify() / settle()           the orchestrator calls the facilitator
    before_verify() ... hooks     the resource server calls it and reports

Contexts are kept until prune_contexts() drops terminal ones. A pruned
settled fingerprint no longer short-circuits a second settle.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from .alerts import AlertEngine
from .circuit_breaker import CircuitBreaker
from .config import OrchestratorConfig
from .errors import classify_retryability
from .facilitator import (
    FacilitatorClient,
    SettleResponse,
    SupportedKinds,
    VerifyResponse,
    coerce_settle,
    coerce_supported,
    coerce_verify,
)
from .ledger import SpendLedger
from .mapper import DEFAULT_CURRENCY, extract_agent, extract_recipient, fingerprint, map_to_transaction
from .money import ZERO
from .policy import PolicyAction, PolicyEvaluation
from .policy_engine import PolicyEngine
from .provenance import ProvenanceOutcome, TransactionProvenance
from .transaction import Transaction, TransactionStatus, create_transaction

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT_KEY = "default"
DENIED_PREFIX = "PaySentry policy denied"
INVALID_REQUIREMENTS_RULE = "invalid_requirements"

_LOCK_STRIPES = 64


@dataclass
class PaymentContext:
    """Everything known about one payment attempt, keyed by fingerprint."""

    fingerprint: str
    transaction: Transaction
    policy_result: Optional[PolicyEvaluation] = None
    aborted: bool = False
    verify_data: Optional[dict[str, Any]] = None
    settle_data: Optional[dict[str, Any]] = None
    settle_response: Optional[SettleResponse] = None
    timestamps: dict[str, float] = field(default_factory=dict)
    alert_future: Optional[Future] = field(default=None, repr=False)

    @property
    def settled(self) -> bool:
        return self.settle_response is not None and self.settle_response.success

    @property
    def is_open(self) -> bool:
        return not self.transaction.status.is_terminal


@dataclass(frozen=True)
class IntentOutcome:
    transaction: Transaction
    evaluation: PolicyEvaluation
    aborted: bool
    fingerprint: str

    @property
    def reason(self) -> str:
        return self.evaluation.reason


class PaymentOrchestrator:
    """Governs payments made through a facilitator."""

    def __init__(
        self,
        policy_engine: PolicyEngine,
        ledger: SpendLedger,
        alerts: Optional[AlertEngine] = None,
        provenance: Optional[TransactionProvenance] = None,
        config: Optional[OrchestratorConfig] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        alert_executor: Optional[Executor] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or OrchestratorConfig()
        self._policy_engine = policy_engine
        self._ledger = ledger
        self._alerts = alerts
        self._provenance = provenance
        self._clock = clock
        self._circuit_breaker = circuit_breaker or CircuitBreaker(self.config.circuit_breaker, clock=clock)
        self._owns_executor = alert_executor is None
        self._alert_executor = alert_executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="paysentry-alerts"
        )
        self._mapper_config = self.config.mapper_config()

        self._contexts: dict[str, PaymentContext] = {}
        # Fixed-size lock table; fingerprints sharing a stripe serialize.
        self._fingerprint_locks = [threading.Lock() for _ in range(_LOCK_STRIPES)]
        self._lock = threading.Lock()

    @property
    def session_id(self) -> str:
        return self.config.session_id

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    def get_context(self, payload: Mapping[str, Any], requirements: Mapping[str, Any]) -> Optional[PaymentContext]:
        with self._lock:
            return self._contexts.get(fingerprint(payload, requirements))

    def prune_contexts(self, older_than_seconds: float) -> int:
        """Forget terminal attempts last updated more than `older_than_seconds` ago.

        Open attempts are always kept. Returns the number dropped.
        """
        cutoff = self._clock() - older_than_seconds
        with self._lock:
            stale = [
                fp
                for fp, ctx in self._contexts.items()
                if not ctx.is_open and ctx.transaction.updated_at < cutoff
            ]
            for fp in stale:
                del self._contexts[fp]
        if stale:
            logger.debug("Pruned %d payment contexts", len(stale))
        return len(stale)

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._alert_executor.shutdown(wait=wait)

    # ── Stages ────────────────────────────────────────────────────

    def begin(self, payload: Mapping[str, Any], requirements: Mapping[str, Any]) -> IntentOutcome:
        """Map the payment, check policy, and open a new attempt.

        An attempt that is still open or already settled is returned as is.
        """
        fp = fingerprint(payload, requirements)
        with self._fingerprint_lock(fp):
            return self._outcome(self._current_locked(fp, payload, requirements, source="intent"))

    def verify(
        self,
        client: FacilitatorClient,
        payload: Mapping[str, Any],
        requirements: Mapping[str, Any],
        endpoint_key: str = DEFAULT_ENDPOINT_KEY,
    ) -> VerifyResponse:
        fp = fingerprint(payload, requirements)
        with self._fingerprint_lock(fp):
            ctx = self._get(fp)
            if ctx is None or not ctx.is_open:
                ctx = self._begin_locked(fp, payload, requirements, source="verify")

            if ctx.aborted:
                return VerifyResponse(
                    is_valid=False,
                    invalid_reason=f"{DENIED_PREFIX}: {ctx.policy_result.reason}",
                )

            try:
                response = coerce_verify(
                    self._circuit_breaker.execute(endpoint_key, client.verify, payload, requirements)
                )
            except Exception as e:
                retryable = self._record_verify_error(ctx, e)
                return VerifyResponse(
                    is_valid=False,
                    invalid_reason=f"Facilitator verify failed: {e}",
                    raw={"retryable": retryable},
                )

            self._record_verify(ctx, response)
            return response

    def settle(
        self,
        client: FacilitatorClient,
        payload: Mapping[str, Any],
        requirements: Mapping[str, Any],
        endpoint_key: str = DEFAULT_ENDPOINT_KEY,
    ) -> SettleResponse:
        fp = fingerprint(payload, requirements)
        with self._fingerprint_lock(fp):
            ctx = self._get(fp)
            if ctx is not None and ctx.settled:
                logger.info("Fingerprint %s already settled as %s", fp, ctx.transaction.id)
                return ctx.settle_response

            ctx, denial = self._authorize_settlement_locked(fp, ctx, payload, requirements)
            if denial is not None:
                return SettleResponse(success=False, error_reason=denial)

            try:
                response = coerce_settle(
                    self._circuit_breaker.execute(endpoint_key, client.settle, payload, requirements)
                )
            except Exception as e:
                return self._record_settle_error(ctx, e)

            self._record_settle(ctx, response)
            return response

    def wrap(self, client: FacilitatorClient, endpoint_key: str = DEFAULT_ENDPOINT_KEY) -> "GovernedFacilitatorClient":
        return GovernedFacilitatorClient(self, client, endpoint_key)

    # ── Lifecycle hooks ───────────────────────────────────────────
    # For resource servers that call the facilitator themselves. The
    # before_* hooks return an abort reason, or None to proceed. None of
    # the hooks raise.

    def before_verify(self, payload: Mapping[str, Any], requirements: Mapping[str, Any]) -> Optional[str]:
        fp = fingerprint(payload, requirements)
        try:
            with self._fingerprint_lock(fp):
                ctx = self._current_locked(fp, payload, requirements, source="before_verify")
        except Exception as e:
            logger.exception("before_verify hook failed for %s; aborting", fp)
            return f"{DENIED_PREFIX}: internal error ({type(e).__name__})"
        if ctx.aborted:
            return f"{DENIED_PREFIX}: {ctx.policy_result.reason}"
        return None

    def after_verify(
        self, payload: Mapping[str, Any], requirements: Mapping[str, Any], response: Any
    ) -> None:
        fp = fingerprint(payload, requirements)
        try:
            result = coerce_verify(response)
            with self._fingerprint_lock(fp):
                ctx = self._current_locked(fp, payload, requirements, source="after_verify")
                if not ctx.is_open:
                    logger.info("Verify result for %s ignored; attempt is %s", fp, ctx.transaction.status.value)
                    return
                self._record_verify(ctx, result)
        except Exception:
            logger.exception("after_verify hook failed for %s", fp)

    def verify_failed(
        self, payload: Mapping[str, Any], requirements: Mapping[str, Any], error: BaseException
    ) -> None:
        fp = fingerprint(payload, requirements)
        try:
            with self._fingerprint_lock(fp):
                ctx = self._get(fp)
                if ctx is None or not ctx.is_open:
                    logger.warning("Verify failure for %s has no open attempt: %s", fp, error)
                    return
                self._record_verify_error(ctx, error)
        except Exception:
            logger.exception("verify_failed hook failed for %s", fp)

    def before_settle(self, payload: Mapping[str, Any], requirements: Mapping[str, Any]) -> Optional[str]:
        fp = fingerprint(payload, requirements)
        try:
            with self._fingerprint_lock(fp):
                ctx = self._get(fp)
                if ctx is not None and ctx.settled:
                    return None
                _, denial = self._authorize_settlement_locked(fp, ctx, payload, requirements)
        except Exception as e:
            logger.exception("before_settle hook failed for %s; aborting", fp)
            return f"{DENIED_PREFIX} at settlement: internal error ({type(e).__name__})"
        return denial

    def after_settle(
        self, payload: Mapping[str, Any], requirements: Mapping[str, Any], response: Any
    ) -> None:
        """Record a settlement the server already made.

        Money has moved by now, so a payment with no open attempt is adopted
        without a policy gate.
        """
        fp = fingerprint(payload, requirements)
        try:
            result = coerce_settle(response)
            with self._fingerprint_lock(fp):
                ctx = self._get(fp)
                if ctx is not None and ctx.settled:
                    logger.info("Fingerprint %s already settled as %s", fp, ctx.transaction.id)
                    return
                if ctx is None or not ctx.is_open:
                    ctx = self._adopt_locked(fp, payload, requirements)
                self._record_settle(ctx, result)
        except Exception:
            logger.exception("after_settle hook failed for %s", fp)

    def settle_failed(
        self, payload: Mapping[str, Any], requirements: Mapping[str, Any], error: BaseException
    ) -> None:
        fp = fingerprint(payload, requirements)
        try:
            with self._fingerprint_lock(fp):
                ctx = self._get(fp)
                if ctx is None or not ctx.is_open:
                    logger.warning("Settle failure for %s has no open attempt: %s", fp, error)
                    return
                self._record_settle_error(ctx, error)
        except Exception:
            logger.exception("settle_failed hook failed for %s", fp)

    # ── Internals ─────────────────────────────────────────────────

    def _fingerprint_lock(self, fp: str) -> threading.Lock:
        return self._fingerprint_locks[hash(fp) % _LOCK_STRIPES]

    def _get(self, fp: str) -> Optional[PaymentContext]:
        with self._lock:
            return self._contexts.get(fp)

    def _store(self, ctx: PaymentContext) -> PaymentContext:
        with self._lock:
            self._contexts[ctx.fingerprint] = ctx
        return ctx

    def _current_locked(
        self, fp: str, payload: Mapping[str, Any], requirements: Mapping[str, Any], source: str
    ) -> PaymentContext:
        existing = self._get(fp)
        if existing is not None and (existing.settled or existing.is_open):
            return existing
        return self._begin_locked(fp, payload, requirements, source)

    def _begin_locked(
        self,
        fp: str,
        payload: Mapping[str, Any],
        requirements: Mapping[str, Any],
        source: str,
    ) -> PaymentContext:
        try:
            tx = map_to_transaction(payload, requirements, self._mapper_config, now=self._clock())
        except (TypeError, ValueError) as e:
            return self._begin_invalid_locked(fp, payload, requirements, source, e)
        self._record_intent(tx, {"source": source, "fingerprint": fp, "resource": payload.get("resource")})

        evaluation = self._policy_engine.authorize(tx)
        logger.info(
            "Policy %s for %s: %s %s to %s (%s)",
            evaluation.action.value,
            tx.id,
            tx.amount,
            tx.currency,
            tx.recipient,
            evaluation.reason,
        )
        self._record_policy_check(tx, evaluation)

        ctx = PaymentContext(
            fingerprint=fp,
            transaction=tx,
            policy_result=evaluation,
            timestamps={"created": tx.created_at},
        )
        if not evaluation.allowed and self.config.abort_on_policy_deny:
            ctx.aborted = True
            self._reject(tx, evaluation)
        return self._store(ctx)

    def _begin_invalid_locked(
        self,
        fp: str,
        payload: Mapping[str, Any],
        requirements: Mapping[str, Any],
        source: str,
        error: Exception,
    ) -> PaymentContext:
        """Requirements that cannot be priced are denied whatever the abort setting."""
        logger.warning("Cannot map payment %s: %s", fp, error)
        tx = create_transaction(
            agent_id=extract_agent(payload, self._mapper_config),
            recipient=extract_recipient(requirements),
            amount=ZERO,
            currency=self._mapper_config.default_currency or DEFAULT_CURRENCY,
            metadata={"maxAmountRequired": requirements.get("maxAmountRequired"), "error": str(error)},
            now=self._clock(),
        )
        self._record_intent(tx, {"source": source, "fingerprint": fp, "resource": payload.get("resource")})
        evaluation = PolicyEvaluation(
            action=PolicyAction.DENY,
            reason=f"Invalid payment requirements: {error}",
            triggered_rule=INVALID_REQUIREMENTS_RULE,
        )
        self._record_policy_check(tx, evaluation)
        self._reject(tx, evaluation)
        return self._store(
            PaymentContext(
                fingerprint=fp,
                transaction=tx,
                policy_result=evaluation,
                aborted=True,
                timestamps={"created": tx.created_at},
            )
        )

    def _adopt_locked(
        self, fp: str, payload: Mapping[str, Any], requirements: Mapping[str, Any]
    ) -> PaymentContext:
        tx = map_to_transaction(payload, requirements, self._mapper_config, now=self._clock())
        self._record_intent(tx, {"source": "after_settle", "fingerprint": fp, "resource": payload.get("resource")})
        evaluation = self._policy_engine.evaluate(tx)
        self._record_policy_check(tx, evaluation, {"after_settlement": True})
        if not evaluation.allowed:
            logger.warning("Settled payment %s would have been denied: %s", tx.id, evaluation.reason)
        return self._store(
            PaymentContext(
                fingerprint=fp,
                transaction=tx,
                policy_result=evaluation,
                timestamps={"created": tx.created_at},
            )
        )

    def _authorize_settlement_locked(
        self,
        fp: str,
        ctx: Optional[PaymentContext],
        payload: Mapping[str, Any],
        requirements: Mapping[str, Any],
    ) -> tuple[PaymentContext, Optional[str]]:
        """Gate a settlement. Returns the attempt and a denial reason, if any."""
        if ctx is None or not ctx.is_open:
            logger.warning("No open attempt for %s at settlement; verify was skipped", fp)
            ctx = self._begin_locked(fp, payload, requirements, source="settle")
            denied = ctx.aborted
        else:
            # Budgets may have moved since verify.
            evaluation = self._policy_engine.authorize(ctx.transaction)
            ctx.policy_result = evaluation
            denied = not evaluation.allowed and self.config.abort_on_policy_deny
            ctx.aborted = denied
            if denied:
                self._reject(ctx.transaction, evaluation)

        if not denied:
            return ctx, None
        tx = ctx.transaction
        reason = f"{DENIED_PREFIX} at settlement: {ctx.policy_result.reason}"
        logger.warning("Settlement blocked for %s: %s", tx.id, ctx.policy_result.reason)
        self._record_provenance("record_settlement", tx.id, ProvenanceOutcome.FAIL, {"reason": reason})
        return ctx, reason

    def _record_verify(self, ctx: PaymentContext, response: VerifyResponse) -> None:
        tx = ctx.transaction
        self._record_provenance(
            "record_execution",
            tx.id,
            ProvenanceOutcome.PASS if response.is_valid else ProvenanceOutcome.FAIL,
            {
                "stage": "verify",
                "isValid": response.is_valid,
                "invalidReason": response.invalid_reason,
                "payer": response.payer,
            },
        )
        ctx.verify_data = response.to_dict()
        ctx.timestamps["verified"] = self._clock()
        if not response.is_valid:
            logger.info("Facilitator rejected %s: %s", tx.id, response.invalid_reason)
            self._fail(tx)

    def _record_verify_error(self, ctx: PaymentContext, error: BaseException) -> bool:
        tx = ctx.transaction
        retryable = classify_retryability(error)
        logger.warning("Verify failed for %s (retryable=%s): %s", tx.id, retryable, error)
        self._record_provenance(
            "record_execution",
            tx.id,
            ProvenanceOutcome.FAIL,
            {"stage": "verify", "error": str(error), "retryable": retryable},
        )
        self._fail(tx)
        return retryable

    def _record_settle(self, ctx: PaymentContext, response: SettleResponse) -> None:
        tx = ctx.transaction
        if response.success:
            tx.transition(TransactionStatus.COMPLETED, protocol_tx_id=response.tx_hash, now=self._clock())
            self._ledger.record(tx)
            self._policy_engine.record_transaction(tx)
            self._record_provenance(
                "record_settlement",
                tx.id,
                ProvenanceOutcome.PASS,
                {"txHash": response.tx_hash, "network": response.network},
            )
            ctx.settle_response = response
            ctx.alert_future = self._submit_alerts(tx)
            logger.info("Settled %s (%s %s) ref=%s", tx.id, tx.amount, tx.currency, response.tx_hash)
        else:
            self._fail(tx)
            self._record_provenance("record_settlement", tx.id, ProvenanceOutcome.FAIL, response.to_dict())
        ctx.settle_data = response.to_dict()
        ctx.timestamps["settled"] = self._clock()

    def _record_settle_error(self, ctx: PaymentContext, error: BaseException) -> SettleResponse:
        tx = ctx.transaction
        retryable = classify_retryability(error)
        logger.warning("Settle failed for %s (retryable=%s): %s", tx.id, retryable, error)
        self._fail(tx)
        self._record_provenance(
            "record_settlement",
            tx.id,
            ProvenanceOutcome.FAIL,
            {"error": str(error), "retryable": retryable},
        )
        response = SettleResponse(success=False, error_reason=str(error), raw={"retryable": retryable})
        ctx.settle_data = response.to_dict()
        ctx.timestamps["settled"] = self._clock()
        return response

    def _record_policy_check(
        self, tx: Transaction, evaluation: PolicyEvaluation, extra: Optional[dict[str, Any]] = None
    ) -> None:
        metadata = {
            "action": evaluation.action.value,
            "reason": evaluation.reason,
            "triggered_rule": evaluation.triggered_rule,
            "policy_id": evaluation.policy_id,
            "details": evaluation.details,
        }
        metadata.update(extra or {})
        self._record_provenance(
            "record_policy_check",
            tx.id,
            ProvenanceOutcome.PASS if evaluation.allowed else ProvenanceOutcome.FAIL,
            metadata,
        )

    def _reject(self, tx: Transaction, evaluation: PolicyEvaluation) -> None:
        """Denied payments become rejected; approval holds stay pending."""
        self._policy_engine.release(tx.id)
        if evaluation.action is PolicyAction.REQUIRE_APPROVAL and not tx.status.is_terminal:
            self._ledger.record(tx)
            return
        tx.transition(TransactionStatus.REJECTED, now=self._clock())
        self._ledger.record(tx)

    def _fail(self, tx: Transaction) -> None:
        self._policy_engine.release(tx.id)
        tx.transition(TransactionStatus.FAILED, now=self._clock())
        self._ledger.record(tx)

    def _outcome(self, ctx: PaymentContext) -> IntentOutcome:
        return IntentOutcome(
            transaction=ctx.transaction,
            evaluation=ctx.policy_result,
            aborted=ctx.aborted,
            fingerprint=ctx.fingerprint,
        )

    def _record_intent(self, tx: Transaction, metadata: dict[str, Any]) -> None:
        if self._provenance is not None:
            self._provenance.record_intent(tx, metadata)

    def _record_provenance(
        self, method: str, tx_id: str, outcome: ProvenanceOutcome, metadata: dict[str, Any]
    ) -> None:
        if self._provenance is not None:
            getattr(self._provenance, method)(tx_id, outcome, metadata)

    def _submit_alerts(self, tx: Transaction) -> Optional[Future]:
        if self._alerts is None:
            return None
        try:
            return self._alert_executor.submit(self._evaluate_alerts, tx)
        except RuntimeError:
            logger.exception("Could not schedule alert evaluation for %s", tx.id)
            return None

    def _evaluate_alerts(self, tx: Transaction) -> list:
        try:
            return self._alerts.evaluate(tx)
        except Exception:
            logger.exception("Alert evaluation failed for %s", tx.id)
            return []


class GovernedFacilitatorClient:
    """Facilitator client with policy, breaker, ledger and audit applied."""

    def __init__(self, orchestrator: PaymentOrchestrator, client: FacilitatorClient, endpoint_key: str):
        self._orchestrator = orchestrator
        self._client = client
        self.endpoint_key = endpoint_key

    def verify(self, payload: Mapping[str, Any], requirements: Mapping[str, Any]) -> VerifyResponse:
        return self._orchestrator.verify(self._client, payload, requirements, self.endpoint_key)

    def settle(self, payload: Mapping[str, Any], requirements: Mapping[str, Any]) -> SettleResponse:
        return self._orchestrator.settle(self._client, payload, requirements, self.endpoint_key)

    def supported(self) -> SupportedKinds:
        return coerce_supported(
            self._orchestrator.circuit_breaker.execute(self.endpoint_key, self._client.supported)
        )
