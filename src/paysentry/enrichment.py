"""Adds PaySentry metadata to 402 and settlement responses."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Union

from .facilitator import SettleResponse
from .orchestrator import PaymentOrchestrator

logger = logging.getLogger(__name__)

EXTENSION_KEY = "paysentry"
EXTENSION_VERSION = "1.0.0"


class ResponseEnricher:
    """Resource-server extension. Never raises; failures yield {}."""

    key = EXTENSION_KEY

    def __init__(self, orchestrator: PaymentOrchestrator):
        self._orchestrator = orchestrator

    def enrich_payment_required(self, requirements: Mapping[str, Any]) -> dict[str, Any]:
        try:
            return {
                EXTENSION_KEY: {
                    "sessionId": self._orchestrator.session_id,
                    "version": EXTENSION_VERSION,
                    "controlsActive": True,
                    "recipient": requirements.get("payTo"),
                }
            }
        except Exception:
            logger.exception("Payment-required enrichment failed")
            return {}

    def enrich_settlement(
        self,
        response: Union[SettleResponse, Mapping[str, Any]],
        payload: Mapping[str, Any],
        requirements: Mapping[str, Any],
    ) -> dict[str, Any]:
        try:
            ctx = self._orchestrator.get_context(payload, requirements)
            policy_action = "unknown"
            if ctx is not None and ctx.policy_result is not None:
                policy_action = ctx.policy_result.action.value
            return {
                EXTENSION_KEY: {
                    "sessionId": self._orchestrator.session_id,
                    "transactionId": ctx.transaction.id if ctx else None,
                    "policyAction": policy_action,
                    "recorded": ctx is not None,
                    "timestamps": dict(ctx.timestamps) if ctx else None,
                }
            }
        except Exception:
            logger.exception("Settlement enrichment failed")
            return {}
