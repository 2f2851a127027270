"""
PaySentry: spending controls for autonomous agent payments.

Policy gate → facilitator verify/settle behind a circuit breaker →
spend ledger → anomaly alerts → tamper-evident provenance.
"""

__version__ = "0.1.0"

from .errors import (
    AuditIntegrityError,
    CircuitOpenError,
    ConfigError,
    FacilitatorError,
    InvalidTransitionError,
    PaySentryError,
    ProvenanceOrderError,
    classify_retryability,
)
from .transaction import Transaction, TransactionStatus, create_transaction
from .ledger import BudgetWindow, SpendLedger
from .policy import (
    Budget,
    Policy,
    PolicyAction,
    PolicyEvaluation,
    allow_all,
    allow_recipients,
    block_above,
    block_recipients,
    budget,
    flag_above,
    register_rule_type,
    require_approval_above,
)
from .policy_engine import PolicyEngine, SpendSnapshot
from .alerts import (
    Alert,
    AlertEngine,
    AlertRule,
    AlertSeverity,
    AlertType,
    BudgetThresholdConfig,
    LargeTransactionConfig,
    NewRecipientConfig,
    RateSpikeConfig,
)
from .circuit_breaker import BreakerState, CircuitBreaker, CircuitBreakerConfig
from .config import OrchestratorConfig, load_alert_rules_file, load_policy_file
from .facilitator import HttpFacilitatorClient, SettleResponse, SupportedKinds, VerifyResponse
from .facilitator_auth import FacilitatorAuthProvider, create_facilitator_config
from .provenance import ProvenanceOutcome, ProvenanceRecord, ProvenanceStage, TransactionProvenance
from .orchestrator import GovernedFacilitatorClient, IntentOutcome, PaymentOrchestrator
from .enrichment import ResponseEnricher

__all__ = [
    "PaySentryError", "ConfigError", "InvalidTransitionError", "FacilitatorError",
    "CircuitOpenError", "ProvenanceOrderError", "AuditIntegrityError", "classify_retryability",
    "Transaction", "TransactionStatus", "create_transaction",
    "BudgetWindow", "SpendLedger",
    "Budget", "Policy", "PolicyAction", "PolicyEvaluation", "allow_all", "allow_recipients",
    "block_above", "block_recipients", "budget", "flag_above", "register_rule_type",
    "require_approval_above", "PolicyEngine", "SpendSnapshot",
    "Alert", "AlertEngine", "AlertRule", "AlertSeverity", "AlertType",
    "BudgetThresholdConfig", "LargeTransactionConfig", "NewRecipientConfig", "RateSpikeConfig",
    "BreakerState", "CircuitBreaker", "CircuitBreakerConfig",
    "OrchestratorConfig", "load_alert_rules_file", "load_policy_file",
    "HttpFacilitatorClient", "SettleResponse", "SupportedKinds", "VerifyResponse", "FacilitatorAuthProvider",
    "create_facilitator_config",
    "ProvenanceOutcome", "ProvenanceRecord", "ProvenanceStage", "TransactionProvenance",
    "GovernedFacilitatorClient", "IntentOutcome", "PaymentOrchestrator", "ResponseEnricher",
]
