"""
Policy building blocks: rules, budgets, policies and evaluation results.

Rules share one capability (matches / action / describe) so the engine
never inspects their concrete type. New rule kinds are added through
register_rule_type() and become loadable from config files.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Protocol

from .errors import ConfigError
from .ledger import BudgetWindow
from .money import format_amount, to_amount
from .transaction import Transaction


class PolicyAction(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    REQUIRE_APPROVAL = "require_approval"
    FLAG = "flag"

    @property
    def allowed(self) -> bool:
        return self in (PolicyAction.ALLOW, PolicyAction.FLAG)


class Rule(Protocol):
    name: str
    action: PolicyAction

    def matches(self, tx: Transaction) -> bool: ...

    def describe(self) -> str: ...


@dataclass(frozen=True)
class _ThresholdRule:
    threshold: Decimal
    currency: str

    def matches(self, tx: Transaction) -> bool:
        # Strict '>': the boundary value falls through to the next tier.
        return tx.currency == self.currency and tx.amount > self.threshold


@dataclass(frozen=True)
class BlockAbove(_ThresholdRule):
    name: str = "block_above"
    action: PolicyAction = PolicyAction.DENY

    def describe(self) -> str:
        return f"Block payments above {format_amount(self.threshold, self.currency)}"


@dataclass(frozen=True)
class RequireApprovalAbove(_ThresholdRule):
    name: str = "require_approval_above"
    action: PolicyAction = PolicyAction.REQUIRE_APPROVAL

    def describe(self) -> str:
        return f"Require approval above {format_amount(self.threshold, self.currency)}"


@dataclass(frozen=True)
class FlagAbove(_ThresholdRule):
    name: str = "flag_above"
    action: PolicyAction = PolicyAction.FLAG

    def describe(self) -> str:
        return f"Allow but flag payments above {format_amount(self.threshold, self.currency)}"


@dataclass(frozen=True)
class AllowAll:
    name: str = "allow_all"
    action: PolicyAction = PolicyAction.ALLOW

    def matches(self, tx: Transaction) -> bool:
        return True

    def describe(self) -> str:
        return "Allow all payments"


@dataclass(frozen=True)
class BlockRecipients:
    recipients: frozenset[str]
    name: str = "block_recipients"
    action: PolicyAction = PolicyAction.DENY

    def matches(self, tx: Transaction) -> bool:
        return tx.recipient.lower() in self.recipients

    def describe(self) -> str:
        return f"Block payments to {len(self.recipients)} listed recipient(s)"


@dataclass(frozen=True)
class AllowRecipients:
    """Deny any recipient that is not on the allow-list."""

    recipients: frozenset[str]
    name: str = "allow_recipients"
    action: PolicyAction = PolicyAction.DENY

    def matches(self, tx: Transaction) -> bool:
        return tx.recipient.lower() not in self.recipients

    def describe(self) -> str:
        return f"Only allow payments to {len(self.recipients)} listed recipient(s)"


def block_above(threshold: Decimal | float | int | str, currency: str) -> BlockAbove:
    return BlockAbove(threshold=to_amount(threshold), currency=currency)


def require_approval_above(
    threshold: Decimal | float | int | str, currency: str
) -> RequireApprovalAbove:
    return RequireApprovalAbove(threshold=to_amount(threshold), currency=currency)


def flag_above(threshold: Decimal | float | int | str, currency: str) -> FlagAbove:
    return FlagAbove(threshold=to_amount(threshold), currency=currency)


def allow_all() -> AllowAll:
    return AllowAll()


def block_recipients(recipients: Iterable[str]) -> BlockRecipients:
    return BlockRecipients(recipients=frozenset(r.lower() for r in recipients))


def allow_recipients(recipients: Iterable[str]) -> AllowRecipients:
    return AllowRecipients(recipients=frozenset(r.lower() for r in recipients))


@dataclass(frozen=True)
class Budget:
    """Cumulative spend cap over a trailing window."""

    window: BudgetWindow
    max_amount: Decimal
    currency: str

    def describe(self) -> str:
        return f"{self.window.value} budget {format_amount(self.max_amount, self.currency)}"

    def to_dict(self) -> dict:
        return {
            "window": self.window.value,
            "max_amount": str(self.max_amount),
            "currency": self.currency,
        }


def budget(window: BudgetWindow | str, max_amount: Decimal | float | int | str, currency: str) -> Budget:
    return Budget(window=BudgetWindow(window), max_amount=to_amount(max_amount), currency=currency)


@dataclass
class Policy:
    """A named bundle of ordered rules and budgets.

    Rule order matters: evaluation is first-match-wins, top to bottom.
    """

    id: str
    name: str
    rules: list[Rule] = field(default_factory=list)
    budgets: list[Budget] = field(default_factory=list)
    enabled: bool = True
    description: str = ""
    agents: list[str] = field(default_factory=list)

    @property
    def has_catch_all(self) -> bool:
        return any(isinstance(rule, AllowAll) for rule in self.rules)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "enabled": self.enabled,
            "description": self.description,
            "agents": list(self.agents),
            "rules": [{"name": r.name, "action": r.action.value, "describe": r.describe()} for r in self.rules],
            "budgets": [b.to_dict() for b in self.budgets],
        }


@dataclass
class PolicyEvaluation:
    """Outcome of evaluating one transaction."""

    action: PolicyAction
    reason: str
    triggered_rule: Optional[str] = None
    policy_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def allowed(self) -> bool:
        return self.action.allowed

    def to_dict(self) -> dict:
        return {
            "action": self.action.value,
            "allowed": self.allowed,
            "reason": self.reason,
            "triggered_rule": self.triggered_rule,
            "policy_id": self.policy_id,
            "details": self.details,
        }


# ── Config loading ────────────────────────────────────────────────

RuleFactory = Callable[[dict[str, Any]], Rule]

_RULE_FACTORIES: dict[str, RuleFactory] = {}


def register_rule_type(type_name: str, factory: RuleFactory) -> None:
    """Make a rule kind loadable from config dicts by its `type` tag."""
    _RULE_FACTORIES[type_name] = factory


def _require(config: dict[str, Any], key: str) -> Any:
    if key not in config:
        raise ConfigError(f"Rule '{config.get('type')}' missing field '{key}'")
    return config[key]


register_rule_type("block_above", lambda c: block_above(_require(c, "threshold"), _require(c, "currency")))
register_rule_type(
    "require_approval_above",
    lambda c: require_approval_above(_require(c, "threshold"), _require(c, "currency")),
)
register_rule_type("flag_above", lambda c: flag_above(_require(c, "threshold"), _require(c, "currency")))
register_rule_type("allow_all", lambda c: allow_all())
register_rule_type("block_recipients", lambda c: block_recipients(_require(c, "recipients")))
register_rule_type("allow_recipients", lambda c: allow_recipients(_require(c, "recipients")))


def rule_from_dict(config: dict[str, Any]) -> Rule:
    type_name = config.get("type")
    factory = _RULE_FACTORIES.get(str(type_name))
    if factory is None:
        raise ConfigError(f"Unknown rule type: {type_name}")
    try:
        return factory(config)
    except ValueError as e:
        raise ConfigError(f"Invalid rule '{type_name}': {e}") from e


def policy_from_dict(data: dict[str, Any]) -> Policy:
    try:
        policy_id = str(data["id"])
    except KeyError as e:
        raise ConfigError("Policy is missing 'id'") from e

    budgets = []
    for entry in data.get("budgets", []):
        try:
            budgets.append(budget(entry["window"], entry["max_amount"], entry["currency"]))
        except (KeyError, ValueError) as e:
            raise ConfigError(f"Invalid budget in policy {policy_id}: {e}") from e

    return Policy(
        id=policy_id,
        name=str(data.get("name", policy_id)),
        rules=[rule_from_dict(r) for r in data.get("rules", [])],
        budgets=budgets,
        enabled=bool(data.get("enabled", True)),
        description=str(data.get("description", "")),
        agents=[str(a) for a in data.get("agents", [])],
    )
