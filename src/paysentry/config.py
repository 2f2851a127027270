"""
Configuration: orchestrator settings, environment overrides, and JSON
policy / alert-rule files.

Environment variables:
    PAYSENTRY_DEFAULT_AGENT_ID           Agent id when the payer is unknown
    PAYSENTRY_DEFAULT_CURRENCY           Currency forced onto every mapped payment
    PAYSENTRY_ABORT_ON_POLICY_DENY       "false" lets denied payments reach the facilitator
    PAYSENTRY_CB_FAILURE_THRESHOLD       Failures before a breaker opens
    PAYSENTRY_CB_RECOVERY_TIMEOUT_MS     Cooldown before a half-open trial
    PAYSENTRY_CB_HALF_OPEN_MAX_REQUESTS  Concurrent half-open trial calls
    PAYSENTRY_SESSION_ID                 Session id reported in enriched responses
"""

from __future__ import annotations

import json
import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from .alerts import AlertRule, alert_rule_from_dict
from .circuit_breaker import CircuitBreakerConfig
from .errors import ConfigError
from .mapper import AgentResolver, DecimalsResolver, MapperConfig
from .policy import Policy, policy_from_dict

__all__ = [
    "CircuitBreakerConfig",
    "MapperConfig",
    "OrchestratorConfig",
    "load_alert_rules_file",
    "load_policy_file",
]

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def new_session_id() -> str:
    return f"ps_session_{secrets.token_hex(6)}"


@dataclass
class OrchestratorConfig:
    default_agent_id: Optional[str] = None
    default_currency: Optional[str] = None
    abort_on_policy_deny: bool = True
    session_id: str = field(default_factory=new_session_id)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    resolve_agent_id: Optional[AgentResolver] = None
    decimals_resolver: Optional[DecimalsResolver] = None

    def mapper_config(self) -> MapperConfig:
        return MapperConfig(
            default_agent_id=self.default_agent_id,
            default_currency=self.default_currency,
            resolve_agent_id=self.resolve_agent_id,
            decimals_resolver=self.decimals_resolver,
        )

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **overrides: Any) -> "OrchestratorConfig":
        """Build a config from PAYSENTRY_* variables; keyword overrides win."""
        env = os.environ if env is None else env
        defaults = CircuitBreakerConfig()
        try:
            breaker = CircuitBreakerConfig(
                failure_threshold=_env_int(env, "PAYSENTRY_CB_FAILURE_THRESHOLD", defaults.failure_threshold),
                recovery_timeout_ms=_env_int(
                    env, "PAYSENTRY_CB_RECOVERY_TIMEOUT_MS", defaults.recovery_timeout_ms
                ),
                half_open_max_requests=_env_int(
                    env, "PAYSENTRY_CB_HALF_OPEN_MAX_REQUESTS", defaults.half_open_max_requests
                ),
            )
        except ValueError as e:
            raise ConfigError(f"Invalid circuit breaker settings: {e}") from e

        values: dict[str, Any] = {
            "default_agent_id": env.get("PAYSENTRY_DEFAULT_AGENT_ID") or None,
            "default_currency": env.get("PAYSENTRY_DEFAULT_CURRENCY") or None,
            "abort_on_policy_deny": _env_bool(env, "PAYSENTRY_ABORT_ON_POLICY_DENY", True),
            "circuit_breaker": breaker,
        }
        if env.get("PAYSENTRY_SESSION_ID"):
            values["session_id"] = env["PAYSENTRY_SESSION_ID"]
        values.update(overrides)
        return cls(**values)


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"{name} must be a boolean, got {raw!r}")


# ── Files ─────────────────────────────────────────────────────────

def _read_json(path: Path) -> Any:
    try:
        with open(path) as f:
            return json.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e


def load_policy_file(path: Path | str) -> list[Policy]:
    """Load policies from a JSON file.

    Accepts a single policy object, a list of them, or {"policies": [...]}.
    """
    data = _read_json(Path(path))
    if isinstance(data, dict) and "policies" in data:
        data = data["policies"]
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ConfigError(f"Expected a policy object or list in {path}")
    return [policy_from_dict(entry) for entry in data]


def load_alert_rules_file(path: Path | str) -> list[AlertRule]:
    """Load alert rules from a JSON list or {"rules": [...]}."""
    data = _read_json(Path(path))
    if isinstance(data, dict):
        data = data.get("rules", [])
    if not isinstance(data, list):
        raise ConfigError(f"Expected a list of alert rules in {path}")
    return [alert_rule_from_dict(entry) for entry in data]
