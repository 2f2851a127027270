"""
PaySentry CLI: operator tools for policies and audit logs.

Commands:
    paysentry evaluate       Evaluate a hypothetical payment against a policy file
    paysentry policy check   Validate a policy file and list its rules
    paysentry alerts check   Validate an alert-rule file
    paysentry audit          Verify and print a durable provenance log
"""

from __future__ import annotations

import json
import logging
import sys
import time
from pathlib import Path
from typing import Optional

import click

from . import __version__
from .config import load_alert_rules_file, load_policy_file
from .errors import AuditIntegrityError, ConfigError
from .policy_engine import PolicyEngine
from .provenance import DEFAULT_AUDIT_KEY_PATH, TransactionProvenance
from .transaction import create_transaction


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Log engine decisions to stderr")
def main(verbose: bool):
    """PaySentry: spending controls for agent payments."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")


@main.command()
@click.option("--policy", "policy_file", required=True, type=click.Path(exists=True, dir_okay=False),
              help="JSON policy file")
@click.option("--amount", required=True, help="Payment amount in major units, e.g. 45.00")
@click.option("--currency", default="USDC", show_default=True)
@click.option("--recipient", default="unknown-recipient", help="Recipient address or id")
@click.option("--agent", "agent_id", default="cli-agent", help="Agent id the payment is attributed to")
def evaluate(policy_file: str, amount: str, currency: str, recipient: str, agent_id: str):
    """Evaluate a payment against a policy file. Exits 1 unless allowed."""
    try:
        policies = load_policy_file(policy_file)
        tx = create_transaction(agent_id=agent_id, recipient=recipient, amount=amount, currency=currency)
    except (ConfigError, ValueError) as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(2)

    engine = PolicyEngine()
    for policy in policies:
        engine.load_policy(policy)
    result = engine.evaluate(tx)

    click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    if not result.allowed:
        sys.exit(1)


@main.group("policy")
def policy_group():
    """Policy file tools."""


@policy_group.command("check")
@click.argument("policy_file", type=click.Path(exists=True, dir_okay=False))
def policy_check(policy_file: str):
    """Validate a policy file and list its rules and budgets."""
    try:
        policies = load_policy_file(policy_file)
    except ConfigError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    for policy in policies:
        state = "" if policy.enabled else " (disabled)"
        scope = ", ".join(policy.agents) if policy.agents else "all agents"
        click.echo(f"Policy {policy.id}: {policy.name}{state} [{scope}]")
        for index, rule in enumerate(policy.rules, start=1):
            click.echo(f"  {index}. {rule.action.value:<16} {rule.describe()}")
        for b in policy.budgets:
            click.echo(f"  budget: {b.describe()}")
        if not policy.has_catch_all:
            click.echo("  ⚠️  No allow_all rule: unmatched payments are denied by default")


@main.group("alerts")
def alerts_group():
    """Alert rule tools."""


@alerts_group.command("check")
@click.argument("rules_file", type=click.Path(exists=True, dir_okay=False))
def alerts_check(rules_file: str):
    """Validate an alert-rule file."""
    try:
        rules = load_alert_rules_file(rules_file)
    except ConfigError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    for rule in rules:
        state = "" if rule.enabled else " (disabled)"
        click.echo(f"{rule.id}: {rule.type.value} [{rule.severity.value}]{state}")


@main.command()
@click.argument("audit_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--tx-id", default=None, help="Only show records for this transaction")
@click.option("--key-file", type=click.Path(dir_okay=False), default=None,
              help=f"HMAC key file (default: {DEFAULT_AUDIT_KEY_PATH})")
def audit(audit_file: str, tx_id: Optional[str], key_file: Optional[str]):
    """Verify a provenance log's hash chain and print its records."""
    provenance = TransactionProvenance(
        path=Path(audit_file),
        key_path=Path(key_file) if key_file else None,
    )
    try:
        records = provenance.read_records(transaction_id=tx_id)
    except AuditIntegrityError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if not records:
        click.echo("No provenance records found.")
        return

    for record in records:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(record.timestamp))
        status = "✅" if record.outcome.value == "pass" else "❌"
        click.echo(f"  {ts} {status} {record.transaction_id} {record.stage.value}")


if __name__ == "__main__":
    main()
