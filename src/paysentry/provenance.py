"""
Transaction provenance: the stage-ordered audit trail of every payment.

Records are kept in memory per transaction id. When a path is given they
are also appended to a JSONL file with an HMAC hash chain so tampering is
detected during reads.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import secrets
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from .errors import AuditIntegrityError, ProvenanceOrderError
from .storage import append_json_line, ensure_private_dir, ensure_private_file, iter_json_lines
from .transaction import Transaction

logger = logging.getLogger(__name__)

AUDIT_HMAC_KEY_ENV = "PAYSENTRY_AUDIT_HMAC_KEY"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".paysentry-secrets" / "audit_hmac.key"


class ProvenanceStage(str, Enum):
    INTENT = "intent"
    POLICY_CHECK = "policy_check"
    EXECUTION = "execution"
    SETTLEMENT = "settlement"

    @property
    def order(self) -> int:
        return _STAGE_ORDER.index(self)


_STAGE_ORDER = [
    ProvenanceStage.INTENT,
    ProvenanceStage.POLICY_CHECK,
    ProvenanceStage.EXECUTION,
    ProvenanceStage.SETTLEMENT,
]


class ProvenanceOutcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"


@dataclass(frozen=True)
class ProvenanceRecord:
    transaction_id: str
    stage: ProvenanceStage
    outcome: ProvenanceOutcome
    timestamp: float
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "stage": self.stage.value,
            "outcome": self.outcome.value,
            "timestamp": self.timestamp,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProvenanceRecord":
        return cls(
            transaction_id=data["transaction_id"],
            stage=ProvenanceStage(data["stage"]),
            outcome=ProvenanceOutcome(data["outcome"]),
            timestamp=float(data["timestamp"]),
            metadata=dict(data.get("metadata") or {}),
        )


class TransactionProvenance:
    """Append-only provenance recorder, optionally backed by a durable log."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._clock = clock
        self._lock = threading.Lock()
        self._records: dict[str, list[ProvenanceRecord]] = {}

        self.path = Path(path) if path is not None else None
        self.key_path = Path(key_path) if key_path is not None else DEFAULT_AUDIT_KEY_PATH
        self._hmac_key = b""
        self._last_hash = ""
        if self.path is not None:
            ensure_private_dir(self.path.parent)
            ensure_private_file(self.path)
            self._hmac_key = self._load_or_create_key()
            self._last_hash = self._scan_last_hash()

    # ── Recording ─────────────────────────────────────────────────

    def record(
        self,
        transaction_id: str,
        stage: ProvenanceStage,
        outcome: ProvenanceOutcome,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ProvenanceRecord:
        stage = ProvenanceStage(stage)
        outcome = ProvenanceOutcome(outcome)
        # Round-trip through JSON so memory and disk hold identical values.
        clean_metadata = json.loads(json.dumps(metadata or {}, default=str))

        with self._lock:
            history = self._records.setdefault(transaction_id, [])
            if history and stage.order < history[-1].stage.order:
                raise ProvenanceOrderError(
                    f"Cannot record {stage.value} for {transaction_id} after {history[-1].stage.value}"
                )
            entry = ProvenanceRecord(
                transaction_id=transaction_id,
                stage=stage,
                outcome=outcome,
                timestamp=self._clock(),
                metadata=clean_metadata,
            )
            if self.path is not None:
                self._append(entry)
            history.append(entry)

        logger.debug("Provenance %s: %s=%s", transaction_id, stage.value, outcome.value)
        return entry

    def record_intent(self, tx: Transaction, metadata: Optional[dict[str, Any]] = None) -> ProvenanceRecord:
        details = {
            "agent_id": tx.agent_id,
            "recipient": tx.recipient,
            "amount": str(tx.amount),
            "currency": tx.currency,
            "protocol": tx.protocol,
        }
        details.update(metadata or {})
        return self.record(tx.id, ProvenanceStage.INTENT, ProvenanceOutcome.PASS, details)

    def record_policy_check(
        self, transaction_id: str, outcome: ProvenanceOutcome, metadata: Optional[dict[str, Any]] = None
    ) -> ProvenanceRecord:
        return self.record(transaction_id, ProvenanceStage.POLICY_CHECK, outcome, metadata)

    def record_execution(
        self, transaction_id: str, outcome: ProvenanceOutcome, metadata: Optional[dict[str, Any]] = None
    ) -> ProvenanceRecord:
        return self.record(transaction_id, ProvenanceStage.EXECUTION, outcome, metadata)

    def record_settlement(
        self, transaction_id: str, outcome: ProvenanceOutcome, metadata: Optional[dict[str, Any]] = None
    ) -> ProvenanceRecord:
        return self.record(transaction_id, ProvenanceStage.SETTLEMENT, outcome, metadata)

    # ── Reading ───────────────────────────────────────────────────

    def get_history(self, transaction_id: str) -> list[ProvenanceRecord]:
        with self._lock:
            return list(self._records.get(transaction_id, []))

    def transaction_ids(self) -> list[str]:
        with self._lock:
            return list(self._records)

    def read_records(self, transaction_id: Optional[str] = None) -> list[ProvenanceRecord]:
        """Read the durable log, verifying the full hash chain."""
        if self.path is None:
            raise ValueError("Provenance has no durable path configured")

        records: list[ProvenanceRecord] = []
        expected_prev = ""
        for raw in iter_json_lines(self.path):
            payload = {k: v for k, v in raw.items() if k not in {"prev_hash", "record_hash"}}
            prev_hash = raw.get("prev_hash", "") or ""
            record_hash = raw.get("record_hash", "") or ""
            if prev_hash != expected_prev:
                raise AuditIntegrityError("Audit chain broken: previous hash mismatch")
            if not hmac.compare_digest(self._record_hash(payload, prev_hash), record_hash):
                raise AuditIntegrityError("Audit chain broken: record hash mismatch")
            expected_prev = record_hash

            if transaction_id and payload.get("transaction_id") != transaction_id:
                continue
            records.append(ProvenanceRecord.from_dict(payload))
        return records

    # ── Durable sink ──────────────────────────────────────────────

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv(AUDIT_HMAC_KEY_ENV)
        if env_key:
            return env_key.encode()
        ensure_private_dir(self.key_path.parent)
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    def _scan_last_hash(self) -> str:
        last = ""
        for raw in iter_json_lines(self.path):
            last = raw.get("record_hash", "")
        return last

    def _record_hash(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def _append(self, entry: ProvenanceRecord) -> None:
        payload = entry.to_dict()
        current_hash = self._record_hash(payload, self._last_hash)
        line = dict(payload, prev_hash=self._last_hash or None, record_hash=current_hash)
        append_json_line(self.path, line)
        self._last_hash = current_hash
