"""
Audit ledger for facilitator governance decisions.

Every verify/settle attempt produces exactly one ``AuditLogEntry``. Sinks are
append-only: entries are never mutated or removed. ``JsonlAuditTrail`` adds
an HMAC hash chain so tampering is detected during reads.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
import secrets
import sys
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Protocol, TextIO

from .errors import AuditIntegrityError
from .storage import ensure_private_dir, ensure_private_file


DEFAULT_AUDIT_PATH = Path.home() / ".purser" / "audit.jsonl"
DEFAULT_AUDIT_KEY_PATH = Path.home() / ".purser-secrets" / "audit_hmac.key"
AUDIT_HMAC_KEY_ENV = "PURSER_AUDIT_HMAC_KEY"


class AuditAction(str, Enum):
    VERIFY = "verify"
    SETTLE = "settle"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    REJECTED = "rejected"
    FAILED = "failed"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class AuditLogEntry:
    """A single governance decision."""

    action: str
    status: str
    payer_address: str
    recipient_address: str
    amount: str
    token_mint: str
    network: str
    governance_result: dict[str, Any] = field(default_factory=dict)
    latency_ms: float = 0.0
    tx_signature: Optional[str] = None
    error_reason: Optional[str] = None
    timestamp: str = field(default_factory=utc_timestamp)

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))


class AuditLogger(Protocol):
    def log(self, entry: AuditLogEntry) -> None: ...


class InMemoryAuditLogger:
    """Captures entries in a list; used by tests and the health endpoint."""

    def __init__(self):
        self.entries: list[AuditLogEntry] = []

    def log(self, entry: AuditLogEntry) -> None:
        self.entries.append(entry)

    def clear(self) -> None:
        self.entries.clear()


class StreamAuditLogger:
    """Writes one JSON object per line to a text stream (stdout by default)."""

    def __init__(self, stream: Optional[TextIO] = None):
        self._stream = stream
        self._lock = threading.Lock()

    def log(self, entry: AuditLogEntry) -> None:
        stream = self._stream or sys.stdout
        with self._lock:
            stream.write(entry.to_json() + "\n")
            stream.flush()


class JsonlAuditTrail:
    """Tamper-evident append-only JSONL audit log."""

    def __init__(
        self,
        path: Optional[Path] = None,
        key_path: Optional[Path] = None,
    ):
        self.path = Path(path) if path else DEFAULT_AUDIT_PATH
        self.key_path = Path(key_path) if key_path else DEFAULT_AUDIT_KEY_PATH

        ensure_private_dir(self.path.parent)
        ensure_private_dir(self.key_path.parent)
        ensure_private_file(self.path)
        ensure_private_file(self.key_path)

        self._lock = threading.Lock()
        self._hmac_key = self._load_or_create_key()
        self._last_hash = self._scan_last_hash()

    def _load_or_create_key(self) -> bytes:
        env_key = os.getenv(AUDIT_HMAC_KEY_ENV)
        if env_key:
            return env_key.encode()
        if self.key_path.exists() and self.key_path.stat().st_size > 0:
            return self.key_path.read_bytes().strip()
        key = secrets.token_hex(32).encode()
        self.key_path.write_bytes(key)
        ensure_private_file(self.key_path)
        return key

    def _scan_last_hash(self) -> str:
        last = ""
        with open(self.path, "r") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    last = json.loads(line).get("entry_hash", "")
                except ValueError as e:
                    raise AuditIntegrityError(f"Audit log {self.path} contains a corrupt line") from e
        return last

    def _entry_hash(self, payload: dict, prev_hash: str) -> str:
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
        digest = hmac.new(self._hmac_key, f"{prev_hash}|{canonical}".encode(), hashlib.sha256)
        return digest.hexdigest()

    def log(self, entry: AuditLogEntry) -> None:
        payload = entry.to_dict()
        with self._lock:
            prev_hash = self._last_hash
            current_hash = self._entry_hash(payload, prev_hash)
            record = {**payload, "prev_hash": prev_hash, "entry_hash": current_hash}

            with open(self.path, "a") as f:
                f.write(json.dumps(record, separators=(",", ":")) + "\n")
                f.flush()
                os.fsync(f.fileno())
            ensure_private_file(self.path)
            self._last_hash = current_hash

    def read_entries(self, action: Optional[AuditAction] = None, limit: int = 100) -> list[AuditLogEntry]:
        """Read entries, verifying the whole chain first."""
        entries: list[AuditLogEntry] = []
        expected_prev = ""
        with open(self.path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    raw = json.loads(line)
                except ValueError as e:
                    raise AuditIntegrityError("Audit chain broken: unreadable entry") from e

                payload = {k: v for k, v in raw.items() if k not in {"prev_hash", "entry_hash"}}
                prev_hash = raw.get("prev_hash", "") or ""
                entry_hash = raw.get("entry_hash", "") or ""
                if prev_hash != expected_prev:
                    raise AuditIntegrityError("Audit chain broken: previous hash mismatch")
                expected_hash = self._entry_hash(payload, prev_hash)
                if not hmac.compare_digest(expected_hash, entry_hash):
                    raise AuditIntegrityError("Audit chain broken: entry hash mismatch")
                expected_prev = entry_hash

                if action and raw.get("action") != action.value:
                    continue
                entries.append(
                    AuditLogEntry(
                        **{k: v for k, v in payload.items() if k in AuditLogEntry.__dataclass_fields__}
                    )
                )

        return entries[-limit:]

    def summary(self) -> dict:
        entries = self.read_entries(limit=10_000)
        by_status: dict[str, int] = {}
        for e in entries:
            by_status[e.status] = by_status.get(e.status, 0) + 1
        return {
            "total_entries": len(entries),
            "by_status": by_status,
            "last_entry": entries[-1].to_dict() if entries else None,
        }
