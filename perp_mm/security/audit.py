"""
Hash-chained audit trail.

Each entry stores the hash of its predecessor and its own hash over
(timestamp, action, details, previous_hash). Rewriting any stored entry
breaks either its own hash or the link from its successor, and
verify_chain() reports the first broken index.
"""

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

import structlog

from perp_mm.core.models import now_ms

logger = structlog.get_logger(__name__)

GENESIS_HASH = "0" * 64


def _canonical(payload: dict) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def compute_entry_hash(timestamp: int, action: str, details: Any, previous_hash: str) -> str:
    payload = {
        "timestamp": timestamp,
        "action": action,
        "details": details,
        "previous_hash": previous_hash,
    }
    return hashlib.sha256(_canonical(payload).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class AuditEntry:
    """One immutable audit record."""
    index: int
    timestamp: int
    action: str
    details: Any
    previous_hash: str
    hash: str

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "timestamp": self.timestamp,
            "action": self.action,
            "details": self.details,
            "previous_hash": self.previous_hash,
            "hash": self.hash,
        }


@dataclass
class ChainVerification:
    """Result of verifying an audit chain."""
    valid: bool
    entries_checked: int
    broken_at: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "entries_checked": self.entries_checked,
            "broken_at": self.broken_at,
            "reason": self.reason,
        }


def verify_chain(entries: Sequence[AuditEntry], anchor_hash: str = GENESIS_HASH) -> ChainVerification:
    """
    Recompute every hash and check every link.

    Args:
        entries: Entries in insertion order
        anchor_hash: Expected previous_hash of the first entry

    Returns:
        ChainVerification with the first broken position, if any
    """
    expected_previous = anchor_hash
    for position, entry in enumerate(entries):
        if entry.previous_hash != expected_previous:
            return ChainVerification(False, position, position, "previous_hash link mismatch")
        recomputed = compute_entry_hash(entry.timestamp, entry.action, entry.details, entry.previous_hash)
        if recomputed != entry.hash:
            return ChainVerification(False, position, position, "hash mismatch")
        expected_previous = entry.hash
    return ChainVerification(True, len(entries))


class AuditLog:
    """
    Append-only, hash-chained log.

    When the retention bound is reached the oldest entries are dropped and
    the anchor advances to the dropped entry's hash, so the retained suffix
    still verifies on its own.
    """

    def __init__(
        self,
        max_entries: int = 10_000,
        clock: Callable[[], int] = now_ms,
    ):
        self.max_entries = max_entries
        self._clock = clock
        self._entries: list[AuditEntry] = []
        self.anchor_hash = GENESIS_HASH
        self._next_index = 0

        logger.info("audit_log_initialized", max_entries=max_entries)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def head_hash(self) -> str:
        return self._entries[-1].hash if self._entries else self.anchor_hash

    def append(self, action: str, details: Any) -> AuditEntry:
        # Round-trip so the stored details are exactly what was hashed
        details = json.loads(_canonical({"d": details}))["d"]
        timestamp = self._clock()
        previous_hash = self.head_hash
        entry = AuditEntry(
            index=self._next_index,
            timestamp=timestamp,
            action=action,
            details=details,
            previous_hash=previous_hash,
            hash=compute_entry_hash(timestamp, action, details, previous_hash),
        )
        self._entries.append(entry)
        self._next_index += 1

        if len(self._entries) > self.max_entries:
            dropped = self._entries.pop(0)
            self.anchor_hash = dropped.hash
        return entry

    def entries(self) -> list[AuditEntry]:
        return list(self._entries)

    def tail(self, limit: int = 100) -> list[AuditEntry]:
        return self._entries[-limit:] if limit else []

    def verify(self) -> ChainVerification:
        result = verify_chain(self._entries, self.anchor_hash)
        if not result.valid:
            logger.error("audit_chain_broken", **result.to_dict())
        return result
