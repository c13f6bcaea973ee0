"""Authorization, anomaly detection and audit trail."""

from perp_mm.security.anomaly import AnomalyDetector, AnomalyReport, sensitivity_threshold
from perp_mm.security.audit import (
    GENESIS_HASH,
    AuditEntry,
    AuditLog,
    ChainVerification,
    compute_entry_hash,
    verify_chain,
)
from perp_mm.security.gate import PendingTransaction, SecurityGate, TransactionStatus
from perp_mm.security.signer import LocalSigner, Signer

__all__ = [
    "AnomalyDetector",
    "AnomalyReport",
    "sensitivity_threshold",
    "GENESIS_HASH",
    "AuditEntry",
    "AuditLog",
    "ChainVerification",
    "compute_entry_hash",
    "verify_chain",
    "PendingTransaction",
    "SecurityGate",
    "TransactionStatus",
    "LocalSigner",
    "Signer",
]
