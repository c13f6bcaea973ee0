"""
Security gate.

Every value-bearing action passes through secure_transaction(). The notional
value picks a tier; low-tier actions execute at once, higher tiers wait for
multi-signature approval when it is enabled. Every step is written to a
hash-chained audit log.

Transaction lifecycle:
    pending -> approved -> executed
            -> rejected (execution failed)
            -> expired  (TTL elapsed)
"""

import hashlib
import random
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog

from perp_mm.config.schema import SecurityConfig
from perp_mm.core.errors import AuthorizationError
from perp_mm.core.events import Event, EventBus, EventType, Subscription
from perp_mm.core.models import Order, Position, now_ms
from perp_mm.core.periodic import PeriodicTask
from perp_mm.security.anomaly import AnomalyDetector
from perp_mm.security.audit import AuditLog, ChainVerification
from perp_mm.security.signer import Signer

logger = structlog.get_logger(__name__)

Executor = Callable[[], Awaitable[Any]]


class TransactionStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"
    EXPIRED = "expired"
    CANCELED = "canceled"


@dataclass
class PendingTransaction:
    """A value-bearing action and its authorization state."""
    transaction_id: str
    type: str
    data: Any
    value: float
    security_level: str
    created_at: int
    executor: Optional[Executor] = field(default=None, repr=False)
    signatures: dict[str, str] = field(default_factory=dict)  # signer -> signature
    status: TransactionStatus = TransactionStatus.PENDING
    result: Any = None
    error: Optional[str] = None
    completed_at: Optional[int] = None

    @property
    def signers(self) -> set[str]:
        return set(self.signatures)

    def to_dict(self) -> dict:
        data = self.data.to_dict() if hasattr(self.data, "to_dict") else self.data
        return {
            "transaction_id": self.transaction_id,
            "type": self.type,
            "data": data,
            "value": self.value,
            "security_level": self.security_level,
            "created_at": self.created_at,
            "signers": sorted(self.signatures),
            "signature_count": len(self.signatures),
            "status": self.status.value,
            "error": self.error,
            "completed_at": self.completed_at,
        }


class SecurityGate:
    """
    Tiered authorization, anomaly detection and audit trail.

    The gate never places orders itself; callers hand it an executor that
    runs once the transaction is authorized.
    """

    def __init__(
        self,
        config: SecurityConfig,
        signer: Signer,
        bus: EventBus,
        clock: Callable[[], int] = now_ms,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize security gate.

        Args:
            config: Security configuration
            signer: Local signing identity
            bus: Event bus
            clock: Wall clock in epoch milliseconds
            rng: Source for transaction ids
        """
        self.config = config
        self.signer = signer
        self.bus = bus
        self._clock = clock
        self._rng = rng or random.Random()

        self.audit = AuditLog(clock=clock)
        self.anomalies = AnomalyDetector(config.anomaly, clock=clock)
        self.pending: dict[str, PendingTransaction] = {}
        self.history: deque = deque(maxlen=config.history_limit)

        self._subscriptions: list[Subscription] = []
        self._sweep = PeriodicTask("security-sweep", config.sweep_interval_s, self.sweep)
        self.running = False

        logger.info(
            "security_gate_initialized",
            multisig=config.multisig.enabled,
            required_signatures=config.multisig.required_signatures,
            anomaly_detection=config.anomaly.enabled,
        )

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        self._subscriptions = [
            self.bus.subscribe(EventType.ORDER, self._on_order, name="security.order"),
            self.bus.subscribe(EventType.POSITION, self._on_position, name="security.position"),
        ]
        self._sweep.start()
        self.running = True
        self.audit.append("security_gate_started", {"address": self.signer.address})
        logger.info("security_gate_started")

    async def stop(self) -> None:
        for subscription in self._subscriptions:
            self.bus.unsubscribe(subscription)
        self._subscriptions = []
        await self._sweep.stop()
        self.running = False
        logger.info("security_gate_stopped", pending=len(self.pending))

    def update_config(self, config: SecurityConfig) -> None:
        self.config = config
        self.anomalies.config = config.anomaly

    def _on_order(self, event: Event) -> None:
        self.record_order(event.data)

    def _on_position(self, event: Event) -> None:
        self.record_position(event.data)

    async def sweep(self) -> None:
        self.expire_transactions()
        self.detect_anomalies()

    # =========================================================================
    # AUTHORIZATION
    # =========================================================================

    def classify(self, value: float) -> str:
        """Security level for a notional value."""
        limits = self.config.transaction_limits
        if value <= limits.tier1.max_amount:
            return limits.tier1.security_level
        if value <= limits.tier2.max_amount:
            return limits.tier2.security_level
        return limits.tier3.security_level

    def is_authorized(self, signer: str) -> bool:
        allowed = {a.lower() for a in self.config.multisig.authorized_signers}
        allowed.add(self.signer.address.lower())
        return signer.lower() in allowed

    def _new_id(self) -> str:
        return str(uuid.UUID(int=self._rng.getrandbits(128), version=4))

    async def secure_transaction(
        self,
        type: str,
        data: Any,
        value: float,
        executor: Executor,
    ) -> PendingTransaction:
        """
        Authorize a value-bearing action.

        Args:
            type: Action kind ("order", ...)
            data: Payload recorded in the audit log
            value: Notional value used for tier classification
            executor: Coroutine factory that performs the action

        Returns:
            The transaction; status EXECUTED with ``result`` set, or PENDING

        Raises:
            Whatever the executor raises, after the transaction is marked rejected
        """
        level = self.classify(value)
        tx = PendingTransaction(
            transaction_id=self._new_id(),
            type=type,
            data=data,
            value=value,
            security_level=level,
            created_at=self._clock(),
            executor=executor,
        )
        self.audit.append("transaction_created", {
            "transaction_id": tx.transaction_id,
            "type": type,
            "value": value,
            "security_level": level,
        })

        if level == "low" or not self.config.multisig.enabled:
            await self._execute(tx)
            return tx

        self.pending[tx.transaction_id] = tx
        await self._add_signature(tx, self.signer.address, await self._local_signature(tx))
        logger.info(
            "transaction_pending",
            transaction_id=tx.transaction_id,
            type=type,
            value=value,
            security_level=level,
        )
        self.bus.emit(EventType.TRANSACTION_PENDING, tx.to_dict(), source="security")
        if tx.status is TransactionStatus.PENDING:
            await self._maybe_execute(tx)
        return tx

    async def _local_signature(self, tx: PendingTransaction) -> str:
        return await self.signer.sign(f"{tx.transaction_id}:{self.signer.address}:{self._clock()}")

    async def _add_signature(self, tx: PendingTransaction, signer: str, signature: str) -> None:
        tx.signatures[signer] = signature
        self.audit.append("transaction_signed", {
            "transaction_id": tx.transaction_id,
            "signer": signer,
            "signature_count": len(tx.signatures),
        })

    def _reject_signature(self, transaction_id: str, signer: str, reason: str) -> None:
        self.audit.append("signature_rejected", {
            "transaction_id": transaction_id,
            "signer": signer,
            "reason": reason,
        })
        logger.warning("signature_rejected", transaction_id=transaction_id, signer=signer, reason=reason)
        raise AuthorizationError(reason, transaction_id)

    async def sign_transaction(self, transaction_id: str, signer: str) -> PendingTransaction:
        """
        Add an external signature to a pending transaction.

        Executes the transaction once the signature threshold is reached.

        Raises:
            AuthorizationError: Unknown or non-pending transaction, unauthorized
                or repeated signer
        """
        tx = self.pending.get(transaction_id)
        if tx is None:
            self._reject_signature(transaction_id, signer, "transaction not found")
        if tx.status is not TransactionStatus.PENDING:
            self._reject_signature(transaction_id, signer, f"transaction is {tx.status.value}")
        if not self.is_authorized(signer):
            self._reject_signature(transaction_id, signer, "signer not authorized")
        if signer.lower() in {s.lower() for s in tx.signatures}:
            self._reject_signature(transaction_id, signer, "signer already signed")

        timestamp = self._clock()
        signature = hashlib.sha256(f"{transaction_id}:{signer}:{timestamp}".encode("utf-8")).hexdigest()
        await self._add_signature(tx, signer, signature)
        logger.info(
            "transaction_signed",
            transaction_id=transaction_id,
            signer=signer,
            signatures=len(tx.signatures),
            required=self.config.multisig.required_signatures,
        )
        await self._maybe_execute(tx)
        return tx

    async def _maybe_execute(self, tx: PendingTransaction) -> None:
        if len(tx.signatures) < self.config.multisig.required_signatures:
            return
        tx.status = TransactionStatus.APPROVED
        self.audit.append("transaction_approved", {"transaction_id": tx.transaction_id})
        await self._execute(tx)

    async def _execute(self, tx: PendingTransaction) -> None:
        self.pending.pop(tx.transaction_id, None)
        try:
            tx.result = await tx.executor() if tx.executor is not None else None
        except Exception as e:
            tx.status = TransactionStatus.REJECTED
            tx.error = str(e)
            tx.completed_at = self._clock()
            self.history.append(tx)
            self.audit.append("transaction_failed", {
                "transaction_id": tx.transaction_id,
                "error": str(e),
            })
            logger.error("transaction_failed", transaction_id=tx.transaction_id, error=str(e))
            self.bus.emit(EventType.TRANSACTION_FAILED, tx.to_dict(), source="security")
            raise

        tx.status = TransactionStatus.EXECUTED
        tx.completed_at = self._clock()
        self.history.append(tx)
        self.audit.append("transaction_executed", {
            "transaction_id": tx.transaction_id,
            "type": tx.type,
            "value": tx.value,
        })
        logger.debug("transaction_executed", transaction_id=tx.transaction_id, type=tx.type)
        self.bus.emit(EventType.TRANSACTION_EXECUTED, tx.to_dict(), source="security")

    def expire_transactions(self, now: Optional[int] = None) -> list[PendingTransaction]:
        """Expire pending transactions older than the TTL."""
        now = self._clock() if now is None else now
        ttl_ms = self.config.transaction_ttl_hours * 3_600_000
        expired = []
        for tx in list(self.pending.values()):
            if now - tx.created_at <= ttl_ms:
                continue
            del self.pending[tx.transaction_id]
            tx.status = TransactionStatus.EXPIRED
            tx.completed_at = now
            self.history.append(tx)
            self.audit.append("transaction_expired", {"transaction_id": tx.transaction_id})
            logger.warning("transaction_expired", transaction_id=tx.transaction_id)
            self.bus.emit(EventType.TRANSACTION_EXPIRED, tx.to_dict(), source="security")
            expired.append(tx)
        return expired

    def cancel_transaction(self, transaction_id: str, reason: str = "superseded") -> PendingTransaction:
        """
        Withdraw a pending transaction so later signatures cannot execute it.

        Raises:
            AuthorizationError: Unknown or no longer pending transaction
        """
        tx = self.pending.pop(transaction_id, None)
        if tx is None:
            raise AuthorizationError("transaction is not pending", transaction_id)
        tx.status = TransactionStatus.CANCELED
        tx.error = reason
        tx.completed_at = self._clock()
        self.history.append(tx)
        self.audit.append("transaction_canceled", {"transaction_id": transaction_id, "reason": reason})
        logger.info("transaction_canceled", transaction_id=transaction_id, reason=reason)
        self.bus.emit(EventType.TRANSACTION_CANCELED, tx.to_dict(), source="security")
        return tx

    # =========================================================================
    # ACTIVITY MONITORING
    # =========================================================================

    def record_order(self, order: Order) -> None:
        self.anomalies.record_order(order, self._clock())
        self.audit.append("order_activity", {
            "order_id": order.order_id,
            "symbol": order.symbol,
            "side": order.side.value,
            "type": order.order_type.value,
            "size": order.size,
            "price": order.price,
            "status": order.status.value,
        })

    def record_position(self, position: Position) -> None:
        self.anomalies.record_position(position)
        self.audit.append("position_update", {
            "symbol": position.symbol,
            "size": position.size,
            "entry_price": position.entry_price,
            "unrealized_pnl": position.unrealized_pnl,
        })

    def detect_anomalies(self, now: Optional[int] = None) -> Optional[dict]:
        report = self.anomalies.detect(now)
        if report is None:
            return None
        payload = report.to_dict()
        self.audit.append("anomaly_detected", payload)
        self.bus.emit(EventType.ANOMALY_DETECTED, payload, source="security")
        return payload

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_pending_transactions(self) -> list[dict]:
        return [tx.to_dict() for tx in self.pending.values()]

    def get_transaction_history(self, limit: int = 100) -> list[dict]:
        return [tx.to_dict() for tx in list(self.history)[-limit:]]

    def get_audit_log(self, limit: int = 100) -> list[dict]:
        return [entry.to_dict() for entry in self.audit.tail(limit)]

    def verify_audit_log(self) -> ChainVerification:
        return self.audit.verify()

    def get_state(self) -> dict:
        return {
            "running": self.running,
            "wallet": {"address": self.signer.address, "is_ready": self.signer.is_ready},
            "pending_transactions": len(self.pending),
            "transaction_history": len(self.history),
            "audit_entries": len(self.audit),
            "anomaly": self.anomalies.get_state(),
        }
