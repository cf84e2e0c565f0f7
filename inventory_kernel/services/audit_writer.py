"""
AuditChainWriter -- appends signed, chained audit entries.

Responsibility:
    Reduces before/after state to a minimal diff, allocates the next chain
    position, links the entry to the current chain tail, signs it, and
    flushes it inside the caller's transaction.

Architecture position:
    Kernel > Services -- imperative shell.  Called by the backup lifecycle,
    the revert service, and (through IntegrityService.record_audit) every
    collaborator that mutates inventory, users, or settings.

Invariants enforced:
    - signature(i) = HMAC(fields(i) | signature(i-1)); the first entry links
      to GENESIS_SIGNATURE.
    - seq comes from SequenceService (locked counter row), never max+1.
    - The chain tail is read and the new entry committed while the
      process-wide AuditChainLock is held (see ``audit_unit_of_work``).

Failure modes:
    - Critical actions (REVERT, BACKUP, RESTORE, DELETE, any change to a User
      or Settings entity): the persistence error propagates and fails the
      triggering operation.
    - VIEW: written inside a savepoint; a failure is logged, counted in
      ``AuditFailureCounter`` and swallowed so the read still succeeds.
"""

import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Generator, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from inventory_kernel.db.engine import session_scope
from inventory_kernel.domain.audit import (
    AuditAction,
    AuditEntityType,
    NetworkMeta,
    is_critical,
)
from inventory_kernel.domain.changes import compute_diff
from inventory_kernel.domain.clock import Clock, SystemClock, as_utc
from inventory_kernel.exceptions import ConcurrencyError
from inventory_kernel.logging_config import get_logger
from inventory_kernel.models.audit_entry import AuditEntry
from inventory_kernel.services.sequence_service import SequenceService
from inventory_kernel.utils.hashing import canonicalize_json, to_json_safe
from inventory_kernel.utils.signing import GENESIS_SIGNATURE, AuditSigner

logger = get_logger("services.audit_writer")


def signed_fields(
    *,
    seq: int,
    occurred_at: datetime,
    actor_id: str,
    action: str,
    entity_type: str,
    entity_id: str,
    changes: Mapping[str, Any] | None,
    ip_address: str | None,
    user_agent: str | None,
    prev_signature: str,
) -> tuple[str | None, ...]:
    """The fixed-order field tuple covered by an entry's signature."""
    return (
        str(seq),
        as_utc(occurred_at).isoformat(timespec="microseconds"),
        actor_id,
        AuditAction(action).value,
        AuditEntityType(entity_type).value,
        entity_id,
        canonicalize_json(changes) if changes is not None else None,
        ip_address,
        user_agent,
        prev_signature,
    )


class AuditChainLock:
    """
    Process-wide exclusive hold on the chain tail.

    Re-entrant for the owning thread, so a unit of work that already holds
    it may call helpers that take it again.
    """

    def __init__(self, timeout_seconds: float = 30.0):
        self._lock = threading.RLock()
        self._owner: int | None = None
        self._depth = 0
        self.timeout_seconds = timeout_seconds

    def acquire(self) -> None:
        if not self._lock.acquire(timeout=self.timeout_seconds):
            raise ConcurrencyError(
                f"Timed out after {self.timeout_seconds}s waiting for the audit chain lock"
            )
        self._owner = threading.get_ident()
        self._depth += 1

    def release(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._owner = None
        self._lock.release()

    def held_by_current_thread(self) -> bool:
        return self._owner == threading.get_ident()

    def __enter__(self) -> "AuditChainLock":
        self.acquire()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.release()


@contextmanager
def audit_unit_of_work(
    session_factory: sessionmaker[Session],
    chain_lock: AuditChainLock,
) -> Generator[Session, None, None]:
    """
    Transactional scope for work that appends audit entries.

    The chain lock is taken before the session opens and released only after
    commit or rollback, so no other writer can read the same tail.
    """
    with chain_lock:
        with session_scope(session_factory) as session:
            yield session


class AuditFailureCounter:
    """Thread-safe count of dropped best-effort audit writes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._count = 0

    def increment(self) -> int:
        with self._lock:
            self._count += 1
            return self._count

    @property
    def count(self) -> int:
        with self._lock:
            return self._count


@dataclass(frozen=True)
class PendingAuditEntry:
    """A best-effort entry queued for a later batched write."""

    actor_id: str
    action: AuditAction
    entity_type: AuditEntityType
    entity_id: str
    changes: dict[str, Any] | None
    network: NetworkMeta
    occurred_at: datetime


class AuditChainWriter:
    """
    Appends entries to the audit chain within the caller's session.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    def __init__(
        self,
        session: Session,
        signer: AuditSigner,
        clock: Clock | None = None,
        chain_lock: AuditChainLock | None = None,
        failure_counter: AuditFailureCounter | None = None,
    ):
        self._session = session
        self._signer = signer
        self._clock = clock or SystemClock()
        self._chain_lock = chain_lock
        self._failures = failure_counter or AuditFailureCounter()
        self._sequence_service = SequenceService(session)

    @property
    def failure_count(self) -> int:
        return self._failures.count

    def _tail_signature(self) -> str:
        last = self._session.execute(
            select(AuditEntry.signature).order_by(AuditEntry.seq.desc()).limit(1)
        ).scalar_one_or_none()
        return last or GENESIS_SIGNATURE

    def _append(
        self,
        actor_id: str,
        action: AuditAction,
        entity_type: AuditEntityType,
        entity_id: str,
        changes: dict[str, Any] | None,
        network: NetworkMeta,
        occurred_at: datetime | None = None,
    ) -> AuditEntry:
        if self._chain_lock is not None and not self._chain_lock.held_by_current_thread():
            raise RuntimeError(
                "Audit entries must be written inside audit_unit_of_work()"
            )

        seq = self._sequence_service.next_value(SequenceService.AUDIT_ENTRY)
        prev_signature = self._tail_signature()
        occurred_at = as_utc(occurred_at or self._clock.now())

        fields = signed_fields(
            seq=seq,
            occurred_at=occurred_at,
            actor_id=actor_id,
            action=action.value,
            entity_type=entity_type.value,
            entity_id=entity_id,
            changes=changes,
            ip_address=network.ip_address,
            user_agent=network.user_agent,
            prev_signature=prev_signature,
        )
        entry = AuditEntry(
            seq=seq,
            occurred_at=occurred_at,
            actor_id=actor_id,
            action=action.value,
            entity_type=entity_type.value,
            entity_id=entity_id,
            changes=changes,
            ip_address=network.ip_address,
            user_agent=network.user_agent,
            prev_signature=prev_signature,
            signature=self._signer.sign(fields),
        )
        self._session.add(entry)
        self._session.flush()
        return entry

    def record(
        self,
        actor_id: str,
        action: AuditAction | str,
        entity_type: AuditEntityType | str,
        entity_id: Any,
        *,
        before: Mapping[str, Any] | None = None,
        after: Mapping[str, Any] | None = None,
        changes: Mapping[str, Any] | None = None,
        network: NetworkMeta | None = None,
    ) -> AuditEntry | None:
        """
        Append one entry.

        Either pass ``before``/``after`` (reduced to a minimal diff) or a
        ready-made ``changes`` payload, not both.

        Returns:
            The flushed AuditEntry, or None when a best-effort write failed.

        Raises:
            ValueError: both ``changes`` and ``before``/``after`` supplied.
            Any persistence error, for critical actions.
        """
        action = AuditAction(action)
        entity_type = AuditEntityType(entity_type)
        if changes is not None and (before is not None or after is not None):
            raise ValueError("Pass either changes or before/after, not both")

        if changes is not None:
            payload = to_json_safe(dict(changes))
        elif before is not None or after is not None:
            payload = compute_diff(before, after)
        else:
            payload = None

        network = network or NetworkMeta()
        critical = is_critical(action, entity_type)
        log_extra = {
            "actor_id": actor_id,
            "action": action.value,
            "entity_type": entity_type.value,
            "entity_id": str(entity_id),
            "critical": critical,
        }

        if critical:
            try:
                entry = self._append(
                    actor_id, action, entity_type, str(entity_id), payload, network
                )
            except Exception:
                logger.error("audit_write_failed", extra=log_extra, exc_info=True)
                raise
        else:
            try:
                with self._session.begin_nested():
                    entry = self._append(
                        actor_id, action, entity_type, str(entity_id), payload, network
                    )
            except Exception:
                failures = self._failures.increment()
                logger.warning(
                    "audit_write_dropped",
                    extra={**log_extra, "failure_count": failures},
                    exc_info=True,
                )
                return None

        logger.info("audit_entry_recorded", extra={**log_extra, "seq": entry.seq})
        return entry

    def write_pending(self, pending: PendingAuditEntry) -> AuditEntry:
        """Append a previously queued entry, keeping its original timestamp."""
        return self._append(
            pending.actor_id,
            pending.action,
            pending.entity_type,
            pending.entity_id,
            pending.changes,
            pending.network,
            occurred_at=pending.occurred_at,
        )


class DeferredAuditQueue:
    """
    Queue for low-criticality entries, written later in one batch.

    Only best-effort actions may be deferred; critical actions must be
    written in the same unit of work as the mutation they describe.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        signer: AuditSigner,
        chain_lock: AuditChainLock,
        clock: Clock | None = None,
        failure_counter: AuditFailureCounter | None = None,
    ):
        self._session_factory = session_factory
        self._signer = signer
        self._chain_lock = chain_lock
        self._clock = clock or SystemClock()
        self._failures = failure_counter or AuditFailureCounter()
        self._queue: deque[PendingAuditEntry] = deque()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)

    def enqueue(
        self,
        actor_id: str,
        action: AuditAction | str,
        entity_type: AuditEntityType | str,
        entity_id: Any,
        changes: Mapping[str, Any] | None = None,
        network: NetworkMeta | None = None,
    ) -> None:
        action = AuditAction(action)
        entity_type = AuditEntityType(entity_type)
        if is_critical(action, entity_type):
            raise ValueError(
                f"{action.value} on {entity_type.value} is critical and cannot be deferred"
            )
        pending = PendingAuditEntry(
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id),
            changes=to_json_safe(dict(changes)) if changes is not None else None,
            network=network or NetworkMeta(),
            occurred_at=self._clock.now(),
        )
        with self._lock:
            self._queue.append(pending)

    def flush_deferred(self) -> int:
        """
        Write every queued entry in one unit of work.

        Returns:
            Number of entries written.  On failure the batch is dropped,
            counted, and logged; the error does not propagate.
        """
        with self._lock:
            batch = list(self._queue)
            self._queue.clear()
        if not batch:
            return 0

        try:
            with audit_unit_of_work(self._session_factory, self._chain_lock) as session:
                writer = AuditChainWriter(
                    session, self._signer, self._clock, self._chain_lock, self._failures
                )
                for pending in batch:
                    writer.write_pending(pending)
        except Exception:
            for _ in batch:
                self._failures.increment()
            logger.warning(
                "deferred_audit_batch_dropped",
                extra={"batch_size": len(batch), "failure_count": self._failures.count},
                exc_info=True,
            )
            return 0

        logger.info("deferred_audit_batch_written", extra={"batch_size": len(batch)})
        return len(batch)
