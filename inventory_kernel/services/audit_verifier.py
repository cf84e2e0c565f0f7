"""
AuditChainVerifier -- tamper detection over the audit chain.

Responsibility:
    Walks audit entries in ``seq`` order, recomputing each signature from the
    entry's stored fields and the previous entry's stored signature.  Reports
    the first entry that fails, or confirms the range is intact.

Architecture position:
    Kernel > Services.  Read-only: never writes, never commits.

Detected conditions (first one wins, reported by seq):
    - sequence gap: an entry is missing (out-of-band deletion);
    - linkage mismatch: prev_signature differs from the predecessor's
      stored signature;
    - signature mismatch: a signed field or the signature itself was altered;
    - truncation: on walks that run to the tail, the last seq is below the
      audit sequence counter (trailing entries were deleted).

The walk streams rows and carries O(1) state (previous seq and signature),
so a full verification is one linear scan.
"""

from sqlalchemy import select
from sqlalchemy.orm import Session

from inventory_kernel.domain.audit import ChainVerification
from inventory_kernel.exceptions import AuditChainBrokenError, InvalidAuditQueryError
from inventory_kernel.logging_config import get_logger
from inventory_kernel.models.audit_entry import AuditEntry
from inventory_kernel.services.audit_writer import signed_fields
from inventory_kernel.services.sequence_service import SequenceService
from inventory_kernel.utils.signing import GENESIS_SIGNATURE, AuditSigner

logger = get_logger("services.audit_verifier")

_BATCH_SIZE = 500


class AuditChainVerifier:
    def __init__(self, session: Session, signer: AuditSigner):
        self._session = session
        self._signer = signer

    def _predecessor(self, start_seq: int) -> AuditEntry | None:
        return self._session.execute(
            select(AuditEntry)
            .where(AuditEntry.seq < start_seq)
            .order_by(AuditEntry.seq.desc())
            .limit(1)
        ).scalar_one_or_none()

    def verify_chain(
        self,
        start_seq: int | None = None,
        end_seq: int | None = None,
    ) -> ChainVerification:
        """
        Verify entries with ``start_seq <= seq <= end_seq`` (both optional).

        A range that starts mid-chain is anchored on the stored signature of
        the entry just before it.
        """
        if start_seq is not None and end_seq is not None and start_seq > end_seq:
            raise InvalidAuditQueryError(
                f"start_seq {start_seq} is after end_seq {end_seq}"
            )

        prev_signature = GENESIS_SIGNATURE
        expected_seq: int | None = 1
        if start_seq is not None and start_seq > 1:
            predecessor = self._predecessor(start_seq)
            if predecessor is not None:
                prev_signature = predecessor.signature
                expected_seq = predecessor.seq + 1
            else:
                # Range starts past the head; the gap check is left to full walks
                expected_seq = None

        stmt = select(AuditEntry).order_by(AuditEntry.seq)
        if start_seq is not None:
            stmt = stmt.where(AuditEntry.seq >= start_seq)
        if end_seq is not None:
            stmt = stmt.where(AuditEntry.seq <= end_seq)

        # Read before the walk: entries committed later only extend the tail
        allocated = (
            SequenceService(self._session).current_value(SequenceService.AUDIT_ENTRY)
            if end_seq is None
            else None
        )

        checked = 0
        last_seq: int | None = None
        rows = self._session.execute(stmt.execution_options(yield_per=_BATCH_SIZE)).scalars()
        for entry in rows:
            reason = self._check(entry, expected_seq, prev_signature)
            if reason is not None:
                return self._broken(entry.seq, reason, checked, last_seq)

            checked += 1
            last_seq = entry.seq
            prev_signature = entry.signature
            expected_seq = entry.seq + 1

        if allocated is not None and expected_seq is not None and allocated >= expected_seq:
            return self._broken(
                expected_seq,
                f"chain truncated: last entry is seq {expected_seq - 1}, counter is at {allocated}",
                checked,
                last_seq,
            )

        logger.info(
            "audit_chain_verified",
            extra={"checked": checked, "start_seq": start_seq, "end_seq": end_seq},
        )
        return ChainVerification(valid=True, checked=checked, last_seq=last_seq)

    def _check(
        self,
        entry: AuditEntry,
        expected_seq: int | None,
        prev_signature: str,
    ) -> str | None:
        if expected_seq is not None and entry.seq != expected_seq:
            return f"sequence gap: expected seq {expected_seq}, found {entry.seq}"

        fields = signed_fields(
            seq=entry.seq,
            occurred_at=entry.occurred_at,
            actor_id=entry.actor_id,
            action=entry.action,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            changes=entry.changes,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            prev_signature=prev_signature,
        )
        if not self._signer.verify(fields, entry.signature):
            return "signature mismatch"

        if entry.prev_signature != prev_signature:
            return "prev_signature does not match predecessor"
        return None

    def _broken(
        self,
        seq: int,
        reason: str,
        checked: int,
        last_seq: int | None,
    ) -> ChainVerification:
        logger.critical(
            "audit_chain_broken",
            extra={"first_broken_at": seq, "reason": reason, "checked": checked},
        )
        return ChainVerification(
            valid=False,
            checked=checked,
            first_broken_at=seq,
            reason=reason,
            last_seq=last_seq,
        )

    def verify_or_raise(
        self,
        start_seq: int | None = None,
        end_seq: int | None = None,
    ) -> ChainVerification:
        """Like ``verify_chain`` but raises AuditChainBrokenError when broken."""
        result = self.verify_chain(start_seq, end_seq)
        if not result.valid:
            raise AuditChainBrokenError(result.first_broken_at, result.reason or "")
        return result

    def verify_entry(self, entry: AuditEntry) -> bool:
        """Check one entry's signature and linkage against its predecessor."""
        predecessor = self._predecessor(entry.seq)
        prev_signature = predecessor.signature if predecessor else GENESIS_SIGNATURE
        expected_seq = predecessor.seq + 1 if predecessor else 1
        return self._check(entry, expected_seq, prev_signature) is None
