"""
Module: inventory_kernel.models.audit_entry
Responsibility: ORM persistence for the signed, chained audit trail.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Audit records are append-only; no UPDATE or DELETE (ORM listeners in
      db/immutability.py).
    - signature = HMAC(fields | prev_signature); prev_signature of the first
      entry is the genesis value.  Validated by AuditChainVerifier.
    - seq is strictly increasing, allocated by SequenceService.

Audit relevance:
    AuditEntry IS the audit trail.  Inventory mutations, logins, exports,
    reverts, backups and restores each produce one entry.
"""

from datetime import datetime

from sqlalchemy import JSON, BigInteger, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from inventory_kernel.db.base import Base, UTCDateTime


class AuditEntry(Base):
    """
    One signed link in the audit chain.

    Non-goals:
        - The model does NOT compute or check signatures; that is the
          writer's and the verifier's job.
    """

    __tablename__ = "audit_entries"

    __table_args__ = (
        Index("idx_audit_entries_entity", "entity_type", "entity_id"),
        Index("idx_audit_entries_actor", "actor_id"),
        Index("idx_audit_entries_action", "action"),
        Index("idx_audit_entries_occurred", "occurred_at"),
    )

    seq: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)

    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)

    action: Mapped[str] = mapped_column(String(20), nullable=False)

    entity_type: Mapped[str] = mapped_column(String(30), nullable=False)

    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Minimal before/after diff, stored in its canonical JSON-safe form
    changes: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)

    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)

    prev_signature: Mapped[str] = mapped_column(String(64), nullable=False)

    signature: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<AuditEntry #{self.seq} {self.action} {self.entity_type}:{self.entity_id}>"
