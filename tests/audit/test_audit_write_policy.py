"""
Audit write criticality, append-only enforcement, and deferred writes.
"""

import pytest
from sqlalchemy import func, select

from inventory_kernel.domain.audit import AuditAction, AuditEntityType, is_critical
from inventory_kernel.exceptions import ImmutabilityViolationError
from inventory_kernel.models.audit_entry import AuditEntry
from inventory_kernel.services.audit_verifier import AuditChainVerifier
from inventory_kernel.services.audit_writer import DeferredAuditQueue


def _count(session_factory) -> int:
    with session_factory() as session:
        return session.execute(select(func.count(AuditEntry.id))).scalar_one()


def _refuse_to_sign(fields):
    raise RuntimeError("signing backend unavailable")


def _broken_signer(monkeypatch, signer):
    monkeypatch.setattr(signer, "sign", _refuse_to_sign)


class TestCriticality:
    @pytest.mark.parametrize(
        "action, entity_type, expected",
        [
            (AuditAction.REVERT, AuditEntityType.INVENTORY_ITEM, True),
            (AuditAction.BACKUP, AuditEntityType.BACKUP, True),
            (AuditAction.RESTORE, AuditEntityType.BACKUP, True),
            (AuditAction.DELETE, AuditEntityType.INVENTORY_ITEM, True),
            (AuditAction.UPDATE, AuditEntityType.USER, True),
            (AuditAction.UPDATE, AuditEntityType.SETTINGS, True),
            (AuditAction.CREATE, AuditEntityType.INVENTORY_ITEM, False),
            (AuditAction.EXPORT, AuditEntityType.AUDIT_LOG, False),
            (AuditAction.LOGIN, AuditEntityType.REPORT, False),
            (AuditAction.VIEW, AuditEntityType.USER, False),
        ],
    )
    def test_policy(self, action, entity_type, expected):
        assert is_critical(action, entity_type) is expected

    def test_best_effort_failure_is_counted_and_swallowed(
        self, monkeypatch, signer, record_entry, failure_counter, captured_logs
    ):
        _broken_signer(monkeypatch, signer)

        result = record_entry(action=AuditAction.VIEW)

        assert result is None
        assert failure_counter.count == 1
        dropped = [r for r in captured_logs() if r["message"] == "audit_write_dropped"]
        assert dropped and dropped[0]["failure_count"] == 1

    def test_critical_failure_propagates(
        self, monkeypatch, signer, record_entry, failure_counter, session_factory
    ):
        _broken_signer(monkeypatch, signer)

        with pytest.raises(RuntimeError, match="signing backend"):
            record_entry(action=AuditAction.DELETE)

        assert failure_counter.count == 0
        assert _count(session_factory) == 0

    def test_dropped_write_leaves_no_sequence_gap(
        self, monkeypatch, signer, record_entry, session_factory
    ):
        record_entry()
        with monkeypatch.context() as patch:
            patch.setattr(signer, "sign", _refuse_to_sign)
            assert record_entry(action=AuditAction.VIEW) is None
        entry = record_entry()

        assert entry.seq == 2
        with session_factory() as session:
            assert AuditChainVerifier(session, signer).verify_chain().valid


class TestAppendOnly:
    def test_orm_update_is_blocked(self, record_entry, session):
        entry = session.get(AuditEntry, record_entry().id)
        entry.actor_id = "mallory"

        with pytest.raises(ImmutabilityViolationError) as exc_info:
            session.flush()

        assert exc_info.value.entity_type == "AuditEntry"

    def test_orm_delete_is_blocked(self, record_entry, session):
        entry = session.get(AuditEntry, record_entry().id)
        session.delete(entry)

        with pytest.raises(ImmutabilityViolationError, match="cannot be deleted"):
            session.flush()


class TestDeferredQueue:
    @pytest.fixture
    def queue(self, session_factory, signer, chain_lock, deterministic_clock, failure_counter):
        return DeferredAuditQueue(
            session_factory, signer, chain_lock, deterministic_clock, failure_counter
        )

    def test_flush_writes_queued_entries_in_order(
        self, queue, deterministic_clock, session_factory, signer
    ):
        for i in range(3):
            deterministic_clock.advance(5)
            queue.enqueue(f"user-{i}", AuditAction.VIEW, AuditEntityType.REPORT, f"report-{i}")
        assert len(queue) == 3

        assert queue.flush_deferred() == 3

        assert len(queue) == 0
        with session_factory() as session:
            entries = session.execute(select(AuditEntry).order_by(AuditEntry.seq)).scalars().all()
            assert [e.entity_id for e in entries] == ["report-0", "report-1", "report-2"]
            # Original enqueue times are kept
            assert entries[0].occurred_at < entries[2].occurred_at
            assert AuditChainVerifier(session, signer).verify_chain().valid

    def test_empty_flush(self, queue):
        assert queue.flush_deferred() == 0

    def test_critical_actions_cannot_be_deferred(self, queue):
        with pytest.raises(ValueError, match="critical"):
            queue.enqueue("admin-1", AuditAction.DELETE, AuditEntityType.INVENTORY_ITEM, "x")
        assert len(queue) == 0

    def test_failed_flush_drops_and_counts_the_batch(
        self, queue, monkeypatch, signer, failure_counter, session_factory
    ):
        queue.enqueue("u", AuditAction.VIEW, AuditEntityType.REPORT, "r1")
        queue.enqueue("u", AuditAction.LOGIN, AuditEntityType.REPORT, "r2")
        _broken_signer(monkeypatch, signer)

        assert queue.flush_deferred() == 0

        assert failure_counter.count == 2
        assert len(queue) == 0
        assert _count(session_factory) == 0
