"""
Module: inventory_kernel.selectors.audit_selector
Responsibility: Role-gated, filtered, paginated reads over the audit trail,
    plus the statistics, entry-detail, and export views built on them.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Read-only.
    - Results are ordered newest first (occurred_at desc, then seq desc).
    - Page size is bounded by MAX_PAGE_SIZE (PageRequest validates it).
    - Reads need Permission.AUDIT_READ; exports need Permission.AUDIT_EXPORT.

Failure modes:
    - PermissionDeniedError for roles without the permission.
    - AuditEntryNotFoundError when an entry id does not exist.
"""

import csv
import io
from collections import Counter
from datetime import datetime, timedelta
from typing import Iterator
from uuid import UUID

from openpyxl import Workbook
from sqlalchemy import String, cast, func, or_, select
from sqlalchemy.sql import Select

from inventory_kernel.domain.audit import (
    AuditAction,
    AuditEntryRecord,
    AuditFilters,
    AuditPage,
    AuditStatistics,
    PageRequest,
    is_critical,
)
from inventory_kernel.domain.clock import as_utc
from inventory_kernel.domain.roles import Actor, Permission, require_permission
from inventory_kernel.exceptions import AuditEntryNotFoundError
from inventory_kernel.models.audit_entry import AuditEntry
from inventory_kernel.selectors.base import BaseSelector
from inventory_kernel.utils.hashing import canonicalize_json

RELATED_WINDOW = timedelta(hours=1)
RELATED_LIMIT = 10
TOP_ACTORS_LIMIT = 10

EXPORT_COLUMNS = (
    "seq",
    "occurred_at",
    "actor_id",
    "action",
    "entity_type",
    "entity_id",
    "changes",
    "ip_address",
    "user_agent",
    "signature",
)


def _apply_filters(stmt: Select, filters: AuditFilters) -> Select:
    if filters.date_from is not None:
        stmt = stmt.where(AuditEntry.occurred_at >= as_utc(filters.date_from))
    if filters.date_to is not None:
        stmt = stmt.where(AuditEntry.occurred_at <= as_utc(filters.date_to))
    if filters.actor_ids:
        stmt = stmt.where(AuditEntry.actor_id.in_(filters.actor_ids))
    if filters.actions:
        stmt = stmt.where(AuditEntry.action.in_([a.value for a in filters.actions]))
    if filters.entity_types:
        stmt = stmt.where(
            AuditEntry.entity_type.in_([t.value for t in filters.entity_types])
        )
    if filters.entity_id is not None:
        stmt = stmt.where(AuditEntry.entity_id == filters.entity_id)
    if filters.search:
        term = f"%{filters.search.lower()}%"
        stmt = stmt.where(
            or_(
                func.lower(cast(AuditEntry.changes, String)).like(term),
                func.lower(AuditEntry.entity_id).like(term),
                func.lower(AuditEntry.ip_address).like(term),
            )
        )
    return stmt


def _export_row(record: AuditEntryRecord) -> list[str]:
    return [
        str(record.seq),
        record.occurred_at.isoformat(),
        record.actor_id,
        record.action.value,
        record.entity_type.value,
        record.entity_id,
        canonicalize_json(record.changes) if record.changes is not None else "",
        record.ip_address or "",
        record.user_agent or "",
        record.signature,
    ]


class AuditSelector(BaseSelector):
    """Query side of the audit trail."""

    def query_logs(
        self,
        actor: Actor,
        filters: AuditFilters | None = None,
        page: PageRequest | None = None,
    ) -> AuditPage:
        require_permission(actor, Permission.AUDIT_READ)
        filters = filters or AuditFilters()
        page = page or PageRequest()

        total = self.session.execute(
            _apply_filters(select(func.count(AuditEntry.id)), filters)
        ).scalar_one()

        rows = self.session.execute(
            _apply_filters(select(AuditEntry), filters)
            .order_by(AuditEntry.occurred_at.desc(), AuditEntry.seq.desc())
            .offset(page.offset)
            .limit(page.page_size)
        ).scalars()

        return AuditPage(
            entries=tuple(AuditEntryRecord.from_model(row) for row in rows),
            total=total,
            page=page.page,
            page_size=page.page_size,
        )

    def get_entry(self, actor: Actor, entry_id: UUID) -> AuditEntryRecord:
        require_permission(actor, Permission.AUDIT_READ)
        entry = self.session.get(AuditEntry, entry_id)
        if entry is None:
            raise AuditEntryNotFoundError(str(entry_id))
        return AuditEntryRecord.from_model(entry)

    def related_entries(
        self,
        actor: Actor,
        record: AuditEntryRecord,
    ) -> tuple[AuditEntryRecord, ...]:
        """Entries on the same entity within an hour either side, newest first."""
        require_permission(actor, Permission.AUDIT_READ)
        rows = self.session.execute(
            select(AuditEntry)
            .where(
                AuditEntry.entity_type == record.entity_type.value,
                AuditEntry.entity_id == record.entity_id,
                AuditEntry.id != record.id,
                AuditEntry.occurred_at >= record.occurred_at - RELATED_WINDOW,
                AuditEntry.occurred_at <= record.occurred_at + RELATED_WINDOW,
            )
            .order_by(AuditEntry.occurred_at.desc(), AuditEntry.seq.desc())
            .limit(RELATED_LIMIT)
        ).scalars()
        return tuple(AuditEntryRecord.from_model(row) for row in rows)

    def statistics(self, actor: Actor, filters: AuditFilters | None = None) -> AuditStatistics:
        require_permission(actor, Permission.AUDIT_READ)
        filters = filters or AuditFilters()

        rows = self.session.execute(
            _apply_filters(
                select(
                    AuditEntry.actor_id,
                    AuditEntry.action,
                    AuditEntry.entity_type,
                    AuditEntry.occurred_at,
                ),
                filters,
            )
        ).all()

        by_actor: Counter[str] = Counter()
        by_action: Counter[str] = Counter()
        by_entity: Counter[str] = Counter()
        by_day: Counter[str] = Counter()
        critical = 0
        for actor_id, action, entity_type, occurred_at in rows:
            by_actor[actor_id] += 1
            by_action[action] += 1
            by_entity[entity_type] += 1
            by_day[as_utc(occurred_at).date().isoformat()] += 1
            if is_critical(action, entity_type):
                critical += 1

        most_common = by_action.most_common(1)
        most_active = by_actor.most_common(1)
        return AuditStatistics(
            total_actions=len(rows),
            critical_actions=critical,
            most_active_actor=most_active[0][0] if most_active else None,
            most_common_action=AuditAction(most_common[0][0]) if most_common else None,
            by_action=dict(by_action),
            by_entity_type=dict(by_entity),
            daily_activity=tuple(sorted(by_day.items())),
            top_actors=tuple(by_actor.most_common(TOP_ACTORS_LIMIT)),
        )

    def _iter_export(self, filters: AuditFilters) -> Iterator[AuditEntryRecord]:
        rows = self.session.execute(
            _apply_filters(select(AuditEntry), filters)
            .order_by(AuditEntry.occurred_at.desc(), AuditEntry.seq.desc())
            .execution_options(yield_per=500)
        ).scalars()
        for row in rows:
            yield AuditEntryRecord.from_model(row)

    def export_csv(self, actor: Actor, filters: AuditFilters | None = None) -> bytes:
        require_permission(actor, Permission.AUDIT_EXPORT)
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(EXPORT_COLUMNS)
        for record in self._iter_export(filters or AuditFilters()):
            writer.writerow(_export_row(record))
        return buffer.getvalue().encode("utf-8")

    def export_xlsx(self, actor: Actor, filters: AuditFilters | None = None) -> bytes:
        require_permission(actor, Permission.AUDIT_EXPORT)
        workbook = Workbook()
        sheet = workbook.active
        sheet.title = "Audit Trail"
        sheet.append(list(EXPORT_COLUMNS))
        for record in self._iter_export(filters or AuditFilters()):
            sheet.append(_export_row(record))
        sheet.freeze_panes = "A2"

        buffer = io.BytesIO()
        workbook.save(buffer)
        return buffer.getvalue()


def export_filename(fmt: str, now: datetime) -> str:
    return f"audit-trail-{as_utc(now).strftime('%Y%m%dT%H%M%SZ')}.{fmt}"
