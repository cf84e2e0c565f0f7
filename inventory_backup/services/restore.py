"""
RestoreApplier -- writes a parsed backup payload back into live tables.

Contract:
    ``apply(payload, mode, deadline)`` runs inside the caller's transaction
    and never commits.  Only inventory_items and system_settings are
    written; users carry no credentials in a backup and the audit chain is
    append-only, so both are left alone.  A table missing from the payload
    is left untouched in every mode.

Modes:
    FULL    -- delete every row of each restored table, then insert the
               payload's rows.
    MERGE   -- upsert by id (settings also match on their unique key);
               rows the payload does not mention are kept.
    PREVIEW -- count what FULL would write; no statements are issued.

Failure modes:
    - RestoreTimeoutError once ``deadline`` (time.monotonic) has passed;
      checked before each row, so the caller's rollback discards the
      partial write.
    - ValueError for rows whose values cannot be coerced.
"""

from __future__ import annotations

import time
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from inventory_kernel.exceptions import RestoreTimeoutError
from inventory_kernel.logging_config import get_logger
from inventory_kernel.models.inventory import SystemSetting

from inventory_backup.domain.types import RestoreMode, RestoreSummary
from inventory_backup.services.tables import (
    INVENTORY_ITEMS,
    RESTORABLE_TABLES,
    SETTINGS,
    TableSpec,
    import_row,
)

logger = get_logger("backup.restore")


class RestoreApplier:
    def __init__(
        self,
        session: Session,
        backup_id: UUID,
        timeout_seconds: float,
    ):
        self._session = session
        self._backup_id = backup_id
        self._timeout_seconds = timeout_seconds

    def _check_deadline(self, deadline: float) -> None:
        if time.monotonic() >= deadline:
            raise RestoreTimeoutError(str(self._backup_id), self._timeout_seconds)

    def _upsert(self, spec: TableSpec, values: dict[str, Any]) -> None:
        existing = self._session.get(spec.model, values["id"])
        if existing is None and spec is SETTINGS:
            existing = self._session.execute(
                select(SystemSetting).where(SystemSetting.key == values["key"])
            ).scalar_one_or_none()
        if existing is None:
            self._session.add(spec.model(**values))
            return
        for name, value in values.items():
            if name != "id":
                setattr(existing, name, value)

    def apply(
        self,
        payload: dict[str, Any],
        mode: RestoreMode,
        pre_restore_backup_id: UUID | None,
        deadline: float,
    ) -> RestoreSummary:
        self._check_deadline(deadline)
        written: dict[str, int] = {}
        removed: dict[str, int] = {}
        skipped: list[str] = []

        for spec in RESTORABLE_TABLES:
            if spec.key not in payload:
                skipped.append(spec.key)
                continue
            rows = [import_row(row, spec) for row in payload[spec.key]]

            if mode is RestoreMode.PREVIEW:
                written[spec.key] = len(rows)
                removed[spec.key] = self._session.execute(
                    select(func.count()).select_from(spec.model)
                ).scalar_one()
                continue

            if mode is RestoreMode.FULL:
                result = self._session.execute(delete(spec.model))
                removed[spec.key] = result.rowcount or 0
                self._session.flush()
                for values in rows:
                    self._check_deadline(deadline)
                    self._session.add(spec.model(**values))
            else:
                for values in rows:
                    self._check_deadline(deadline)
                    self._upsert(spec, values)
            self._session.flush()
            written[spec.key] = len(rows)

        self._check_deadline(deadline)
        summary = RestoreSummary(
            backup_id=self._backup_id,
            mode=mode,
            pre_restore_backup_id=pre_restore_backup_id,
            inventory_items=written.get(INVENTORY_ITEMS.key, 0),
            settings=written.get(SETTINGS.key, 0),
            removed_inventory_items=removed.get(INVENTORY_ITEMS.key, 0),
            removed_settings=removed.get(SETTINGS.key, 0),
            skipped=tuple(skipped),
        )
        logger.info(
            "restore_applied",
            extra={
                "backup_id": str(self._backup_id),
                "mode": mode.value,
                "inventory_items": summary.inventory_items,
                "settings": summary.settings,
            },
        )
        return summary
