"""
Column specs for the tables a backup carries.

Every serializer and the restore path share these specs, so a column has one
declared kind everywhere: how it is exported, how a CSV cell or SQL literal
is read back, and which columns are never exported at all.

``users.password_hash`` is deliberately absent from USERS: credential hashes
are excluded from every format, not masked.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from inventory_kernel.domain.clock import as_utc
from inventory_kernel.models.audit_entry import AuditEntry
from inventory_kernel.models.inventory import InventoryItem, SystemSetting, User

UUID_KIND = "uuid"
STR = "str"
INT = "int"
BOOL = "bool"
DATETIME = "datetime"
JSON_KIND = "json"


@dataclass(frozen=True)
class TableSpec:
    key: str  # payload key
    table: str  # SQL table name
    section: str  # CSV section marker
    model: type
    columns: tuple[tuple[str, str], ...]
    date_column: str | None = None

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(name for name, _ in self.columns)

    def kind_of(self, column: str) -> str:
        for name, kind in self.columns:
            if name == column:
                return kind
        raise KeyError(column)


INVENTORY_ITEMS = TableSpec(
    key="inventory_items",
    table="inventory_items",
    section="INVENTORY_ITEMS",
    model=InventoryItem,
    columns=(
        ("id", UUID_KIND),
        ("item_name", STR),
        ("batch", STR),
        ("quantity", INT),
        ("reject", INT),
        ("destination", STR),
        ("category", STR),
        ("notes", STR),
        ("entered_by_id", UUID_KIND),
        ("created_at", DATETIME),
        ("updated_at", DATETIME),
        ("deleted_at", DATETIME),
    ),
    date_column="created_at",
)

USERS = TableSpec(
    key="users",
    table="users",
    section="USERS",
    model=User,
    columns=(
        ("id", UUID_KIND),
        ("email", STR),
        ("name", STR),
        ("role", STR),
        ("is_active", BOOL),
        ("preferences", JSON_KIND),
        ("created_at", DATETIME),
        ("updated_at", DATETIME),
    ),
)

SETTINGS = TableSpec(
    key="settings",
    table="system_settings",
    section="SETTINGS",
    model=SystemSetting,
    columns=(
        ("id", UUID_KIND),
        ("key", STR),
        ("value", JSON_KIND),
        ("category", STR),
        ("updated_by_id", UUID_KIND),
        ("updated_at", DATETIME),
    ),
)

AUDIT_ENTRIES = TableSpec(
    key="audit_entries",
    table="audit_entries",
    section="AUDIT_ENTRIES",
    model=AuditEntry,
    columns=(
        ("id", UUID_KIND),
        ("seq", INT),
        ("occurred_at", DATETIME),
        ("actor_id", STR),
        ("action", STR),
        ("entity_type", STR),
        ("entity_id", STR),
        ("changes", JSON_KIND),
        ("ip_address", STR),
        ("user_agent", STR),
        ("prev_signature", STR),
        ("signature", STR),
    ),
    date_column="occurred_at",
)

ALL_TABLES = (INVENTORY_ITEMS, USERS, SETTINGS, AUDIT_ENTRIES)
TABLES_BY_KEY = {spec.key: spec for spec in ALL_TABLES}
TABLES_BY_SECTION = {spec.section: spec for spec in ALL_TABLES}
TABLES_BY_NAME = {spec.table: spec for spec in ALL_TABLES}

# Tables a restore writes back; users carry no credentials and the audit
# chain is append-only, so neither is overwritten.
RESTORABLE_TABLES = (INVENTORY_ITEMS, SETTINGS)


def export_value(value: Any, kind: str) -> Any:
    """ORM attribute -> JSON-safe export value."""
    if value is None:
        return None
    if kind == UUID_KIND:
        return str(value)
    if kind == DATETIME:
        return as_utc(value).isoformat(timespec="microseconds")
    return value


def export_row(obj: Any, spec: TableSpec) -> dict[str, Any]:
    return {name: export_value(getattr(obj, name), kind) for name, kind in spec.columns}


def import_value(value: Any, kind: str) -> Any:
    """
    Export value (JSON) or text cell (CSV/SQL) -> ORM attribute value.

    Raises:
        ValueError: the value cannot be read as ``kind``.
    """
    if value is None:
        return None
    if kind == UUID_KIND:
        return UUID(str(value)) if value != "" else None
    if kind == DATETIME:
        if value == "":
            return None
        return as_utc(value if isinstance(value, datetime) else datetime.fromisoformat(value))
    if kind == INT:
        if isinstance(value, bool):
            raise ValueError(f"expected integer, got {value!r}")
        return int(value)
    if kind == BOOL:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ("true", "1", "t"):
            return True
        if text in ("false", "0", "f"):
            return False
        raise ValueError(f"expected boolean, got {value!r}")
    return value


def import_row(row: dict[str, Any], spec: TableSpec) -> dict[str, Any]:
    """Coerce an exported row back to model attributes; unknown columns are dropped."""
    return {
        name: import_value(row.get(name), kind)
        for name, kind in spec.columns
        if name in row
    }


# CSV has no NULL; "\N" marks one so that "" stays an empty string.
# Text that itself starts with a backslash gets one more in front.
NULL_CELL = "\\N"


def text_cell(value: Any, kind: str) -> str:
    """Export value -> CSV cell text."""
    if value is None:
        return NULL_CELL
    if kind == JSON_KIND:
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    if kind == BOOL:
        return "true" if value else "false"
    text = str(value)
    return "\\" + text if kind == STR and text.startswith("\\") else text


def parse_text_cell(text: str, kind: str) -> Any:
    """CSV cell text -> export value (the inverse of ``text_cell``)."""
    if text == NULL_CELL:
        return None
    if kind == STR:
        return text[1:] if text.startswith("\\") else text
    if text == "":
        return None
    if kind == JSON_KIND:
        return json.loads(text)
    if kind == INT:
        return int(text)
    if kind == BOOL:
        return import_value(text, BOOL)
    return text
