"""
Artifact serializers: payload <-> CSV / JSON / SQL bytes.

A payload is a plain dict::

    {"metadata": {...}, "inventory_items": [row, ...], "users": [...],
     "settings": [...], "audit_entries": [...]}

with JSON-safe row values (see tables.export_row).  Tables that were not
selected are absent.

Formats:
    JSON  -- the payload itself, indented, UTF-8.
    CSV   -- one ``=== SECTION ===`` marker row per table, then a header row
             and flat data rows; a METADATA section of key/value rows first.
             NULL cells are written as ``\\N`` (see tables.text_cell).
    SQL   -- a comment header and one ``INSERT INTO ... VALUES (...);`` per
             row.  Restore reads the statements back through a literal-only
             parser; it never executes the dump.

Every ``parse_*`` raises ValueError on malformed input.
"""

from __future__ import annotations

import csv
import io
import json
import re
from typing import Any, Iterator

from inventory_backup.domain.types import BackupFormat
from inventory_backup.services.tables import (
    ALL_TABLES,
    JSON_KIND,
    TABLES_BY_NAME,
    TABLES_BY_SECTION,
    TableSpec,
    parse_text_cell,
    text_cell,
)

METADATA_SECTION = "METADATA"
SQL_HEADER = "-- Medical Inventory Backup"

_SECTION_MARKER = re.compile(r"^=== ([A-Z_]+) ===$")


def _tables_in(payload: dict[str, Any]) -> Iterator[TableSpec]:
    for spec in ALL_TABLES:
        if spec.key in payload:
            yield spec


# =============================================================================
# JSON
# =============================================================================


def serialize_json(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, indent=2, ensure_ascii=False).encode("utf-8")


def parse_json(data: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValueError(f"not a JSON backup: {exc}") from exc
    if not isinstance(payload, dict) or not isinstance(payload.get("metadata"), dict):
        raise ValueError("JSON backup has no metadata object")
    for spec in ALL_TABLES:
        if spec.key in payload and not isinstance(payload[spec.key], list):
            raise ValueError(f"JSON backup section {spec.key} is not a list")
    return payload


# =============================================================================
# CSV
# =============================================================================


def serialize_csv(payload: dict[str, Any]) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")

    writer.writerow([f"=== {METADATA_SECTION} ==="])
    writer.writerow(["key", "value"])
    for key, value in sorted(payload.get("metadata", {}).items()):
        writer.writerow([key, json.dumps(value, ensure_ascii=False, sort_keys=True)])
    writer.writerow([])

    for spec in _tables_in(payload):
        writer.writerow([f"=== {spec.section} ==="])
        writer.writerow(spec.column_names)
        for row in payload[spec.key]:
            writer.writerow([text_cell(row.get(name), kind) for name, kind in spec.columns])
        writer.writerow([])

    return buffer.getvalue().encode("utf-8")


def parse_csv(data: bytes) -> dict[str, Any]:
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"not a CSV backup: {exc}") from exc

    payload: dict[str, Any] = {}
    section: str | None = None
    header: list[str] | None = None
    try:
        for row in csv.reader(io.StringIO(text)):
            if not row or row == [""]:
                continue
            marker = _SECTION_MARKER.match(row[0]) if len(row) == 1 else None
            if marker:
                section = marker.group(1)
                header = None
                if section == METADATA_SECTION:
                    payload["metadata"] = {}
                elif section in TABLES_BY_SECTION:
                    payload[TABLES_BY_SECTION[section].key] = []
                else:
                    raise ValueError(f"unknown CSV section {section}")
                continue
            if section is None:
                raise ValueError("CSV backup data before the first section marker")
            if header is None:
                header = row
                continue
            if len(row) != len(header):
                raise ValueError(
                    f"CSV section {section} row has {len(row)} cells, expected {len(header)}"
                )
            if section == METADATA_SECTION:
                payload["metadata"][row[0]] = json.loads(row[1])
                continue
            spec = TABLES_BY_SECTION[section]
            payload[spec.key].append({
                name: parse_text_cell(cell, spec.kind_of(name))
                for name, cell in zip(header, row)
                if name in spec.column_names
            })
    except (csv.Error, json.JSONDecodeError) as exc:
        raise ValueError(f"malformed CSV backup: {exc}") from exc

    if "metadata" not in payload:
        raise ValueError("CSV backup has no METADATA section")
    return payload


# =============================================================================
# SQL
# =============================================================================


def _sql_literal(value: Any, kind: str) -> str:
    if value is None:
        return "NULL"
    if kind == JSON_KIND:
        value = json.dumps(value, ensure_ascii=False, sort_keys=True)
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, int):
        return str(value)
    return "'" + str(value).replace("'", "''") + "'"


def serialize_sql(payload: dict[str, Any]) -> bytes:
    metadata = payload.get("metadata", {})
    lines = [
        SQL_HEADER,
        f"-- created_at: {metadata.get('created_at', '')}",
        f"-- record_count: {metadata.get('record_count', 0)}",
        "",
    ]
    for spec in _tables_in(payload):
        rows = payload[spec.key]
        lines.append(f"-- {spec.table}: {len(rows)} rows")
        columns = ", ".join(spec.column_names)
        for row in rows:
            values = ", ".join(
                _sql_literal(row.get(name), kind) for name, kind in spec.columns
            )
            lines.append(f"INSERT INTO {spec.table} ({columns}) VALUES ({values});")
        lines.append("")
    return ("\n".join(lines) + "\n").encode("utf-8")


_TOKEN = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<comment>--[^\n]*)
  | (?P<string>'(?:[^']|'')*')
  | (?P<number>-?\d+)
  | (?P<word>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<punct>[(),;])
    """,
    re.VERBOSE,
)


def _tokens(text: str) -> Iterator[tuple[str, str]]:
    pos = 0
    while pos < len(text):
        match = _TOKEN.match(text, pos)
        if match is None:
            raise ValueError(f"unexpected SQL input at offset {pos}: {text[pos:pos + 20]!r}")
        pos = match.end()
        kind = match.lastgroup
        if kind in ("ws", "comment"):
            continue
        yield kind, match.group()


class _TokenStream:
    def __init__(self, text: str):
        self._tokens = list(_tokens(text))
        self._pos = 0

    def at_end(self) -> bool:
        return self._pos >= len(self._tokens)

    def next(self) -> tuple[str, str]:
        if self.at_end():
            raise ValueError("unexpected end of SQL dump")
        token = self._tokens[self._pos]
        self._pos += 1
        return token

    def expect(self, value: str) -> None:
        _, text = self.next()
        if text.upper() != value:
            raise ValueError(f"expected {value!r} in SQL dump, found {text!r}")

    def word(self) -> str:
        kind, text = self.next()
        if kind != "word":
            raise ValueError(f"expected identifier in SQL dump, found {text!r}")
        return text

    def literal(self) -> Any:
        kind, text = self.next()
        if kind == "string":
            return text[1:-1].replace("''", "'")
        if kind == "number":
            return int(text)
        if kind == "word" and text.upper() in ("NULL", "TRUE", "FALSE"):
            return {"NULL": None, "TRUE": True, "FALSE": False}[text.upper()]
        raise ValueError(f"unsupported SQL literal {text!r}")

    def delimited(self, item) -> list[Any]:
        self.expect("(")
        items = [item()]
        while True:
            _, text = self.next()
            if text == ")":
                return items
            if text != ",":
                raise ValueError(f"expected ',' or ')' in SQL dump, found {text!r}")
            items.append(item())


def parse_sql(data: bytes) -> dict[str, Any]:
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"not a SQL backup: {exc}") from exc
    if not text.startswith(SQL_HEADER):
        raise ValueError("SQL backup header missing")

    payload: dict[str, Any] = {"metadata": {"format": BackupFormat.SQL.value}}
    stream = _TokenStream(text)
    while not stream.at_end():
        stream.expect("INSERT")
        stream.expect("INTO")
        table = stream.word()
        spec = TABLES_BY_NAME.get(table)
        if spec is None:
            raise ValueError(f"SQL backup inserts into unknown table {table}")
        columns = stream.delimited(stream.word)
        stream.expect("VALUES")
        values = stream.delimited(stream.literal)
        stream.expect(";")
        if len(columns) != len(values):
            raise ValueError(f"column/value count mismatch for {table}")

        row: dict[str, Any] = {}
        for name, value in zip(columns, values):
            if name not in spec.column_names:
                continue
            if spec.kind_of(name) == JSON_KIND and isinstance(value, str):
                value = json.loads(value)
            row[name] = value
        payload.setdefault(spec.key, []).append(row)
    return payload


# =============================================================================
# Dispatch
# =============================================================================

_SERIALIZERS = {
    BackupFormat.JSON: serialize_json,
    BackupFormat.CSV: serialize_csv,
    BackupFormat.SQL: serialize_sql,
}

_PARSERS = {
    BackupFormat.JSON: parse_json,
    BackupFormat.CSV: parse_csv,
    BackupFormat.SQL: parse_sql,
}


def serialize(payload: dict[str, Any], fmt: BackupFormat) -> bytes:
    return _SERIALIZERS[BackupFormat(fmt)](payload)


def parse(data: bytes, fmt: BackupFormat) -> dict[str, Any]:
    return _PARSERS[BackupFormat(fmt)](data)
