# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
SQL dialect differences between the supported relational engines.

Only the statements this package issues itself differ per engine:
placeholders, truncation, idempotent inserts and schema introspection.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple

from datamover.exceptions import SafetyViolation
from datamover.config import is_safe_identifier


@dataclass(frozen=True)
class Dialect:
    """Placeholder style and statement shapes for one engine."""

    name: str
    paramstyle: str  # "numeric" ($1, $2, ...) or "qmark" (?)
    max_bind_params: int

    def placeholder(self, position: int) -> str:
        """Placeholder for the 1-based parameter position."""
        if self.paramstyle == "numeric":
            return f"${position}"
        return "?"

    def truncate_statement(self, table: str) -> str:
        _require_identifier(table)
        if self.name == "postgresql":
            return f"TRUNCATE TABLE {table} CASCADE"
        return f"DELETE FROM {table}"

    def insert_ignore_statement(
        self,
        table: str,
        rows: Sequence[Dict[str, Any]],
    ) -> Tuple[str, List[Any]]:
        """
        Build one INSERT that leaves rows with colliding identity untouched.

        PostgreSQL receives the batch as a JSON document so that column
        types are applied by the server (chunk formats such as CSV carry
        plain strings). SQLite gets a multi-row VALUES list.
        """
        _require_identifier(table)
        columns = list(rows[0].keys())
        for column in columns:
            _require_identifier(column)
        column_list = ", ".join(columns)

        if self.name == "postgresql":
            sql = (
                f"INSERT INTO {table} ({column_list}) "
                f"SELECT {column_list} FROM json_populate_recordset(NULL::{table}, $1::json) "
                "ON CONFLICT DO NOTHING"
            )
            return sql, [json.dumps(list(rows), default=_json_param)]

        row_placeholders = "(" + ", ".join("?" for _ in columns) + ")"
        values_sql = ", ".join(row_placeholders for _ in rows)
        params: List[Any] = []
        for row in rows:
            params.extend(row.get(column) for column in columns)
        return f"INSERT OR IGNORE INTO {table} ({column_list}) VALUES {values_sql}", params

    def rows_per_insert(self, column_count: int, requested: int) -> int:
        """Largest batch that stays under the engine's bind-parameter limit."""
        if self.name == "postgresql":
            return requested
        return max(1, min(requested, self.max_bind_params // max(column_count, 1)))


POSTGRESQL = Dialect(name="postgresql", paramstyle="numeric", max_bind_params=32767)
SQLITE = Dialect(name="sqlite", paramstyle="qmark", max_bind_params=32766)


def _json_param(value: Any) -> Any:
    # bytea accepts hex input text
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "\\x" + bytes(value).hex()
    return str(value)


def _require_identifier(name: str) -> None:
    if not is_safe_identifier(name):
        raise SafetyViolation(
            f"Unsafe SQL identifier: {name!r}",
            details={"identifier": name},
        )


async def describe_tables(
    executor: Any,
    tables: Sequence[str],
    schema_name: str = "public",
) -> Dict[str, List[Dict[str, Any]]]:
    """
    Describe columns of the given tables.

    Returns:
        Mapping of table name to ordered column descriptors
        {name, type, nullable, default}
    """
    for table in tables:
        _require_identifier(table)

    schema: Dict[str, List[Dict[str, Any]]] = {}
    dialect: Dialect = executor.dialect

    if dialect.name == "postgresql":
        placeholders = ", ".join(f"${i + 2}" for i in range(len(tables)))
        rows = await executor.query(
            f"""
            SELECT table_name, column_name, data_type, is_nullable, column_default
            FROM information_schema.columns
            WHERE table_schema = $1 AND table_name IN ({placeholders})
            ORDER BY table_name, ordinal_position
            """,
            [schema_name, *tables],
        )
        for row in rows:
            schema.setdefault(row["table_name"], []).append(
                {
                    "name": row["column_name"],
                    "type": row["data_type"],
                    "nullable": row["is_nullable"] == "YES",
                    "default": row["column_default"],
                }
            )
        return schema

    for table in tables:
        rows = await executor.query(f"PRAGMA table_info({table})", [])
        schema[table] = [
            {
                "name": row["name"],
                "type": row["type"],
                "nullable": not row["notnull"],
                "default": row["dflt_value"],
            }
            for row in sorted(rows, key=lambda r: r["cid"])
        ]
    return schema
