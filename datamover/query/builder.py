# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Tenant-scoped SQL construction.

Every statement that reads tenant data is produced here, either from a
table description or from caller-supplied SQL with a tenant predicate
injected at the top level. A ScopedQuery is the only thing the chunked
reader will execute.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from datamover.config import is_safe_identifier
from datamover.exceptions import ConfigurationError, SafetyViolation
from datamover.query.dialect import Dialect


ALLOWED_OPERATORS = frozenset({"=", "!=", "<>", "<", "<=", ">", ">=", "LIKE", "ILIKE"})

_CLAUSE_AFTER_WHERE = ("GROUP", "HAVING", "WINDOW", "ORDER")
_SET_OPERATORS = ("UNION", "INTERSECT", "EXCEPT")
_PAGINATION = ("LIMIT", "OFFSET", "FETCH")

_WORD = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


@dataclass(frozen=True)
class ScopedQuery:
    """
    A SELECT without pagination, guaranteed to be tenant-scoped.

    all_tenants is only ever set by build_table_query(allow_all_tenants=True),
    which the backup path uses for jobs that belong to no tenant.
    """

    sql: str
    params: Tuple[Any, ...]
    tenant_id: str | None
    ordered: bool = False
    all_tenants: bool = False


def require_identifier(name: str, kind: str = "identifier") -> str:
    if not is_safe_identifier(name):
        raise SafetyViolation(
            f"Unsafe SQL {kind}: {name!r}",
            details={kind: name},
        )
    return name


def _coerce_non_negative(value: Any, name: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from exc
    return max(number, 0)


def _parse_time(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    return value


def build_table_query(
    table: str,
    *,
    tenant_id: str | None,
    dialect: Dialect,
    tenant_column: str = "tenant_id",
    timestamp_column: str = "timestamp",
    columns: Sequence[str] | None = None,
    start_time: Any = None,
    end_time: Any = None,
    filters: Mapping[str, Any] | None = None,
    allow_all_tenants: bool = False,
) -> ScopedQuery:
    """
    Build a filtered SELECT over one table.

    Filter values:
        scalar                          -> column = value
        list / tuple / set              -> column IN (...)
        {"operator": op, "value": v}    -> column op value

    Raises:
        SafetyViolation: On unsafe identifiers, unknown operators, or a
            missing tenant without allow_all_tenants
    """
    require_identifier(table, "table")
    require_identifier(tenant_column, "column")

    if tenant_id is None:
        if not allow_all_tenants:
            raise SafetyViolation(
                "Refusing to read without a tenant predicate",
                details={"table": table},
            )
    elif not str(tenant_id).strip():
        raise SafetyViolation("Tenant id must not be blank", details={"table": table})

    select_list = "*"
    if columns:
        select_list = ", ".join(require_identifier(c, "column") for c in columns)

    conditions: List[str] = []
    params: List[Any] = []

    def bind(value: Any) -> str:
        params.append(value)
        return dialect.placeholder(len(params))

    if tenant_id is not None:
        conditions.append(f"{tenant_column} = {bind(tenant_id)}")

    if start_time is not None:
        require_identifier(timestamp_column, "column")
        conditions.append(f"{timestamp_column} >= {bind(_parse_time(start_time))}")
    if end_time is not None:
        require_identifier(timestamp_column, "column")
        conditions.append(f"{timestamp_column} <= {bind(_parse_time(end_time))}")

    for column, value in (filters or {}).items():
        require_identifier(column, "column")
        if isinstance(value, Mapping):
            operator = str(value.get("operator", "=")).upper()
            if operator not in ALLOWED_OPERATORS:
                raise SafetyViolation(
                    f"Unsupported filter operator: {operator!r}",
                    details={"column": column},
                )
            conditions.append(f"{column} {operator} {bind(value.get('value'))}")
        elif isinstance(value, (list, tuple, set, frozenset)):
            values = list(value)
            if not values:
                # An empty IN list matches nothing
                conditions.append("1 = 0")
                continue
            placeholders = ", ".join(bind(v) for v in values)
            conditions.append(f"{column} IN ({placeholders})")
        elif value is None:
            conditions.append(f"{column} IS NULL")
        else:
            conditions.append(f"{column} = {bind(value)}")

    sql = f"SELECT {select_list} FROM {table}"
    if conditions:
        sql += " WHERE " + " AND ".join(conditions)

    return ScopedQuery(
        sql=sql,
        params=tuple(params),
        tenant_id=tenant_id,
        all_tenants=tenant_id is None,
    )


@dataclass
class _Token:
    word: str
    start: int
    end: int


def _scan_top_level(sql: str) -> Tuple[List[_Token], List[int], List[int]]:
    """
    Walk the statement once, skipping literals, quoted identifiers and
    comments.

    Returns:
        (keywords at paren depth 0, offsets of every "?" placeholder,
         offsets of ";" at depth 0)
    """
    words: List[_Token] = []
    qmarks: List[int] = []
    semicolons: List[int] = []
    depth = 0
    i = 0
    n = len(sql)

    while i < n:
        ch = sql[i]

        if ch == "'" or ch == '"':
            i += 1
            while i < n:
                if sql[i] == ch:
                    if i + 1 < n and sql[i + 1] == ch:
                        i += 2
                        continue
                    break
                i += 1
            i += 1
            continue

        if ch == "-" and sql.startswith("--", i):
            newline = sql.find("\n", i)
            i = n if newline == -1 else newline + 1
            continue

        if ch == "/" and sql.startswith("/*", i):
            close = sql.find("*/", i + 2)
            i = n if close == -1 else close + 2
            continue

        if ch == "(":
            depth += 1
        elif ch == ")":
            depth = max(depth - 1, 0)
        elif ch == "?":
            qmarks.append(i)
        elif ch == ";" and depth == 0:
            semicolons.append(i)
        elif ch.isalpha() or ch == "_":
            match = _WORD.match(sql, i)
            end = match.end()
            # Skip identifiers glued to a previous word character, like $1abc
            if depth == 0 and (i == 0 or not (sql[i - 1].isalnum() or sql[i - 1] in "_$.")):
                words.append(_Token(sql[i:end].upper(), i, end))
            i = end
            continue

        i += 1

    return words, qmarks, semicolons


def scope_raw_query(
    sql: str,
    params: Sequence[Any] | None,
    *,
    tenant_id: str,
    dialect: Dialect,
    tenant_column: str = "tenant_id",
) -> ScopedQuery:
    """
    Inject a tenant predicate into caller-supplied SQL.

    The predicate is always added, even when the query already mentions the
    tenant column, and the original condition is parenthesised so an OR in
    it cannot widen the result past the tenant:

        SELECT * FROM e WHERE a = 1 OR b = 2
        -> SELECT * FROM e WHERE tenant_id = ? AND (a = 1 OR b = 2)

    Raises:
        SafetyViolation: Non-SELECT, multi-statement, or set-operation input
        ConfigurationError: Top-level LIMIT/OFFSET (the engine paginates)
    """
    require_identifier(tenant_column, "column")
    if tenant_id is None or not str(tenant_id).strip():
        raise SafetyViolation("Refusing to run raw SQL without a tenant id")
    if not isinstance(sql, str) or not sql.strip():
        raise ConfigurationError("Raw query must be a non-empty SQL string")

    text = sql.strip()
    words, qmarks, semicolons = _scan_top_level(text)

    if semicolons:
        if semicolons[-1] != len(text) - 1 or len(semicolons) > 1:
            raise SafetyViolation("Multiple SQL statements are not allowed")
        text = text[:-1].rstrip()
        words, qmarks, _ = _scan_top_level(text)

    if not words or words[0].word not in ("SELECT", "WITH"):
        raise SafetyViolation(
            "Only SELECT statements may be exported",
            details={"statement": words[0].word if words else ""},
        )

    keywords = {token.word for token in words}
    blocked = [w for w in _SET_OPERATORS if w in keywords]
    if blocked:
        raise SafetyViolation(
            "Set operations are not allowed in raw queries",
            details={"operators": blocked},
        )
    paging = [w for w in _PAGINATION if w in keywords]
    if paging:
        raise ConfigurationError(
            "Raw queries must not contain LIMIT/OFFSET; use the limit and offset options",
            details={"clauses": paging},
        )

    # WITH ... AS (...) SELECT: the main SELECT is the last top-level one
    select_positions = [t.start for t in words if t.word == "SELECT"]
    if not select_positions:
        raise SafetyViolation("Only SELECT statements may be exported")
    main_select = select_positions[-1]

    main_words = [t for t in words if t.start >= main_select]
    where = next((t for t in main_words if t.word == "WHERE"), None)
    after = where.end if where else main_select
    clause = next(
        (t for t in main_words if t.start > after and t.word in _CLAUSE_AFTER_WHERE),
        None,
    )
    clause_start = clause.start if clause else len(text)
    ordered = any(t.word == "ORDER" for t in main_words)

    bound = list(params or [])
    if dialect.paramstyle == "qmark":
        insert_at = where.start if where else clause_start
        index = sum(1 for q in qmarks if q < insert_at)
        bound.insert(index, tenant_id)
        placeholder = "?"
    else:
        bound.append(tenant_id)
        placeholder = dialect.placeholder(len(bound))

    predicate = f"{tenant_column} = {placeholder}"
    if where:
        condition = text[where.end:clause_start].strip()
        scoped = f"{text[:where.start]}WHERE {predicate} AND ({condition})"
    else:
        scoped = f"{text[:clause_start].rstrip()} WHERE {predicate}"
    if clause:
        scoped += f" {text[clause_start:]}"

    return ScopedQuery(
        sql=scoped,
        params=tuple(bound),
        tenant_id=tenant_id,
        ordered=ordered,
    )


def paginate(
    query: ScopedQuery,
    *,
    dialect: Dialect,
    limit: int,
    offset: int = 0,
    order_by: Sequence[str] = (),
    sort_order: str = "ASC",
) -> Tuple[str, Tuple[Any, ...]]:
    """
    Add ORDER BY / LIMIT / OFFSET to a scoped query.

    ORDER BY is only added when the query has none of its own.
    """
    direction = str(sort_order).upper()
    if direction not in ("ASC", "DESC"):
        raise ConfigurationError(f"sort order must be ASC or DESC, got {sort_order!r}")

    limit = _coerce_non_negative(limit, "limit")
    offset = _coerce_non_negative(offset, "offset")

    sql = query.sql
    params = list(query.params)

    if order_by and not query.ordered:
        keys = ", ".join(f"{require_identifier(k, 'column')} {direction}" for k in order_by)
        sql += f" ORDER BY {keys}"

    params.append(limit)
    sql += f" LIMIT {dialect.placeholder(len(params))}"
    params.append(offset)
    sql += f" OFFSET {dialect.placeholder(len(params))}"

    return sql, tuple(params)


def normalize_filters(filters: Any) -> Dict[str, Any]:
    if filters is None:
        return {}
    if not isinstance(filters, Mapping):
        raise ConfigurationError("filters must be a mapping of column to value")
    return dict(filters)
