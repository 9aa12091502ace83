# pgvector_sdk/vector/query_builder.py
# SPDX-License-Identifier: Apache-2.0
"""
Parameterized statement builders for pgvector.

All builders are pure: they take validated inputs and return a `Statement`
without touching a connection. Identifiers are escaped, values are bound.
The one deliberate exception is `QuerySpec.where`, a caller-trusted raw SQL
expression appended verbatim in parentheses.

Similarity statement shape:

    SELECT <select>, <column> <op> $1 AS similarity
    FROM <table>
    [WHERE <key> = $2 AND ... AND (<where>)]
    ORDER BY similarity ASC
    LIMIT <n>

`similarity` is the pgvector distance for the chosen operator, so smaller is
closer for every metric (`<#>` returns the negated inner product).
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from pgvector_sdk.vector.codec import vector_literal
from pgvector_sdk.vector.identifiers import escape_identifier, escape_select_clause
from pgvector_sdk.vector.vector_base import (
    BadRequest,
    MissingRequiredField,
    QuerySpec,
    Statement,
)

DEFAULT_METRIC = "cosine"

METRIC_OPERATORS: Dict[str, str] = {
    "cosine": "<=>",
    "l2": "<->",
    "inner-product": "<#>",
    "ip": "<#>",
}

METRIC_OPCLASSES: Dict[str, str] = {
    "cosine": "vector_cosine_ops",
    "l2": "vector_l2_ops",
    "inner-product": "vector_ip_ops",
    "ip": "vector_ip_ops",
}

DEFAULT_LIMIT = 10
MAX_LIMIT = 10_000

PROBES_MIN = 1
PROBES_MAX = 100
DEFAULT_PROBES = 10

MAX_DIMENSIONS = 16_000

# PostgreSQL's wire protocol caps bind parameters per statement.
MAX_BIND_PARAMS = 32_767

LIST_TABLES_SQL = (
    "SELECT table_name FROM information_schema.tables "
    "WHERE table_schema = 'public' ORDER BY table_name"
)

LIST_COLUMNS_SQL = (
    "SELECT column_name, data_type FROM information_schema.columns "
    "WHERE table_name = $1 ORDER BY ordinal_position"
)

HEALTH_SQL = "SELECT 1"


def metric_name(metric: Optional[str]) -> str:
    """Canonical metric name; unknown or empty names fall back to cosine."""
    key = (metric or "").strip().lower()
    return key if key in METRIC_OPERATORS else DEFAULT_METRIC


def metric_operator(metric: Optional[str]) -> str:
    return METRIC_OPERATORS[metric_name(metric)]


def metric_opclass(metric: Optional[str]) -> str:
    return METRIC_OPCLASSES[metric_name(metric)]


def clamp_limit(limit: Any) -> int:
    """max(1, min(limit or 10, 10000)); non-numeric input counts as unset."""
    requested = _as_int(limit)
    return max(1, min(requested or DEFAULT_LIMIT, MAX_LIMIT))


def clamp_probes(probes: Any) -> int:
    requested = _as_int(probes)
    if requested is None:
        return DEFAULT_PROBES
    return max(PROBES_MIN, min(requested, PROBES_MAX))


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def _require(**named: Any) -> None:
    for name, value in named.items():
        if value is None or (isinstance(value, str) and not value.strip()):
            raise MissingRequiredField(f"{name} is required", details={"field": name})


def build_similarity_query(spec: QuerySpec) -> Statement:
    if not spec.table or not spec.column:
        raise MissingRequiredField(
            "table and column are required",
            details={"table": bool(spec.table), "column": bool(spec.column)},
        )

    table = escape_identifier(spec.table)
    column = escape_identifier(spec.column)
    select = escape_select_clause(spec.select)
    op = metric_operator(spec.metric)

    params: List[Any] = [vector_literal(spec.vector)]
    clauses: List[str] = []
    for key, value in (spec.filter or {}).items():
        params.append(value)
        clauses.append(f"{escape_identifier(key)} = ${len(params)}")
    if spec.where and spec.where.strip():
        clauses.append(f"({spec.where.strip()})")

    text = f"SELECT {select}, {column} {op} $1 AS similarity FROM {table}"
    if clauses:
        text += " WHERE " + " AND ".join(clauses)
    text += f" ORDER BY similarity ASC LIMIT {clamp_limit(spec.limit)}"
    return Statement(text=text, params=tuple(params))


def _record_columns(records: Sequence[Mapping[str, Any]], vector_key: str) -> List[str]:
    """Union of record keys (minus the vector key) in first-seen order."""
    seen: Dict[str, None] = {}
    for record in records:
        for key in record:
            if key != vector_key:
                seen.setdefault(key, None)
    return list(seen)


def _reject_vector_column(records: Sequence[Mapping[str, Any]], column: str, vector_key: str) -> None:
    """The vector column is bound from the parsed vector; a record key naming it would repeat it."""
    if column == vector_key:
        return
    for record in records:
        if column in record:
            raise BadRequest(
                f"record key '{column}' is the vector column; pass the vector as '{vector_key}'",
                details={"field": column},
            )


def _check_param_budget(rows: int, per_row: int) -> None:
    total = rows * per_row
    if total > MAX_BIND_PARAMS:
        max_rows = max(1, MAX_BIND_PARAMS // max(per_row, 1))
        raise BadRequest(
            f"batch needs {total} bind parameters; the limit is {MAX_BIND_PARAMS}",
            suggested_batch_reduction=int(100 - (max_rows * 100 // rows)),
            details={"rows": rows, "max_rows": max_rows},
        )


def build_insert_statement(
    table: str,
    column: str,
    records: Sequence[Mapping[str, Any]],
    vectors: Sequence[Sequence[float]],
    *,
    id_column: str = "id",
    vector_key: str = "vector",
) -> Statement:
    """
    Multi-row insert. `vectors[i]` is the parsed vector of `records[i]` and is
    bound first in each row; other record keys become columns.

        INSERT INTO t (col, a, b) VALUES ($1, $2, $3), ($4, $5, $6) RETURNING id
    """
    _require(table=table, column=column, id_column=id_column)
    if not records:
        raise BadRequest("No records to insert")
    _reject_vector_column(records, column, vector_key)

    fields = _record_columns(records, vector_key)
    per_row = len(fields) + 1
    _check_param_budget(len(records), per_row)

    params: List[Any] = []
    groups: List[str] = []
    for record, vec in zip(records, vectors):
        placeholders = []
        params.append(vector_literal(vec))
        placeholders.append(f"${len(params)}")
        for name in fields:
            params.append(record.get(name))
            placeholders.append(f"${len(params)}")
        groups.append("(" + ", ".join(placeholders) + ")")

    columns = ", ".join([escape_identifier(column)] + [escape_identifier(f) for f in fields])
    text = (
        f"INSERT INTO {escape_identifier(table)} ({columns}) VALUES "
        + ", ".join(groups)
        + f" RETURNING {escape_identifier(id_column)}"
    )
    return Statement(text=text, params=tuple(params))


def build_upsert_statement(
    table: str,
    column: str,
    record: Mapping[str, Any],
    vector: Sequence[float],
    *,
    id_column: str = "id",
    vector_key: str = "vector",
) -> Statement:
    """
    Single-record upsert keyed on `id_column`. The vector is bound as $1 and
    the record's other keys as $2..$N.

        INSERT INTO t (id, a, col) VALUES ($2, $3, $1)
        ON CONFLICT (id) DO UPDATE SET a = EXCLUDED.a, col = EXCLUDED.col
        RETURNING *
    """
    _require(table=table, column=column, id_column=id_column)
    if record.get(id_column) is None:
        raise MissingRequiredField(
            f"record must include '{id_column}' for upsert",
            details={"field": id_column},
        )

    _reject_vector_column([record], column, vector_key)
    fields = [k for k in record if k != vector_key]
    params: List[Any] = [vector_literal(vector)]
    placeholders: List[str] = []
    for name in fields:
        params.append(record[name])
        placeholders.append(f"${len(params)}")

    col = escape_identifier(column)
    id_col = escape_identifier(id_column)
    escaped = [escape_identifier(f) for f in fields]
    updates = [f"{e} = EXCLUDED.{e}" for f, e in zip(fields, escaped) if f != id_column]
    updates.append(f"{col} = EXCLUDED.{col}")

    text = (
        f"INSERT INTO {escape_identifier(table)} ({', '.join(escaped + [col])}) "
        f"VALUES ({', '.join(placeholders + ['$1'])}) "
        f"ON CONFLICT ({id_col}) DO UPDATE SET {', '.join(updates)} "
        "RETURNING *"
    )
    return Statement(text=text, params=tuple(params))


# --------------------------------------------------------------------------- #
# Admin DDL
# --------------------------------------------------------------------------- #

def default_index_name(table: str, column: str) -> str:
    return f"{table}_{column}_vec_idx"


def build_create_extension() -> Statement:
    return Statement("CREATE EXTENSION IF NOT EXISTS vector")


def build_create_table(table: str, column: str, dimension: Any) -> Statement:
    _require(table=table, column=column)
    dims = _as_int(dimension)
    if dims is None or not (1 <= dims <= MAX_DIMENSIONS):
        raise BadRequest(
            f"dimension must be between 1 and {MAX_DIMENSIONS}",
            details={"field": "dimension"},
        )
    return Statement(
        f"CREATE TABLE IF NOT EXISTS {escape_identifier(table)} ("
        f"id SERIAL PRIMARY KEY, metadata jsonb, {escape_identifier(column)} vector({dims}))"
    )


def _storage_params(**named: Any) -> Tuple[str, ...]:
    out = []
    for name, value in named.items():
        if value is None:
            continue
        number = _as_int(value)
        if number is None or number < 1:
            raise BadRequest(f"{name} must be a positive integer", details={"field": name})
        out.append(f"{name} = {number}")
    return tuple(out)


def build_create_index(
    method: str,
    table: str,
    column: str,
    *,
    metric: Optional[str] = None,
    index_name: Optional[str] = None,
    lists: Any = None,
    m: Any = None,
    ef_construction: Any = None,
) -> Statement:
    """CREATE INDEX IF NOT EXISTS for method "ivfflat" or "hnsw"."""
    _require(table=table, column=column)
    if method == "ivfflat":
        storage = _storage_params(lists=lists)
    elif method == "hnsw":
        storage = _storage_params(m=m, ef_construction=ef_construction)
    else:
        raise BadRequest(f"Unsupported index method: {method}")

    name = index_name or default_index_name(table, column)
    text = (
        f"CREATE INDEX IF NOT EXISTS {escape_identifier(name)} "
        f"ON {escape_identifier(table)} USING {method} "
        f"({escape_identifier(column)} {metric_opclass(metric)})"
    )
    if storage:
        text += f" WITH ({', '.join(storage)})"
    return Statement(text)


def build_set_probes(probes: Any) -> Statement:
    return Statement(f"SET ivfflat.probes = {clamp_probes(probes)}")


def build_drop_index(table: Optional[str], column: Optional[str], index_name: Optional[str] = None) -> Statement:
    if not index_name:
        _require(table=table, column=column)
    name = index_name or default_index_name(table, column)
    return Statement(f"DROP INDEX IF EXISTS {escape_identifier(name)}")


__all__ = [
    "METRIC_OPERATORS",
    "METRIC_OPCLASSES",
    "DEFAULT_METRIC",
    "DEFAULT_LIMIT",
    "MAX_LIMIT",
    "DEFAULT_PROBES",
    "MAX_BIND_PARAMS",
    "LIST_TABLES_SQL",
    "LIST_COLUMNS_SQL",
    "HEALTH_SQL",
    "metric_name",
    "metric_operator",
    "metric_opclass",
    "clamp_limit",
    "clamp_probes",
    "build_similarity_query",
    "build_insert_statement",
    "build_upsert_statement",
    "default_index_name",
    "build_create_extension",
    "build_create_table",
    "build_create_index",
    "build_set_probes",
    "build_drop_index",
]
