# pgvector_sdk/vector/pgvector_adapter.py
# SPDX-License-Identifier: Apache-2.0
"""
PostgreSQL + pgvector operation adapter.

Implements PgVectorProtocolV1 on top of a PoolClient:

    request → validate required fields → parse / check / normalize vector
            → build Statement → execute with retry and timeout
            → rows or a normalized PgVectorError

Validation errors are raised before a connection is acquired. Database
errors are translated into the SDK taxonomy by `_translate_error`, keeping
the backend's message and SQLSTATE and chaining the original exception.

Usage
-----

    from pgvector_sdk.core.config import OperationOptions, PoolConfig
    from pgvector_sdk.vector import SearchSpec
    from pgvector_sdk.vector.pgvector_adapter import PgVectorAdapter

    adapter = await PgVectorAdapter.connect(
        PoolConfig(host="localhost", database="vectors", user="app", password="..."),
        defaults=OperationOptions(table="items", column="embedding"),
    )
    result = await adapter.search(SearchSpec(vector=[0.1, 0.2, 0.3], limit=5))
    await adapter.close()
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pgvector_sdk.core.config import OperationOptions, PoolConfig, merge_options
from pgvector_sdk.core.error_context import get_context
from pgvector_sdk.core.observability import Observability
from pgvector_sdk.core.operation_context import OperationContext
from pgvector_sdk.vector.codec import normalize_vector, parse_vector, validate_dimension
from pgvector_sdk.vector.pool_client import (
    ExecutionResult,
    PoolClient,
    PoolRegistry,
    RetryPolicy,
    is_retryable_error,
)
from pgvector_sdk.vector.query_builder import (
    LIST_COLUMNS_SQL,
    LIST_TABLES_SQL,
    build_create_extension,
    build_create_index,
    build_create_table,
    build_drop_index,
    build_insert_statement,
    build_set_probes,
    build_similarity_query,
    build_upsert_statement,
    clamp_probes,
    metric_name,
)
from pgvector_sdk.vector.vector_base import (
    PGVECTOR_PROTOCOL_VERSION,
    AdminResult,
    AdminSpec,
    AuthError,
    BackendError,
    BadRequest,
    DeadlineExceeded,
    InvalidVector,
    MissingRequiredField,
    NotSupported,
    PgVectorError,
    QuerySpec,
    RawQueryResult,
    RawQuerySpec,
    ResourceExhausted,
    SchemaResult,
    SchemaSpec,
    SearchResult,
    SearchSpec,
    Statement,
    TransientNetwork,
    Unavailable,
    WriteResult,
    WriteSpec,
)

COMPONENT = "pgvector"
DEFAULT_ID_COLUMN = "id"
VECTOR_KEY = "vector"

ADMIN_ACTIONS = (
    "create-extension",
    "create-table",
    "create-ivfflat",
    "create-hnsw",
    "set-probes",
    "drop-index",
)


class PgVectorAdapter:
    """
    Operation facade over one pool.

    Attributes:
        defaults: Per-operation defaults merged under every request
        probes: ivfflat.probes remembered from the last set-probes action and
                applied to each later search on its own connection checkout
    """

    def __init__(
        self,
        client: PoolClient,
        *,
        defaults: Optional[OperationOptions] = None,
        observability: Optional[Observability] = None,
        owns_client: bool = True,
    ) -> None:
        self._client = client
        self._owns_client = owns_client
        self._defaults = defaults or OperationOptions()
        self._obs = observability or Observability()
        self._probes: Optional[int] = clamp_probes(self._defaults.probes) if self._defaults.probes is not None else None

    @classmethod
    async def connect(
        cls,
        config: PoolConfig,
        *,
        defaults: Optional[OperationOptions] = None,
        observability: Optional[Observability] = None,
        retry_policy: Optional[RetryPolicy] = None,
        registry: Optional[PoolRegistry] = None,
    ) -> "PgVectorAdapter":
        """
        Build an adapter for `config`. With a `registry`, adapters sharing a
        backend configuration share one pool and the registry owns closing it.
        """
        if registry is not None:
            client = await registry.get(config)
        else:
            client = await PoolClient.create(
                config, retry_policy=retry_policy, observability=observability
            )
        return cls(
            client,
            defaults=defaults,
            observability=observability,
            owns_client=registry is None,
        )

    @property
    def client(self) -> PoolClient:
        return self._client

    @property
    def defaults(self) -> OperationOptions:
        return self._defaults

    @property
    def probes(self) -> Optional[int]:
        return self._probes

    async def close(self) -> None:
        """Close the pool if this adapter owns it; registry pools are closed by the registry."""
        if self._owns_client:
            await self._client.close()

    # ------------------------------------------------------------------ #
    # Instrumentation helpers
    # ------------------------------------------------------------------ #

    def _record(self, op: str, t0: float, ok: bool, *, code: str = "OK") -> None:
        """Record latency; metrics failures never break the operation."""
        try:
            self._obs.metrics.observe(
                component=COMPONENT,
                op=op,
                ms=(time.monotonic() - t0) * 1000.0,
                ok=ok,
                code=code,
            )
            if not ok:
                self._obs.metrics.counter(component=COMPONENT, name="errors", extra={"op": op})
        except Exception:  # noqa: BLE001
            pass

    @staticmethod
    def _fail_if_expired(ctx: OperationContext, op: str) -> None:
        if ctx.remaining_ms() == 0:
            raise DeadlineExceeded("deadline already expired", details={"op": op})

    @staticmethod
    def _statement_timeout(ctx: OperationContext, requested: Optional[int]) -> Optional[int]:
        candidates = [t for t in (requested, ctx.remaining_ms()) if t is not None]
        return min(candidates) if candidates else None

    async def _instrumented(self, op: str, ctx: Optional[OperationContext], fn: Any, spec: Any) -> Any:
        ctx = ctx or OperationContext()
        t0 = time.monotonic()
        code = "OK"
        try:
            self._fail_if_expired(ctx, op)
            return await fn(spec, ctx)
        except PgVectorError as e:
            code = e.code or type(e).__name__
            raise
        except Exception:
            code = "UNAVAILABLE"
            raise
        finally:
            self._record(op, t0, code == "OK", code=code)

    async def _execute(
        self,
        op: str,
        stmt: Statement,
        *,
        ctx: OperationContext,
        timeout_ms: Optional[int],
        settings: Optional[Mapping[str, Any]] = None,
        fetch: bool = True,
    ) -> ExecutionResult:
        try:
            return await self._client.execute_with_retry(
                stmt.text,
                stmt.params,
                timeout_ms=self._statement_timeout(ctx, timeout_ms),
                settings=settings,
                fetch=fetch,
                operation=op,
                deadline_ms=ctx.deadline_ms,
            )
        except PgVectorError:
            raise
        except Exception as exc:
            err = self._translate_error(exc, op=op)
            self._obs.log_error(op, exc, code=err.code, request_id=ctx.request_id)
            raise err from exc

    def _translate_error(self, err: Exception, *, op: str) -> PgVectorError:
        """
        Map asyncpg / socket errors into the SDK taxonomy. The backend message
        is always kept; SQLSTATE and attempt count go into details.
        """
        if isinstance(err, PgVectorError):
            return err

        sqlstate = getattr(err, "sqlstate", None) or ""
        message = str(err) or type(err).__name__
        details: Dict[str, Any] = {"op": op, "error": type(err).__name__}
        if sqlstate:
            details["sqlstate"] = sqlstate
        attempts = get_context(err).get("attempts")
        if attempts is not None:
            details["attempts"] = attempts

        if sqlstate == "42P01":
            return BackendError(f"table does not exist; create it first ({message})", code="UNDEFINED_TABLE", details=details)
        if sqlstate == "42703":
            return BackendError(f"column does not exist ({message})", code="UNDEFINED_COLUMN", details=details)
        if sqlstate == "42704" and "vector" in message.lower():
            return BackendError(
                f"pgvector extension is not installed; run create-extension first ({message})",
                code="EXTENSION_MISSING",
                details=details,
            )
        if sqlstate == "42883":
            return BackendError(
                f"vector operator not available for this column; check the column type and the pgvector extension ({message})",
                code="UNDEFINED_FUNCTION",
                details=details,
            )
        if sqlstate == "42501" or sqlstate.startswith("28"):
            return AuthError(message, details=details)
        if sqlstate == "3D000":
            return BackendError(f"database does not exist ({message})", code="UNDEFINED_DATABASE", details=details)
        if sqlstate == "23505":
            return BackendError(message, code="UNIQUE_VIOLATION", details=details)
        if sqlstate.startswith("23"):
            return BackendError(message, code="CONSTRAINT_VIOLATION", details=details)
        if sqlstate == "42601":
            return BackendError(f"SQL syntax error ({message})", code="SYNTAX_ERROR", details=details)
        if sqlstate.startswith("22"):
            return BackendError(message, code="DATA_ERROR", details=details)
        if sqlstate == "57014":
            return DeadlineExceeded(f"statement timed out ({message})", details=details)

        retry_after_ms = int(self._client.retry_policy.base_delay_ms)
        if sqlstate == "53300":
            return ResourceExhausted(message, retry_after_ms=retry_after_ms, details=details)
        if sqlstate == "57P03":
            return Unavailable(message, retry_after_ms=retry_after_ms, details=details)
        if is_retryable_error(err):
            return TransientNetwork(message, retry_after_ms=retry_after_ms, details=details)
        if isinstance(err, ValueError):
            return BadRequest(message, details=details)
        if sqlstate:
            return BackendError(message, details=details)
        return Unavailable(message, details=details)

    # ------------------------------------------------------------------ #
    # Shared validation
    # ------------------------------------------------------------------ #

    def _options(self, spec: Any) -> OperationOptions:
        return merge_options(self._defaults, OperationOptions.from_object(spec))

    @staticmethod
    def _require(**named: Any) -> None:
        for name, value in named.items():
            if value is None or (isinstance(value, str) and not value.strip()):
                raise MissingRequiredField(f"{name} is required", details={"field": name})

    @staticmethod
    def _prepare_vector(raw: Any, opts: OperationOptions) -> List[float]:
        if raw is None:
            raise MissingRequiredField("vector is required", details={"field": VECTOR_KEY})
        vector = parse_vector(raw)
        if not vector:
            raise InvalidVector("Vector is empty")
        validate_dimension(vector, opts.dimension)
        if opts.normalize:
            vector = normalize_vector(vector)
        return vector

    @staticmethod
    def _records(records: Any) -> List[Mapping[str, Any]]:
        if isinstance(records, Mapping):
            records = [records]
        if not isinstance(records, (list, tuple)):
            raise BadRequest("records must be an object or a list of objects")
        if not records:
            raise BadRequest("No records to insert")
        for index, record in enumerate(records):
            if not isinstance(record, Mapping):
                raise BadRequest(f"record {index} is not an object", details={"index": index})
        return list(records)

    # ------------------------------------------------------------------ #
    # Operations
    # ------------------------------------------------------------------ #

    async def search(self, spec: SearchSpec, *, ctx: Optional[OperationContext] = None) -> SearchResult:
        """Nearest-neighbor rows, ascending by distance in column `similarity`."""
        return await self._instrumented("search", ctx, self._do_search, spec)

    async def _do_search(self, spec: SearchSpec, ctx: OperationContext) -> SearchResult:
        opts = self._options(spec)
        self._require(table=opts.table, column=opts.column)
        if spec.filter is not None and not isinstance(spec.filter, Mapping):
            raise BadRequest("filter must be an object")
        for name in ("where", "select"):
            if getattr(opts, name) is not None and not isinstance(getattr(opts, name), str):
                raise BadRequest(f"{name} must be a string", details={"field": name})
        vector = self._prepare_vector(spec.vector, opts)

        stmt = build_similarity_query(
            QuerySpec(
                table=opts.table,
                column=opts.column,
                vector=vector,
                metric=opts.metric,
                limit=opts.limit,
                filter=spec.filter,
                where=opts.where,
                select=opts.select,
            )
        )
        settings = {"ivfflat.probes": self._probes} if self._probes is not None else None
        res = await self._execute("search", stmt, ctx=ctx, timeout_ms=opts.timeout_ms, settings=settings)
        return SearchResult(rows=res.rows, count=len(res.rows), metric=metric_name(opts.metric))

    async def insert(self, spec: WriteSpec, *, ctx: Optional[OperationContext] = None) -> WriteResult:
        """Insert one or many records in a single multi-row statement."""
        return await self._instrumented("insert", ctx, self._do_insert, spec)

    async def _do_insert(self, spec: WriteSpec, ctx: OperationContext) -> WriteResult:
        opts = self._options(spec)
        self._require(table=opts.table, column=opts.column)
        records = self._records(spec.records)
        vectors = [self._prepare_vector(r.get(VECTOR_KEY), opts) for r in records]

        stmt = build_insert_statement(
            opts.table,
            opts.column,
            records,
            vectors,
            id_column=opts.id_column or DEFAULT_ID_COLUMN,
            vector_key=VECTOR_KEY,
        )
        res = await self._execute("insert", stmt, ctx=ctx, timeout_ms=opts.timeout_ms)
        return WriteResult(rows=res.rows, count=len(res.rows))

    async def upsert(self, spec: WriteSpec, *, ctx: Optional[OperationContext] = None) -> WriteResult:
        """
        Insert-or-update keyed on the id column. Several records run as
        consecutive statements; earlier ones stay applied if a later one fails.
        """
        return await self._instrumented("upsert", ctx, self._do_upsert, spec)

    async def _do_upsert(self, spec: WriteSpec, ctx: OperationContext) -> WriteResult:
        opts = self._options(spec)
        self._require(table=opts.table, column=opts.column)
        id_column = opts.id_column or DEFAULT_ID_COLUMN
        records = self._records(spec.records)

        # build everything first so a bad record fails before any write
        statements = [
            build_upsert_statement(
                opts.table,
                opts.column,
                record,
                self._prepare_vector(record.get(VECTOR_KEY), opts),
                id_column=id_column,
                vector_key=VECTOR_KEY,
            )
            for record in records
        ]
        rows: List[Dict[str, Any]] = []
        for stmt in statements:
            res = await self._execute("upsert", stmt, ctx=ctx, timeout_ms=opts.timeout_ms)
            rows.extend(res.rows)
        return WriteResult(rows=rows, count=len(rows))

    async def query(self, spec: RawQuerySpec, *, ctx: Optional[OperationContext] = None) -> RawQueryResult:
        """Run caller-supplied SQL with bound parameters."""
        return await self._instrumented("query", ctx, self._do_query, spec)

    async def _do_query(self, spec: RawQuerySpec, ctx: OperationContext) -> RawQueryResult:
        self._require(sql=spec.sql)
        if not isinstance(spec.sql, str):
            raise BadRequest("sql must be a string")
        params: Sequence[Any] = spec.params if spec.params is not None else ()
        if isinstance(params, (str, bytes)) or not isinstance(params, (list, tuple)):
            raise BadRequest("params must be a list")
        timeout_ms = spec.timeout_ms if spec.timeout_ms is not None else self._defaults.timeout_ms
        res = await self._execute("query", Statement(spec.sql, tuple(params)), ctx=ctx, timeout_ms=timeout_ms)
        return RawQueryResult(rows=res.rows, row_count=res.row_count)

    async def admin(self, spec: AdminSpec, *, ctx: Optional[OperationContext] = None) -> AdminResult:
        """Extension, table and index maintenance; see ADMIN_ACTIONS."""
        return await self._instrumented("admin", ctx, self._do_admin, spec)

    async def _do_admin(self, spec: AdminSpec, ctx: OperationContext) -> AdminResult:
        self._require(action=spec.action)
        action = str(spec.action).strip().lower()
        opts = self._options(spec)

        if action == "create-extension":
            stmt = build_create_extension()
        elif action == "create-table":
            stmt = build_create_table(opts.table, opts.column, opts.dimension)
        elif action in ("create-ivfflat", "create-hnsw"):
            stmt = build_create_index(
                action.split("-", 1)[1],
                opts.table,
                opts.column,
                metric=opts.metric,
                index_name=opts.index_name,
                lists=spec.lists,
                m=spec.m,
                ef_construction=spec.ef_construction,
            )
        elif action == "set-probes":
            probes = clamp_probes(opts.probes)
            stmt = build_set_probes(probes)
        elif action == "drop-index":
            stmt = build_drop_index(opts.table, opts.column, opts.index_name)
        else:
            raise NotSupported(
                f"Unsupported action: {spec.action}",
                details={"supported": list(ADMIN_ACTIONS)},
            )

        res = await self._execute("admin", stmt, ctx=ctx, timeout_ms=opts.timeout_ms, fetch=False)
        if action == "set-probes":
            self._probes = probes
        return AdminResult(ok=True, action=action, statement=stmt.text, status=res.status)

    async def schema(self, spec: SchemaSpec, *, ctx: Optional[OperationContext] = None) -> SchemaResult:
        """Public tables, or the columns of `spec.table`."""
        return await self._instrumented("schema", ctx, self._do_schema, spec)

    async def _do_schema(self, spec: SchemaSpec, ctx: OperationContext) -> SchemaResult:
        table = spec.table
        if table is not None and not isinstance(table, str):
            raise BadRequest("table must be a string")
        timeout_ms = spec.timeout_ms if spec.timeout_ms is not None else self._defaults.timeout_ms
        if table and table.strip():
            stmt = Statement(LIST_COLUMNS_SQL, (table.strip(),))
            res = await self._execute("schema", stmt, ctx=ctx, timeout_ms=timeout_ms)
            return SchemaResult(table=table.strip(), rows=res.rows)
        res = await self._execute("schema", Statement(LIST_TABLES_SQL), ctx=ctx, timeout_ms=timeout_ms)
        return SchemaResult(table=None, rows=res.rows)

    async def health(self, *, ctx: Optional[OperationContext] = None) -> Dict[str, Any]:
        """Connection probe plus pool statistics. Never raises for a down backend."""
        ctx = ctx or OperationContext()
        t0 = time.monotonic()
        remaining = ctx.remaining_ms()
        ok = await (
            self._client.test_connection(remaining) if remaining else self._client.test_connection()
        )
        try:
            pool = self._client.stats()
        except Exception:  # noqa: BLE001
            pool = None
        self._record("health", t0, ok, code="OK" if ok else "UNAVAILABLE")
        return {
            "ok": ok,
            "server": "postgresql",
            "version": PGVECTOR_PROTOCOL_VERSION,
            "pool": pool,
        }


__all__ = ["PgVectorAdapter", "ADMIN_ACTIONS"]
