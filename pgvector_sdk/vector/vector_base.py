# pgvector_sdk/vector/vector_base.py
# SPDX-License-Identifier: Apache-2.0
"""
pgvector SDK - Operation Contracts V1.0

Purpose
-------
Typed contracts, normalized errors and the wire envelope for running
vector-similarity operations against PostgreSQL + pgvector from any async
host application.

The canonical interface for interoperability is the wire-level contract:

    Request:
        {
            "op": "pgvector.<operation>",
            "ctx": { ... },
            "args": { ... }
        }

    Response (success):
        {
            "ok": true,
            "code": "OK",
            "ms": <float>,
            "result": { ... }
        }

    Response (error):
        {
            "ok": false,
            "code": "<UPPER_SNAKE_CASE>",
            "error": "<ErrorClassName>",
            "message": "<human readable>",
            "retry_after_ms": <int|null>,
            "details": { ... }
        }

This file provides:

- Frozen dataclasses mirroring the operation arguments and results
- The normalized error taxonomy shared by the codec, builder, pool client
  and adapter layers
- PgVectorProtocolV1, the async surface every adapter implements
- WirePgVectorHandler, which converts wire envelopes <-> typed API

Design Philosophy
-----------------
- Validation errors are raised before a pooled connection is touched
- Async-first: every backend operation is a coroutine
- Wire-first: result types serialize with dataclasses.asdict()
- Error classes carry machine-readable codes and SIEM-safe details only

Deliberate Non-Goals
--------------------
- No index algorithm internals (delegated to PostgreSQL + pgvector)
- No credential storage or secret management
- No distributed query planning

Versioning
----------
Follow SemVer against PGVECTOR_PROTOCOL_VERSION. Minor versions are strictly additive.
"""

from __future__ import annotations

import time
import logging
from dataclasses import dataclass, asdict, fields
from typing import (
    Any,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Tuple,
    Type,
    TypeVar,
    runtime_checkable,
)

from pgvector_sdk.core.operation_context import OperationContext

PGVECTOR_PROTOCOL_VERSION = "1.0.0"
PGVECTOR_PROTOCOL_ID = "pgvector/v1.0"
LOG = logging.getLogger(__name__)

Row = Dict[str, Any]

# =============================================================================
# Normalized Errors
# =============================================================================

class PgVectorError(Exception):
    """
    Base exception for all pgvector SDK errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (UPPER_SNAKE_CASE)
        retry_after_ms: Suggested delay before retry (None if not retryable)
        suggested_batch_reduction: Percentage reduction suggestion for batch size
        details: Additional context-specific error details (JSON-serializable, SIEM-safe)
    """
    def __init__(
        self,
        message: str = "",
        *,
        code: Optional[str] = None,
        retry_after_ms: Optional[int] = None,
        suggested_batch_reduction: Optional[int] = None,
        details: Optional[Mapping[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.retry_after_ms = retry_after_ms
        self.suggested_batch_reduction = suggested_batch_reduction
        self.details = dict(details or {})

    def asdict(self) -> Dict[str, Any]:
        """Convert error to dictionary for serialization and logging."""
        return {
            "message": self.message,
            "code": self.code,
            "retry_after_ms": self.retry_after_ms,
            "suggested_batch_reduction": self.suggested_batch_reduction,
            "details": {k: self.details[k] for k in sorted(self.details)},
        }

# Subclasses set default `code` in UPPER_SNAKE_CASE where not explicitly provided.

class BadRequest(PgVectorError):
    """Caller input is invalid. Never retried, never reaches the pool."""
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "BAD_REQUEST")
        super().__init__(message, **kwargs)

class MissingRequiredField(BadRequest):
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "MISSING_REQUIRED_FIELD")
        super().__init__(message, **kwargs)

class InvalidIdentifier(BadRequest):
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "INVALID_IDENTIFIER")
        super().__init__(message, **kwargs)

class UnsupportedFormat(BadRequest):
    """Vector input matched none of the accepted encodings."""
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "UNSUPPORTED_FORMAT")
        super().__init__(message, **kwargs)

class InvalidVector(BadRequest):
    """Vector decoded but contains non-numeric or non-finite elements."""
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "INVALID_VECTOR")
        super().__init__(message, **kwargs)

class NotAVector(BadRequest):
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "NOT_A_VECTOR")
        super().__init__(message, **kwargs)

class DimensionMismatch(BadRequest):
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "DIMENSION_MISMATCH")
        super().__init__(message, **kwargs)

class InvalidConfiguration(BadRequest):
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "BAD_CONFIG")
        super().__init__(message, **kwargs)

class NotSupported(BadRequest):
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "NOT_SUPPORTED")
        super().__init__(message, **kwargs)

class AuthError(PgVectorError):
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "AUTH_ERROR")
        super().__init__(message, **kwargs)

class ResourceExhausted(PgVectorError):
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "RESOURCE_EXHAUSTED")
        super().__init__(message, **kwargs)

class TransientNetwork(PgVectorError):
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "TRANSIENT_NETWORK")
        super().__init__(message, **kwargs)

class Unavailable(PgVectorError):
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "UNAVAILABLE")
        super().__init__(message, **kwargs)

class DeadlineExceeded(PgVectorError):
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "DEADLINE_EXCEEDED")
        super().__init__(message, **kwargs)

class BackendError(PgVectorError):
    """A permanent database error; `details["sqlstate"]` carries the SQLSTATE when known."""
    def __init__(self, message: str = "", **kwargs: Any):
        kwargs.setdefault("code", "BACKEND_ERROR")
        super().__init__(message, **kwargs)

# =============================================================================
# Statement & Operation Specs
# =============================================================================

@dataclass(frozen=True)
class Statement:
    """
    A parameterized SQL statement.

    Attributes:
        text: SQL text using $1..$N placeholders
        params: Bind values; for similarity queries params[0] is the vector literal
    """
    text: str
    params: Tuple[Any, ...] = ()

@dataclass(frozen=True)
class QuerySpec:
    """
    Builder input for a nearest-neighbor statement. `vector` is already parsed.

    Attributes:
        table: Target table (escaped by the builder)
        column: Vector column (escaped by the builder)
        vector: Query embedding
        metric: cosine | l2 | inner-product | ip (unknown names fall back to cosine)
        limit: Requested row count, clamped to [1, 10000]
        filter: Equality filters, bound as $2..$N in insertion order
        where: Raw caller-trusted SQL expression appended in parentheses
        select: Projection list (default "*")
    """
    table: Optional[str]
    column: Optional[str]
    vector: List[float]
    metric: Optional[str] = None
    limit: Any = None
    filter: Optional[Mapping[str, Any]] = None
    where: Optional[str] = None
    select: Optional[str] = None

@dataclass(frozen=True)
class SearchSpec:
    """Operation-level search request; unset fields fall back to adapter defaults."""
    vector: Any = None
    table: Optional[str] = None
    column: Optional[str] = None
    metric: Optional[str] = None
    limit: Any = None
    filter: Optional[Mapping[str, Any]] = None
    where: Optional[str] = None
    select: Optional[str] = None
    normalize: Optional[bool] = None
    dimension: Optional[int] = None
    timeout_ms: Optional[int] = None

@dataclass(frozen=True)
class WriteSpec:
    """Insert/upsert request. `records` is one mapping or a sequence of mappings."""
    records: Any = None
    table: Optional[str] = None
    column: Optional[str] = None
    id_column: Optional[str] = None
    normalize: Optional[bool] = None
    dimension: Optional[int] = None
    timeout_ms: Optional[int] = None

@dataclass(frozen=True)
class RawQuerySpec:
    sql: Optional[str] = None
    params: Optional[List[Any]] = None
    timeout_ms: Optional[int] = None

@dataclass(frozen=True)
class AdminSpec:
    """
    Maintenance action request.

    Attributes:
        action: create-extension | create-table | create-ivfflat | create-hnsw |
                set-probes | drop-index
        dimension: Vector size for create-table
        index_name: Defaults to "<table>_<column>_vec_idx"
        probes: ivfflat.probes for set-probes, clamped to [1, 100]
        lists: Optional ivfflat `lists` storage parameter
        m / ef_construction: Optional hnsw storage parameters
    """
    action: Optional[str] = None
    table: Optional[str] = None
    column: Optional[str] = None
    metric: Optional[str] = None
    dimension: Optional[int] = None
    index_name: Optional[str] = None
    probes: Any = None
    lists: Optional[int] = None
    m: Optional[int] = None
    ef_construction: Optional[int] = None
    timeout_ms: Optional[int] = None

@dataclass(frozen=True)
class SchemaSpec:
    table: Optional[str] = None
    timeout_ms: Optional[int] = None

# =============================================================================
# Results
# =============================================================================

@dataclass(frozen=True)
class SearchResult:
    """Rows ordered by ascending `similarity` (a distance; lower is closer)."""
    rows: List[Row]
    count: int
    metric: str

@dataclass(frozen=True)
class WriteResult:
    rows: List[Row]
    count: int

@dataclass(frozen=True)
class RawQueryResult:
    rows: List[Row]
    row_count: int

@dataclass(frozen=True)
class AdminResult:
    ok: bool
    action: str
    statement: str
    status: Optional[str] = None
    rows: Optional[List[Row]] = None

@dataclass(frozen=True)
class SchemaResult:
    """`table` is None when listing tables; otherwise rows are its columns."""
    table: Optional[str]
    rows: List[Row]

# =============================================================================
# Protocol
# =============================================================================

@runtime_checkable
class PgVectorProtocolV1(Protocol):
    """Async operation surface exposed to host applications."""

    async def search(self, spec: SearchSpec, *, ctx: Optional[OperationContext] = None) -> SearchResult: ...

    async def insert(self, spec: WriteSpec, *, ctx: Optional[OperationContext] = None) -> WriteResult: ...

    async def upsert(self, spec: WriteSpec, *, ctx: Optional[OperationContext] = None) -> WriteResult: ...

    async def query(self, spec: RawQuerySpec, *, ctx: Optional[OperationContext] = None) -> RawQueryResult: ...

    async def admin(self, spec: AdminSpec, *, ctx: Optional[OperationContext] = None) -> AdminResult: ...

    async def schema(self, spec: SchemaSpec, *, ctx: Optional[OperationContext] = None) -> SchemaResult: ...

    async def health(self, *, ctx: Optional[OperationContext] = None) -> Dict[str, Any]: ...

# =============================================================================
# Wire Helpers
# =============================================================================

_ARG_ALIASES = {
    "idColumn": "id_column",
    "indexName": "index_name",
    "efConstruction": "ef_construction",
    "timeoutMs": "timeout_ms",
    "whereClause": "where",
    "selectClause": "select",
}

S = TypeVar("S")

def _spec_from_args(cls: Type[S], args: Mapping[str, Any]) -> S:
    """
    Build an operation spec from wire args, accepting the host runtime's
    camelCase keys. Unknown keys are rejected so typos do not silently
    fall back to defaults.
    """
    if not isinstance(args, Mapping):
        raise BadRequest("'args' must be an object")
    allowed = {f.name for f in fields(cls)}
    kwargs: Dict[str, Any] = {}
    for key, value in args.items():
        name = _ARG_ALIASES.get(key, key)
        if name not in allowed:
            raise BadRequest(f"unknown argument '{key}'", details={"argument": str(key)[:64]})
        kwargs[name] = value
    return cls(**kwargs)

def _ctx_from_wire(ctx_dict: Optional[Mapping[str, Any]]) -> OperationContext:
    """
    Convert a wire-level ctx dict into an OperationContext.
    Unknown keys are ignored, per protocol rules.
    """
    if ctx_dict is None:
        return OperationContext()
    return OperationContext.from_dict(ctx_dict)

def _error_to_wire(e: Exception, ms: float) -> Dict[str, Any]:
    """
    Map PgVectorError (or unexpected Exception) to canonical error envelope.
    """
    if isinstance(e, PgVectorError):
        payload = e.asdict()
        return {
            "ok": False,
            "code": payload.get("code") or type(e).__name__.upper(),
            "error": type(e).__name__,
            "message": payload.get("message", ""),
            "retry_after_ms": payload.get("retry_after_ms"),
            "details": payload.get("details") or None,
            "ms": ms,
        }
    # Fallback: treat as UNAVAILABLE/INTERNAL
    return {
        "ok": False,
        "code": "UNAVAILABLE",
        "error": type(e).__name__,
        "message": str(e) or "internal error",
        "retry_after_ms": None,
        "details": None,
        "ms": ms,
    }

def _success_to_wire(result: Any, ms: float) -> Dict[str, Any]:
    if hasattr(result, "__dataclass_fields__"):
        result_payload = asdict(result)
    else:
        result_payload = result
    return {
        "ok": True,
        "code": "OK",
        "ms": ms,
        "result": result_payload,
    }

class WirePgVectorHandler:
    """
    Thin wire-level adapter that exposes a PgVectorProtocolV1 implementation
    using the canonical JSON envelope contract:

        { "op": "pgvector.search", "ctx": {...}, "args": {...} } -> { ... }

    Transport-agnostic: plug it into HTTP, a message bus, or a host runtime's
    node callback.
    """

    _SPECS = {
        "pgvector.search": ("search", SearchSpec),
        "pgvector.insert": ("insert", WriteSpec),
        "pgvector.upsert": ("upsert", WriteSpec),
        "pgvector.query": ("query", RawQuerySpec),
        "pgvector.admin": ("admin", AdminSpec),
        "pgvector.schema": ("schema", SchemaSpec),
    }

    def __init__(self, adapter: PgVectorProtocolV1):
        self._adapter = adapter

    async def handle(self, envelope: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Handle a single request envelope and return a response envelope.

        Expects:
            op: "pgvector.<operation>"
            ctx: { ... }  (optional)
            args: { ... } (operation-specific)
        """
        t0 = time.monotonic()
        try:
            op = envelope.get("op")
            if not isinstance(op, str):
                raise BadRequest("missing or invalid 'op'")

            ctx = _ctx_from_wire(envelope.get("ctx") or {})
            args = envelope.get("args") or {}

            if op == "pgvector.health":
                res = await self._adapter.health(ctx=ctx)
                return _success_to_wire(res, (time.monotonic() - t0) * 1000.0)

            entry = self._SPECS.get(op)
            if entry is None:
                raise NotSupported(f"unknown operation '{op}'")

            method, spec_cls = entry
            spec = _spec_from_args(spec_cls, args)
            res = await getattr(self._adapter, method)(spec, ctx=ctx)
            return _success_to_wire(res, (time.monotonic() - t0) * 1000.0)

        except Exception as e:
            ms = (time.monotonic() - t0) * 1000.0
            if not isinstance(e, PgVectorError):
                LOG.exception("unexpected error handling wire envelope")
            return _error_to_wire(e, ms)

# =============================================================================
# Public Exports
# =============================================================================

__all__ = [
    "PGVECTOR_PROTOCOL_VERSION",
    "PGVECTOR_PROTOCOL_ID",
    "Row",
    "PgVectorError",
    "BadRequest",
    "MissingRequiredField",
    "InvalidIdentifier",
    "UnsupportedFormat",
    "InvalidVector",
    "NotAVector",
    "DimensionMismatch",
    "InvalidConfiguration",
    "NotSupported",
    "AuthError",
    "ResourceExhausted",
    "TransientNetwork",
    "Unavailable",
    "DeadlineExceeded",
    "BackendError",
    "OperationContext",
    "Statement",
    "QuerySpec",
    "SearchSpec",
    "WriteSpec",
    "RawQuerySpec",
    "AdminSpec",
    "SchemaSpec",
    "SearchResult",
    "WriteResult",
    "RawQueryResult",
    "AdminResult",
    "SchemaResult",
    "PgVectorProtocolV1",
    "WirePgVectorHandler",
]
