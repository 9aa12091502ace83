# pgvector_sdk/vector/__init__.py
# SPDX-License-Identifier: Apache-2.0

"""
pgvector Operations V1 - Public API

Contracts, errors, the wire handler and the pure helpers (codec, identifier
escaping, statement builders) are re-exported here. The pool client and the
adapter are imported from their own modules:

    from pgvector_sdk.vector.pgvector_adapter import PgVectorAdapter
    from pgvector_sdk.vector.pool_client import PoolClient, RetryPolicy
"""

from pgvector_sdk.vector.vector_base import (
    # Protocol version
    PGVECTOR_PROTOCOL_VERSION,
    PGVECTOR_PROTOCOL_ID,

    # Error types
    PgVectorError,
    BadRequest,
    MissingRequiredField,
    InvalidIdentifier,
    UnsupportedFormat,
    InvalidVector,
    NotAVector,
    DimensionMismatch,
    InvalidConfiguration,
    NotSupported,
    AuthError,
    ResourceExhausted,
    TransientNetwork,
    Unavailable,
    DeadlineExceeded,
    BackendError,

    # Context
    OperationContext,

    # Specifications
    Statement,
    QuerySpec,
    SearchSpec,
    WriteSpec,
    RawQuerySpec,
    AdminSpec,
    SchemaSpec,

    # Results
    SearchResult,
    WriteResult,
    RawQueryResult,
    AdminResult,
    SchemaResult,

    # Protocol interface
    PgVectorProtocolV1,

    # Wire handler
    WirePgVectorHandler,
)
from pgvector_sdk.vector.codec import (
    parse_vector,
    normalize_vector,
    validate_dimension,
    vector_literal,
)
from pgvector_sdk.vector.identifiers import escape_identifier, escape_select_clause
from pgvector_sdk.vector.query_builder import (
    METRIC_OPERATORS,
    METRIC_OPCLASSES,
    build_similarity_query,
)

__all__ = [
    "PGVECTOR_PROTOCOL_VERSION",
    "PGVECTOR_PROTOCOL_ID",
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
    "parse_vector",
    "normalize_vector",
    "validate_dimension",
    "vector_literal",
    "escape_identifier",
    "escape_select_clause",
    "METRIC_OPERATORS",
    "METRIC_OPCLASSES",
    "build_similarity_query",
]

__version__ = PGVECTOR_PROTOCOL_VERSION
