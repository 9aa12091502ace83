# pgvector_sdk/core/config.py
# SPDX-License-Identifier: Apache-2.0

"""
Configuration objects for the pgvector SDK.

Two layers:

- `PoolConfig`: how to reach the database and size the connection pool.
  Validated before any pool is built; one pool exists per distinct
  `pool_key()`.
- `OperationOptions`: per-operation defaults (table, column, metric, ...)
  that a caller's request overrides field by field via `merge_options`.

Typical usage
-------------

    from pgvector_sdk.core.config import PoolConfig, OperationOptions

    pool_config = PoolConfig.from_env()
    defaults = OperationOptions(table="items", column="embedding", metric="l2")
"""

from __future__ import annotations

import hashlib
import os
import ssl as _ssl
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from pgvector_sdk.vector.vector_base import InvalidConfiguration

DEFAULT_PORT = 5432
DEFAULT_POOL_MAX = 10
DEFAULT_IDLE_TIMEOUT_MS = 30_000
DEFAULT_CONNECT_TIMEOUT_MS = 10_000
DEFAULT_STATEMENT_TIMEOUT_MS = 60_000

POOL_MAX_LIMITS = (1, 100)
PORT_LIMITS = (1, 65535)

SSLSetting = Union[bool, str, _ssl.SSLContext, None]

_CAMEL_KEYS = {
    "poolMax": "pool_max",
    "poolSize": "pool_max",
    "idleTimeoutMillis": "idle_timeout_ms",
    "connectionTimeoutMillis": "connect_timeout_ms",
    "statementTimeoutMillis": "statement_timeout_ms",
}

_TRUTHY = {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidConfiguration(
            f"{name} must be an integer", details={"variable": name}
        ) from None


def _env_ssl(name: str) -> SSLSetting:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return False
    value = raw.strip().lower()
    if value in _TRUTHY:
        return True
    if value in {"0", "false", "no", "off", "disable"}:
        return False
    # libpq sslmode names (require, verify-full, ...) pass through to asyncpg
    return value


@dataclass(frozen=True)
class PoolConfig:
    """
    Connection pool configuration.

    Attributes:
        host: Database host (required)
        database: Database name (required)
        user: Role name (required)
        password: Optional password; never logged
        port: TCP port, 1..65535 (default 5432)
        ssl: False, True (encrypted, certificate not verified), an sslmode
             string, or an ssl.SSLContext
        pool_max: Maximum live connections, 1..100 (default 10)
        idle_timeout_ms: Idle connections are closed after this long
        connect_timeout_ms: Bound on establishing or acquiring a connection;
                            0 leaves connects at the driver default and
                            acquires unbounded
        statement_timeout_ms: Default server-side statement timeout
    """
    host: Optional[str] = None
    database: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    port: int = DEFAULT_PORT
    ssl: SSLSetting = False
    pool_max: int = DEFAULT_POOL_MAX
    idle_timeout_ms: int = DEFAULT_IDLE_TIMEOUT_MS
    connect_timeout_ms: int = DEFAULT_CONNECT_TIMEOUT_MS
    statement_timeout_ms: int = DEFAULT_STATEMENT_TIMEOUT_MS

    def validate(self) -> "PoolConfig":
        """Raise InvalidConfiguration naming the first offending field; return self."""
        for name in ("host", "database", "user"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise InvalidConfiguration(f"{name} is required", details={"field": name})

        if not _is_int(self.port) or not (PORT_LIMITS[0] <= self.port <= PORT_LIMITS[1]):
            raise InvalidConfiguration(
                f"port must be between {PORT_LIMITS[0]} and {PORT_LIMITS[1]}",
                details={"field": "port"},
            )
        if not _is_int(self.pool_max) or not (POOL_MAX_LIMITS[0] <= self.pool_max <= POOL_MAX_LIMITS[1]):
            raise InvalidConfiguration(
                f"pool_max must be between {POOL_MAX_LIMITS[0]} and {POOL_MAX_LIMITS[1]}",
                details={"field": "pool_max"},
            )
        for name in ("idle_timeout_ms", "connect_timeout_ms", "statement_timeout_ms"):
            value = getattr(self, name)
            if not _is_int(value) or value < 0:
                raise InvalidConfiguration(
                    f"{name} must be a non-negative integer", details={"field": name}
                )
        return self

    def pool_key(self) -> Tuple[Any, ...]:
        """
        Identity of the backend this config points at. Two configs with the
        same key share one pool. The password participates only as a digest.
        """
        digest = hashlib.sha256((self.password or "").encode("utf-8")).hexdigest()[:16]
        ssl_key = self.ssl if not isinstance(self.ssl, _ssl.SSLContext) else id(self.ssl)
        return (
            self.host,
            self.port,
            self.database,
            self.user,
            digest,
            ssl_key,
            self.pool_max,
            self.idle_timeout_ms,
            self.connect_timeout_ms,
            self.statement_timeout_ms,
        )

    def with_updates(self, **changes: Any) -> "PoolConfig":
        return replace(self, **changes)

    def describe(self) -> Dict[str, Any]:
        """Log-safe summary (no password)."""
        return {
            "host": self.host,
            "port": self.port,
            "database": self.database,
            "user": self.user,
            "ssl": bool(self.ssl),
            "pool_max": self.pool_max,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PoolConfig":
        """
        Build from a mapping with snake_case or camelCase keys. Unknown keys
        are ignored. The result is not validated; call `validate()`.
        """
        allowed = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            name = _CAMEL_KEYS.get(key, key)
            if name in allowed and value is not None:
                kwargs[name] = value
        return cls(**kwargs)

    @classmethod
    def from_env(cls, prefix: str = "PGVECTOR_") -> "PoolConfig":
        return cls(
            host=os.getenv(f"{prefix}HOST"),
            database=os.getenv(f"{prefix}DATABASE"),
            user=os.getenv(f"{prefix}USER"),
            password=os.getenv(f"{prefix}PASSWORD"),
            port=_env_int(f"{prefix}PORT", DEFAULT_PORT),
            ssl=_env_ssl(f"{prefix}SSL"),
            pool_max=_env_int(f"{prefix}POOL_MAX", DEFAULT_POOL_MAX),
            idle_timeout_ms=_env_int(f"{prefix}IDLE_TIMEOUT_MS", DEFAULT_IDLE_TIMEOUT_MS),
            connect_timeout_ms=_env_int(f"{prefix}CONNECT_TIMEOUT_MS", DEFAULT_CONNECT_TIMEOUT_MS),
            statement_timeout_ms=_env_int(f"{prefix}STATEMENT_TIMEOUT_MS", DEFAULT_STATEMENT_TIMEOUT_MS),
        )


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class OperationOptions:
    """
    Per-operation defaults. Every field is optional; the adapter applies its
    own fallbacks (metric "cosine", limit 10, id column "id") after merging.
    """
    table: Optional[str] = None
    column: Optional[str] = None
    id_column: Optional[str] = None
    metric: Optional[str] = None
    limit: Any = None
    normalize: Optional[bool] = None
    dimension: Optional[int] = None
    select: Optional[str] = None
    where: Optional[str] = None
    index_name: Optional[str] = None
    probes: Any = None
    timeout_ms: Optional[int] = None

    @classmethod
    def from_object(cls, obj: Any) -> "OperationOptions":
        """Pick matching attributes off any spec dataclass (or mapping)."""
        names = [f.name for f in fields(cls)]
        if isinstance(obj, Mapping):
            return cls(**{n: obj.get(n) for n in names})
        return cls(**{n: getattr(obj, n, None) for n in names})


def _is_set(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


def merge_options(base: OperationOptions, override: OperationOptions) -> OperationOptions:
    """
    Pure merge: each field of `override` wins when it is set (not None and,
    for strings, not blank); otherwise the `base` value is kept. Neither
    argument is modified.
    """
    merged = {}
    for f in fields(OperationOptions):
        value = getattr(override, f.name)
        merged[f.name] = value if _is_set(value) else getattr(base, f.name)
    return OperationOptions(**merged)


__all__ = [
    "PoolConfig",
    "OperationOptions",
    "merge_options",
    "DEFAULT_PORT",
    "DEFAULT_POOL_MAX",
    "DEFAULT_IDLE_TIMEOUT_MS",
    "DEFAULT_CONNECT_TIMEOUT_MS",
    "DEFAULT_STATEMENT_TIMEOUT_MS",
    "POOL_MAX_LIMITS",
    "PORT_LIMITS",
]
