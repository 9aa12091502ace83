# pgvector_sdk/vector/pool_client.py
# SPDX-License-Identifier: Apache-2.0
"""
Connection pool client for PostgreSQL + pgvector.

Purpose
-------
Owns the asyncpg pool lifecycle and is the only path by which statements
reach the database:

- `create_pool` validates configuration and builds a lazily-connecting pool
- `with_scoped_connection` acquires one connection, applies per-call session
  settings, runs the caller's coroutine and always releases the connection
- `execute_with_retry` retries transient failures with exponential backoff,
  re-raising the last original error once attempts are exhausted
- `test_connection` is a best-effort probe that never raises
- `close_pool` is idempotent and bounded

Retry classification
--------------------
Retryable: connection refused, host not found, timeouts while connecting or
acquiring, "cannot connect now" (57P03), "too many connections" (53300) and
connections terminated mid-flight. Everything else is fatal and is raised on
the first attempt.

Usage
-----

    client = await PoolClient.create(PoolConfig.from_env())
    try:
        result = await client.execute_with_retry("SELECT 1")
    finally:
        await client.close()
"""

from __future__ import annotations

import asyncio
import errno
import logging
import re
import socket
import ssl as _ssl
import time
from dataclasses import dataclass, field, replace
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)

import asyncpg

from pgvector_sdk.core.config import PoolConfig
from pgvector_sdk.core.error_context import attach_context
from pgvector_sdk.core.observability import Observability
from pgvector_sdk.vector.query_builder import HEALTH_SQL

LOG = logging.getLogger(__name__)

COMPONENT = "pool"
APPLICATION_NAME = "pgvector_sdk"
DEFAULT_PROBE_TIMEOUT_MS = 5_000
DEFAULT_CLOSE_TIMEOUT_S = 10.0

T = TypeVar("T")

_SETTING_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")

_RETRYABLE_TYPES: Tuple[type, ...] = (
    ConnectionRefusedError,
    socket.gaierror,
    TimeoutError,
    asyncio.TimeoutError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.ConnectionDoesNotExistError,
    asyncpg.exceptions.ConnectionFailureError,
)

_RETRYABLE_ERRNOS = {errno.ECONNREFUSED, errno.ETIMEDOUT, errno.EHOSTUNREACH, errno.ENETUNREACH}

_TERMINATED_MARKERS = (
    "connection terminated",
    "connection was closed",
    "terminating connection",
)


# --------------------------------------------------------------------------- #
# Classification
# --------------------------------------------------------------------------- #

def is_connection_terminated(exc: BaseException) -> bool:
    """True when the error message says the backend connection went away."""
    message = str(exc).lower()
    return any(marker in message for marker in _TERMINATED_MARKERS)


def is_retryable_error(exc: BaseException) -> bool:
    if isinstance(exc, _RETRYABLE_TYPES):
        return True
    if isinstance(exc, OSError) and exc.errno in _RETRYABLE_ERRNOS:
        return True
    # asyncpg reports several failed addresses as one OSError without errno
    if isinstance(exc, OSError) and "connect call failed" in str(exc).lower():
        return True
    return is_connection_terminated(exc)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff.

    Attributes:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1)
        base_delay_ms: Delay before the first retry
        multiplier: Growth factor; delay = base_delay_ms * multiplier ** attempt
        max_delay_ms: Optional cap on any single delay
        is_retryable: Classification over observed errors
    """
    max_retries: int = 2
    base_delay_ms: float = 100.0
    multiplier: float = 2.0
    max_delay_ms: Optional[float] = 5_000.0
    is_retryable: Callable[[BaseException], bool] = is_retryable_error

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_ms < 0:
            raise ValueError("base_delay_ms must be >= 0")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if self.max_delay_ms is not None and self.max_delay_ms < 0:
            raise ValueError("max_delay_ms must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_ms(self, attempt: int) -> float:
        """Delay after the failed attempt with zero-based index `attempt`."""
        delay = self.base_delay_ms * (self.multiplier ** attempt)
        if self.max_delay_ms is not None:
            delay = min(delay, self.max_delay_ms)
        return delay


NO_RETRY = RetryPolicy(max_retries=0)


@dataclass(frozen=True)
class ExecutionResult:
    """
    Outcome of one statement.

    Attributes:
        rows: Returned rows as plain dicts
        status: Backend command tag, e.g. "INSERT 0 3"
        row_count: Affected/returned row count parsed from the command tag
        attempts: How many attempts it took
        ms: Wall time of the successful attempt
    """
    rows: List[Dict[str, Any]] = field(default_factory=list)
    status: Optional[str] = None
    row_count: int = 0
    attempts: int = 1
    ms: float = 0.0


def _row_count(status: Optional[str], rows: Sequence[Any]) -> int:
    if status:
        last = status.rsplit(" ", 1)[-1]
        if last.isdigit():
            return int(last)
    return len(rows)


def _error_code(exc: BaseException) -> str:
    return getattr(exc, "sqlstate", None) or type(exc).__name__


# --------------------------------------------------------------------------- #
# Pool lifecycle
# --------------------------------------------------------------------------- #

def _ssl_argument(setting: Any) -> Any:
    if setting is True:
        # encrypted, certificate not verified
        return "require"
    if not setting:
        return False
    if isinstance(setting, (str, _ssl.SSLContext)):
        return setting
    return "require"


async def create_pool(
    config: PoolConfig,
    *,
    observability: Optional[Observability] = None,
) -> asyncpg.Pool:
    """
    Validate `config` and build an asyncpg pool.

    The pool holds no connections until first use (`min_size=0`), so an
    unreachable host surfaces on the first statement, where it can be
    retried. Each new connection registers a termination listener so connections
    dropped by the server or the idle reaper are logged and counted.
    """
    config.validate()
    obs = observability or Observability()

    def _on_terminated(_conn: Any) -> None:
        obs.logger.debug("backend connection closed host=%s", config.host)
        obs.metrics.counter(component=COMPONENT, name="connections_closed")

    async def _init(conn: Any) -> None:
        conn.add_termination_listener(_on_terminated)

    connect_kwargs: Dict[str, Any] = {}
    if config.connect_timeout_ms:
        connect_kwargs["timeout"] = config.connect_timeout_ms / 1000.0

    pool = await asyncpg.create_pool(
        host=config.host,
        port=config.port,
        user=config.user,
        password=config.password,
        database=config.database,
        ssl=_ssl_argument(config.ssl),
        min_size=0,
        max_size=config.pool_max,
        max_inactive_connection_lifetime=config.idle_timeout_ms / 1000.0,
        server_settings={
            "statement_timeout": str(config.statement_timeout_ms),
            "application_name": APPLICATION_NAME,
        },
        init=_init,
        **connect_kwargs,
    )
    obs.logger.info("pool created %s", config.describe())
    return pool


async def close_pool(pool: Optional[Any], timeout_s: float = DEFAULT_CLOSE_TIMEOUT_S) -> None:
    """
    Gracefully close `pool`. No-op for None or an already closing pool;
    terminates the pool if graceful close exceeds `timeout_s`.
    """
    if pool is None or pool.is_closing():
        return
    try:
        await asyncio.wait_for(pool.close(), timeout=timeout_s)
    except asyncio.TimeoutError:
        LOG.warning("pool close timed out after %.1fs; terminating", timeout_s)
        pool.terminate()


# --------------------------------------------------------------------------- #
# Execution
# --------------------------------------------------------------------------- #

def _setting_value(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"session setting value must be numeric, got {type(value).__name__}")
    return int(value)


async def with_scoped_connection(
    pool: Any,
    fn: Callable[[Any], Awaitable[T]],
    timeout_ms: Optional[int] = None,
    settings: Optional[Mapping[str, Any]] = None,
    *,
    acquire_timeout_s: Optional[float] = None,
) -> T:
    """
    Run `fn(conn)` on one pooled connection.

    `timeout_ms` sets `statement_timeout` for this checkout (at least 1 ms, a
    zero would disable it). `settings` are extra numeric session settings
    such as {"ivfflat.probes": 20}. The pool resets session state on
    release, so neither leaks into later checkouts.

    The connection is released on every exit path before the result or the
    error reaches the caller.
    """
    for name in settings or {}:
        if not _SETTING_NAME.match(name):
            raise ValueError(f"invalid session setting name: {name!r}")

    conn = await pool.acquire(timeout=acquire_timeout_s)
    try:
        if timeout_ms is not None:
            await conn.execute(f"SET statement_timeout = {max(1, _setting_value(timeout_ms))}")
        for name, value in (settings or {}).items():
            await conn.execute(f"SET {name} = {_setting_value(value)}")
        return await fn(conn)
    finally:
        try:
            await pool.release(conn)
        except Exception:  # noqa: BLE001
            LOG.warning("failed to release connection back to pool", exc_info=True)


async def _run_statement(conn: Any, text: str, params: Sequence[Any], fetch: bool) -> ExecutionResult:
    if not fetch:
        status = await conn.execute(text, *params)
        return ExecutionResult(rows=[], status=status, row_count=_row_count(status, ()))
    stmt = await conn.prepare(text)
    records = await stmt.fetch(*params)
    status = stmt.get_statusmsg()
    rows = [dict(r) for r in records]
    return ExecutionResult(rows=rows, status=status, row_count=_row_count(status, rows))


async def execute_with_retry(
    pool: Any,
    text: str,
    params: Sequence[Any] = (),
    policy: Optional[RetryPolicy] = None,
    *,
    timeout_ms: Optional[int] = None,
    settings: Optional[Mapping[str, Any]] = None,
    fetch: bool = True,
    operation: str = "query",
    deadline_ms: Optional[int] = None,
    acquire_timeout_s: Optional[float] = None,
    observability: Optional[Observability] = None,
    on_backoff: Optional[Callable[[int, float, BaseException], None]] = None,
) -> ExecutionResult:
    """
    Execute `text` with up to `policy.max_retries + 1` attempts.

    Between attempts on a retryable error the coroutine sleeps
    `policy.delay_ms(attempt)` without holding a connection. A fatal error,
    the final retryable error, or a retry that would overrun `deadline_ms`
    (absolute epoch ms) is re-raised as the original exception with
    context attached.

    `on_backoff(attempt_number, delay_ms, exc)` is called before each sleep.
    """
    policy = policy or RetryPolicy()
    obs = observability or Observability()
    params = tuple(params or ())

    for attempt in range(policy.max_attempts):
        t0 = time.monotonic()
        obs.metrics.counter(component=COMPONENT, name="attempts")
        try:
            result = await with_scoped_connection(
                pool,
                lambda conn: _run_statement(conn, text, params, fetch),
                timeout_ms,
                settings,
                acquire_timeout_s=acquire_timeout_s,
            )
        except Exception as exc:
            ms = (time.monotonic() - t0) * 1000.0
            retryable = policy.is_retryable(exc)
            delay = policy.delay_ms(attempt)
            last_attempt = attempt == policy.max_attempts - 1
            over_deadline = (
                deadline_ms is not None
                and int(time.time() * 1000) + delay >= deadline_ms
            )
            if not retryable or last_attempt or over_deadline:
                attach_context(
                    exc,
                    "pool_client",
                    operation=operation,
                    attempts=attempt + 1,
                    retryable=retryable,
                )
                obs.metrics.counter(component=COMPONENT, name="errors")
                obs.metrics.observe(
                    component=COMPONENT, op=operation, ms=ms, ok=False, code=_error_code(exc)
                )
                raise
            obs.logger.warning(
                "retryable error op=%s attempt=%d/%d delay_ms=%d error=%s: %s",
                operation,
                attempt + 1,
                policy.max_attempts,
                round(delay),
                type(exc).__name__,
                exc,
            )
            obs.metrics.counter(component=COMPONENT, name="retries")
            if on_backoff is not None:
                on_backoff(attempt + 1, delay, exc)
            await asyncio.sleep(delay / 1000.0)
            continue

        ms = (time.monotonic() - t0) * 1000.0
        obs.log_query(text, ms, result.row_count, operation=operation)
        obs.metrics.counter(component=COMPONENT, name="queries")
        obs.metrics.observe(component=COMPONENT, op=operation, ms=ms, ok=True)
        return replace(result, attempts=attempt + 1, ms=ms)

    raise AssertionError("retry loop exited without a result")  # pragma: no cover


async def test_connection(pool: Any, timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS) -> bool:
    """Run `SELECT 1`; False on any failure or after `timeout_ms`."""
    async def _probe(conn: Any) -> Any:
        return await conn.fetchval(HEALTH_SQL)

    try:
        value = await asyncio.wait_for(
            with_scoped_connection(pool, _probe),
            timeout=timeout_ms / 1000.0,
        )
    except Exception as exc:  # noqa: BLE001
        LOG.debug("connection probe failed: %s: %s", type(exc).__name__, exc)
        return False
    return value == 1


# --------------------------------------------------------------------------- #
# Client
# --------------------------------------------------------------------------- #

class PoolClient:
    """
    A pool plus the policy and observability it runs under.

    Construct with `await PoolClient.create(config)` for a real asyncpg pool,
    or pass any object with the asyncpg Pool acquire/release surface.
    """

    def __init__(
        self,
        pool: Any,
        *,
        config: Optional[PoolConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        observability: Optional[Observability] = None,
    ) -> None:
        self._pool = pool
        self._config = config
        self._policy = retry_policy or RetryPolicy()
        self._obs = observability or Observability()
        self._closed = False

    @classmethod
    async def create(
        cls,
        config: PoolConfig,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        observability: Optional[Observability] = None,
    ) -> "PoolClient":
        pool = await create_pool(config, observability=observability)
        return cls(pool, config=config, retry_policy=retry_policy, observability=observability)

    @property
    def pool(self) -> Any:
        return self._pool

    @property
    def config(self) -> Optional[PoolConfig]:
        return self._config

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._policy

    @property
    def closed(self) -> bool:
        return self._closed

    def _acquire_timeout_s(self) -> Optional[float]:
        # 0 means no bound, as with connect_timeout_ms on the pool itself
        if self._config is None or not self._config.connect_timeout_ms:
            return None
        return self._config.connect_timeout_ms / 1000.0

    async def with_scoped_connection(
        self,
        fn: Callable[[Any], Awaitable[T]],
        timeout_ms: Optional[int] = None,
        settings: Optional[Mapping[str, Any]] = None,
    ) -> T:
        return await with_scoped_connection(
            self._pool, fn, timeout_ms, settings, acquire_timeout_s=self._acquire_timeout_s()
        )

    async def execute_with_retry(
        self,
        text: str,
        params: Sequence[Any] = (),
        policy: Optional[RetryPolicy] = None,
        **kwargs: Any,
    ) -> ExecutionResult:
        kwargs.setdefault("acquire_timeout_s", self._acquire_timeout_s())
        result = await execute_with_retry(
            self._pool,
            text,
            params,
            policy or self._policy,
            observability=self._obs,
            **kwargs,
        )
        self.record_pool_stats()
        return result

    async def test_connection(self, timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS) -> bool:
        return await test_connection(self._pool, timeout_ms)

    def stats(self) -> Dict[str, int]:
        size = self._pool.get_size()
        idle = self._pool.get_idle_size()
        return {
            "size": size,
            "idle": idle,
            "in_use": max(0, size - idle),
            "max": self._pool.get_max_size(),
        }

    def record_pool_stats(self) -> None:
        try:
            s = self.stats()
        except Exception:  # noqa: BLE001
            LOG.debug("pool stats unavailable", exc_info=True)
            return
        self._obs.log_pool_metrics(s["size"], s["idle"], s["max"])

    async def close(self, timeout_s: float = DEFAULT_CLOSE_TIMEOUT_S) -> None:
        if self._closed:
            return
        self._closed = True
        await close_pool(self._pool, timeout_s)


class PoolRegistry:
    """
    One PoolClient per distinct backend configuration (`PoolConfig.pool_key()`).
    The host owns the registry and calls `close_all()` on shutdown.
    """

    def __init__(
        self,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        observability: Optional[Observability] = None,
        factory: Optional[Callable[..., Awaitable[PoolClient]]] = None,
    ) -> None:
        self._clients: Dict[Tuple[Any, ...], PoolClient] = {}
        self._lock = asyncio.Lock()
        self._policy = retry_policy
        self._obs = observability
        self._factory = factory or PoolClient.create

    def __len__(self) -> int:
        return len(self._clients)

    async def get(self, config: PoolConfig) -> PoolClient:
        key = config.validate().pool_key()
        client = self._clients.get(key)
        if client is not None and not client.closed:
            return client
        async with self._lock:
            client = self._clients.get(key)
            if client is None or client.closed:
                client = await self._factory(
                    config, retry_policy=self._policy, observability=self._obs
                )
                self._clients[key] = client
            return client

    async def close_all(self) -> None:
        async with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            await client.close()


__all__ = [
    "RetryPolicy",
    "NO_RETRY",
    "ExecutionResult",
    "is_retryable_error",
    "is_connection_terminated",
    "create_pool",
    "close_pool",
    "with_scoped_connection",
    "execute_with_retry",
    "test_connection",
    "PoolClient",
    "PoolRegistry",
]
