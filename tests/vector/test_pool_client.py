# SPDX-License-Identifier: Apache-2.0
"""
Pool client - scoped connections, retry loop, probes and lifecycle.

Covers:
  • Connection released on success, on failure and never leaked
  • Statement timeout and session settings applied per checkout
  • Transient errors retried with base × 2^attempt delays, fatal errors not
  • Original error re-raised after exhaustion, with attempt context
  • Deadline stops further retries
  • test_connection never raises
  • close_pool idempotent; PoolRegistry shares one client per config
  • poolMax ceiling under concurrent load
  • Real asyncpg pool against a closed port: exactly max_retries + 1 attempts
"""

import asyncio
import time

import asyncpg
import pytest

from pgvector_sdk.core.config import PoolConfig
from pgvector_sdk.core.error_context import get_context
from pgvector_sdk.core.observability import InMemoryMetrics, Observability
from pgvector_sdk.vector import pool_client
from pgvector_sdk.vector.pool_client import (
    NO_RETRY,
    PoolClient,
    PoolRegistry,
    RetryPolicy,
    close_pool,
    execute_with_retry,
    with_scoped_connection,
)
from pgvector_sdk.vector.vector_base import InvalidConfiguration
from tests.mock.mock_pool import FakePool

pytestmark = pytest.mark.asyncio


def _refused() -> ConnectionRefusedError:
    return ConnectionRefusedError(111, "Connect call failed ('10.0.0.1', 5432)")


# --------------------------------------------------------------------------- #
# with_scoped_connection
# --------------------------------------------------------------------------- #

async def test_scoped_connection_returns_result_and_releases():
    pool = FakePool()

    async def fn(conn):
        return await conn.fetchval("SELECT 1")

    assert await with_scoped_connection(pool, fn) == 1
    assert pool.acquired == pool.released == 1
    assert pool.in_use == 0


async def test_scoped_connection_releases_on_error():
    pool = FakePool()

    async def fn(conn):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        await with_scoped_connection(pool, fn)
    assert pool.acquired == pool.released == 1


async def test_scoped_connection_releases_on_cancellation():
    pool = FakePool()
    started = asyncio.Event()

    async def fn(conn):
        started.set()
        await asyncio.sleep(10)

    task = asyncio.ensure_future(with_scoped_connection(pool, fn))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert pool.released == 1


async def test_scoped_connection_acquire_failure_propagates():
    pool = FakePool(acquire_errors=[_refused()])

    async def fn(conn):  # pragma: no cover
        raise AssertionError("must not run")

    with pytest.raises(ConnectionRefusedError):
        await with_scoped_connection(pool, fn)
    assert pool.released == 0


async def test_statement_timeout_and_settings_applied():
    pool = FakePool()

    async def fn(conn):
        return conn.settings

    settings = await with_scoped_connection(pool, fn, 2500, {"ivfflat.probes": 20})
    assert settings == ["SET statement_timeout = 2500", "SET ivfflat.probes = 20"]


async def test_zero_timeout_does_not_disable_statement_timeout():
    pool = FakePool()

    async def fn(conn):
        return conn.settings

    assert await with_scoped_connection(pool, fn, 0) == ["SET statement_timeout = 1"]


async def test_invalid_setting_name_rejected_before_acquire():
    pool = FakePool()

    async def fn(conn):  # pragma: no cover
        return None

    with pytest.raises(ValueError):
        await with_scoped_connection(pool, fn, None, {"x; DROP TABLE t": 1})
    assert pool.acquire_calls == 0


# --------------------------------------------------------------------------- #
# execute_with_retry
# --------------------------------------------------------------------------- #

async def test_execute_returns_rows_and_row_count():
    pool = FakePool(script=[[{"id": 1}, {"id": 2}]])
    result = await execute_with_retry(pool, "SELECT id FROM items WHERE a = $1", [5])
    assert result.rows == [{"id": 1}, {"id": 2}]
    assert result.row_count == 2
    assert result.status == "SELECT 2"
    assert result.attempts == 1
    assert pool.statements == [("SELECT id FROM items WHERE a = $1", (5,))]


async def test_execute_without_fetch_uses_command_status():
    pool = FakePool()
    result = await execute_with_retry(pool, "CREATE EXTENSION IF NOT EXISTS vector", fetch=False)
    assert result.rows == []
    assert result.status == "CREATE EXTENSION"


async def test_transient_errors_retried_then_succeed():
    pool = FakePool(acquire_errors=[_refused(), _refused()], script=[[{"ok": True}]])
    delays = []
    result = await execute_with_retry(
        pool,
        "SELECT 1",
        policy=RetryPolicy(max_retries=2, base_delay_ms=1),
        on_backoff=lambda attempt, delay, exc: delays.append((attempt, delay)),
    )
    assert result.attempts == 3
    assert result.rows == [{"ok": True}]
    assert delays == [(1, 1.0), (2, 2.0)]


async def test_exhaustion_reraises_original_error():
    errors = [_refused() for _ in range(3)]
    pool = FakePool(acquire_errors=list(errors))
    metrics = InMemoryMetrics()

    with pytest.raises(ConnectionRefusedError) as exc_info:
        await execute_with_retry(
            pool,
            "SELECT 1",
            RetryPolicy(max_retries=2, base_delay_ms=1),
            observability=Observability(metrics=metrics),
        )
    assert exc_info.value is errors[-1]
    assert get_context(exc_info.value)["attempts"] == 3
    assert get_context(exc_info.value)["retryable"] is True
    assert pool.acquire_calls == 3
    assert metrics.count("pool", "attempts") == 3
    assert metrics.count("pool", "retries") == 2
    assert metrics.count("pool", "errors") == 1


async def test_fatal_error_not_retried():
    denied = asyncpg.exceptions.InsufficientPrivilegeError("permission denied for table items")
    pool = FakePool(script=[denied])
    delays = []

    t0 = time.monotonic()
    with pytest.raises(asyncpg.exceptions.InsufficientPrivilegeError):
        await execute_with_retry(
            pool,
            "SELECT * FROM items",
            RetryPolicy(max_retries=3, base_delay_ms=200),
            on_backoff=lambda *a: delays.append(a),
        )
    assert time.monotonic() - t0 < 0.2
    assert delays == []
    assert len(pool.statements) == 1
    assert pool.acquired == pool.released == 1


async def test_terminated_connection_mid_statement_is_retried():
    pool = FakePool(script=[RuntimeError("Connection terminated unexpectedly"), [{"n": 1}]])
    result = await execute_with_retry(pool, "SELECT 1 AS n", RetryPolicy(max_retries=1, base_delay_ms=1))
    assert result.rows == [{"n": 1}]
    assert pool.acquired == pool.released == 2


async def test_no_connection_held_during_backoff():
    pool = FakePool(max_size=1, script=[RuntimeError("terminating connection due to administrator command")])
    seen_in_use = []

    await execute_with_retry(
        pool,
        "SELECT 1",
        RetryPolicy(max_retries=1, base_delay_ms=1),
        on_backoff=lambda *a: seen_in_use.append(pool.in_use),
    )
    assert seen_in_use == [0]


async def test_deadline_stops_retries():
    pool = FakePool(acquire_errors=[_refused(), _refused(), _refused()])
    deadline = int(time.time() * 1000) + 50

    with pytest.raises(ConnectionRefusedError) as exc_info:
        await execute_with_retry(
            pool,
            "SELECT 1",
            RetryPolicy(max_retries=2, base_delay_ms=1_000),
            deadline_ms=deadline,
        )
    assert get_context(exc_info.value)["attempts"] == 1


async def test_no_retry_policy_single_attempt():
    pool = FakePool(acquire_errors=[_refused()])
    with pytest.raises(ConnectionRefusedError):
        await execute_with_retry(pool, "SELECT 1", NO_RETRY)
    assert pool.acquire_calls == 1


# --------------------------------------------------------------------------- #
# probes & lifecycle
# --------------------------------------------------------------------------- #

async def test_connection_probe_true():
    assert await pool_client.test_connection(FakePool()) is True


async def test_connection_probe_false_on_error():
    pool = FakePool(acquire_errors=[_refused()])
    assert await pool_client.test_connection(pool) is False


async def test_connection_probe_false_on_timeout():
    pool = FakePool(latency=1.0)
    assert await pool_client.test_connection(pool, timeout_ms=20) is False
    assert pool.in_use == 0


async def test_close_pool_is_idempotent_and_accepts_none():
    await close_pool(None)
    pool = FakePool()
    await close_pool(pool)
    await close_pool(pool)
    assert pool.close_calls == 1


async def test_close_pool_terminates_after_timeout():
    class SlowClose(FakePool):
        async def close(self):
            await asyncio.sleep(10)

    pool = SlowClose()
    await close_pool(pool, timeout_s=0.01)
    assert pool.terminated


async def test_client_close_twice(client, fake_pool):
    await client.close()
    await client.close()
    assert client.closed
    assert fake_pool.close_calls == 1


async def test_client_stats_and_gauges(client, metrics):
    await client.execute_with_retry("SELECT 1")
    assert client.stats() == {"size": 0, "idle": 0, "in_use": 0, "max": 5}
    assert metrics.snapshot()["gauges"]["pool.pool_size"] == 0


async def test_registry_shares_client_per_config():
    created = []

    async def factory(config, **kwargs):
        client = PoolClient(FakePool(), config=config)
        created.append(client)
        return client

    registry = PoolRegistry(factory=factory)
    cfg = PoolConfig(host="db", database="vectors", user="app")
    a, b = await asyncio.gather(registry.get(cfg), registry.get(cfg.with_updates()))
    c = await registry.get(cfg.with_updates(database="other"))

    assert a is b
    assert c is not a
    assert len(created) == 2
    assert len(registry) == 2

    await registry.close_all()
    assert all(cl.closed for cl in created)
    assert len(registry) == 0


async def test_registry_keeps_separate_pools_per_statement_timeout():
    async def factory(config, **kwargs):
        return PoolClient(FakePool(), config=config)

    registry = PoolRegistry(factory=factory)
    cfg = PoolConfig(host="db", database="vectors", user="app")
    a = await registry.get(cfg)
    b = await registry.get(cfg.with_updates(statement_timeout_ms=1_000))

    assert a is not b
    assert b.config.statement_timeout_ms == 1_000
    await registry.close_all()


async def test_registry_validates_config():
    registry = PoolRegistry(factory=lambda *a, **k: None)
    with pytest.raises(InvalidConfiguration):
        await registry.get(PoolConfig(host="db", database="vectors"))


async def test_pool_max_is_a_hard_ceiling():
    pool = FakePool(max_size=3, latency=0.01)
    client = PoolClient(pool, retry_policy=NO_RETRY)

    results = await asyncio.gather(
        *(client.execute_with_retry("SELECT $1::int AS n", [i]) for i in range(20))
    )
    assert len(results) == 20
    assert pool.peak_in_use == 3
    assert pool.acquired == pool.released == 20


async def test_create_pool_validates_before_connecting():
    with pytest.raises(InvalidConfiguration, match="pool_max"):
        await pool_client.create_pool(
            PoolConfig(host="127.0.0.1", database="x", user="u", pool_max=0)
        )


async def test_create_pool_zero_connect_timeout_uses_driver_default(monkeypatch):
    captured = {}

    async def fake_create_pool(**kwargs):
        captured.update(kwargs)
        return FakePool()

    monkeypatch.setattr(pool_client.asyncpg, "create_pool", fake_create_pool)
    await pool_client.create_pool(
        PoolConfig(host="db", database="vectors", user="app", connect_timeout_ms=0)
    )
    assert "timeout" not in captured
    assert captured["server_settings"]["statement_timeout"] == "60000"

    await pool_client.create_pool(
        PoolConfig(host="db", database="vectors", user="app", connect_timeout_ms=2_500)
    )
    assert captured["timeout"] == 2.5


async def test_zero_connect_timeout_waits_for_a_free_connection():
    pool = FakePool(max_size=1, latency=0.02)
    config = PoolConfig(host="db", database="vectors", user="app", connect_timeout_ms=0)
    client = PoolClient(pool, config=config, retry_policy=NO_RETRY)

    results = await asyncio.gather(
        client.execute_with_retry("SELECT 1"),
        client.execute_with_retry("SELECT 1"),
    )
    assert [r.attempts for r in results] == [1, 1]
    assert pool.acquired == pool.released == 2


# --------------------------------------------------------------------------- #
# end-to-end against an unreachable host
# --------------------------------------------------------------------------- #

async def test_unreachable_host_attempts_exactly_three_times():
    metrics = InMemoryMetrics()
    obs = Observability(metrics=metrics)
    config = PoolConfig(
        host="127.0.0.1",
        port=1,
        database="vectors",
        user="app",
        password="secret",
        connect_timeout_ms=2_000,
    )
    client = await PoolClient.create(
        config,
        retry_policy=RetryPolicy(max_retries=2, base_delay_ms=50),
        observability=obs,
    )
    delays = []
    try:
        t0 = time.monotonic()
        with pytest.raises(OSError) as exc_info:
            await client.execute_with_retry(
                "SELECT 1",
                on_backoff=lambda attempt, delay, exc: delays.append(delay),
            )
        elapsed = time.monotonic() - t0
    finally:
        await client.close()

    assert get_context(exc_info.value)["attempts"] == 3
    assert metrics.count("pool", "attempts") == 3
    assert delays == [50.0, 100.0]
    assert elapsed >= 0.14


async def test_zero_connect_timeout_surfaces_the_refusal():
    config = PoolConfig(host="127.0.0.1", port=1, database="vectors", user="app", connect_timeout_ms=0)
    client = await PoolClient.create(config, retry_policy=NO_RETRY)
    try:
        with pytest.raises(OSError) as exc_info:
            await client.execute_with_retry("SELECT 1")
    finally:
        await client.close()
    assert not isinstance(exc_info.value, TimeoutError)
