# SPDX-License-Identifier: Apache-2.0
"""
Shared fixtures for the pgvector SDK test suite.

Most tests run against `tests.mock.mock_pool.FakePool`, a scripted in-memory
pool. Tests marked `live` need a reachable PostgreSQL with the pgvector
extension available and are skipped unless PGVECTOR_HOST is set.
"""

from __future__ import annotations

import logging
import os

import pytest

from pgvector_sdk.core.config import OperationOptions
from pgvector_sdk.core.observability import InMemoryMetrics, Observability
from pgvector_sdk.vector.pgvector_adapter import PgVectorAdapter
from pgvector_sdk.vector.pool_client import PoolClient, RetryPolicy
from tests.mock.mock_pool import FakePool


def pytest_collection_modifyitems(config, items):
    if os.getenv("PGVECTOR_HOST"):
        return
    skip_live = pytest.mark.skip(reason="PGVECTOR_HOST not set")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


@pytest.fixture
def fake_pool() -> FakePool:
    return FakePool(max_size=5)


@pytest.fixture
def metrics() -> InMemoryMetrics:
    return InMemoryMetrics()


@pytest.fixture
def obs(metrics: InMemoryMetrics) -> Observability:
    return Observability(metrics=metrics, logger=logging.getLogger("pgvector_sdk.tests"))


@pytest.fixture
def fast_policy() -> RetryPolicy:
    return RetryPolicy(max_retries=2, base_delay_ms=1.0)


@pytest.fixture
def client(fake_pool: FakePool, obs: Observability, fast_policy: RetryPolicy) -> PoolClient:
    return PoolClient(fake_pool, retry_policy=fast_policy, observability=obs)


@pytest.fixture
def adapter(client: PoolClient, obs: Observability) -> PgVectorAdapter:
    return PgVectorAdapter(
        client,
        defaults=OperationOptions(table="items", column="embedding"),
        observability=obs,
    )
