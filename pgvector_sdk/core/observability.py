# pgvector_sdk/core/observability.py
# SPDX-License-Identifier: Apache-2.0
"""
Observability primitives for the pgvector SDK.

Shape follows the metrics protocol used across the SDK:
  - observe(component, op, ms, ok, code="OK", extra=None)
  - counter(component, name, value=1, extra=None)
  - gauge(component, name, value, extra=None)

An `Observability` bundle (metrics sink + logger + slow-query threshold) is
constructed by the host and injected into the pool client and adapter.
Nothing here is a process-wide singleton; the default bundle is a no-op sink
with the module logger.

Statement logging rules:
  • SQL is truncated to 100 characters
  • durations are rounded to whole milliseconds
  • statements slower than `slow_query_ms` (default 1000) are tagged slow
  • parameters are never logged
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

LOG = logging.getLogger("pgvector_sdk")

SQL_LOG_LIMIT = 100
DEFAULT_SLOW_QUERY_MS = 1000.0


class MetricsSink(Protocol):
    """
    Protocol for metrics collection implementations.

    All metrics must be low-cardinality and never include PII, SQL parameters
    or raw tenant identifiers.
    """
    def observe(
        self,
        *,
        component: str,
        op: str,
        ms: float,
        ok: bool,
        code: str = "OK",
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None: ...

    def counter(
        self,
        *,
        component: str,
        name: str,
        value: int = 1,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None: ...

    def gauge(
        self,
        *,
        component: str,
        name: str,
        value: float,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None: ...


class NoopMetrics:
    """No-operation metrics sink for testing or when metrics are disabled."""
    def observe(self, **_: Any) -> None: ...
    def counter(self, **_: Any) -> None: ...
    def gauge(self, **_: Any) -> None: ...


class InMemoryMetrics:
    """
    Thread-safe in-process sink. Counters are keyed by (component, name);
    observations are kept in arrival order.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[Tuple[str, str], int] = {}
        self._gauges: Dict[Tuple[str, str], float] = {}
        self._observations: List[Dict[str, Any]] = []

    def observe(
        self,
        *,
        component: str,
        op: str,
        ms: float,
        ok: bool,
        code: str = "OK",
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        record = {
            "component": component,
            "op": op,
            "ms": max(0.0, float(ms)),
            "ok": bool(ok),
            "code": str(code or "OK"),
            "extra": dict(extra or {}),
        }
        with self._lock:
            self._observations.append(record)

    def counter(
        self,
        *,
        component: str,
        name: str,
        value: int = 1,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        key = (component, name)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + int(value)

    def gauge(
        self,
        *,
        component: str,
        name: str,
        value: float,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        with self._lock:
            self._gauges[(component, name)] = float(value)

    def count(self, component: str, name: str) -> int:
        with self._lock:
            return self._counters.get((component, name), 0)

    def snapshot(self) -> Dict[str, Any]:
        """Copy of all recorded data, safe to inspect while writers continue."""
        with self._lock:
            return {
                "counters": {f"{c}.{n}": v for (c, n), v in self._counters.items()},
                "gauges": {f"{c}.{n}": v for (c, n), v in self._gauges.items()},
                "observations": [dict(o) for o in self._observations],
            }


@dataclass(frozen=True)
class Observability:
    """
    Explicitly constructed observability context.

    Attributes:
        metrics: Sink receiving latency, counters and pool gauges
        logger: Logger for statement, error and pool events
        slow_query_ms: Threshold above which statements are logged as slow
    """
    metrics: MetricsSink = field(default_factory=NoopMetrics)
    logger: logging.Logger = LOG
    slow_query_ms: float = DEFAULT_SLOW_QUERY_MS

    def log_query(
        self,
        sql: str,
        duration_ms: float,
        row_count: Optional[int] = None,
        *,
        operation: Optional[str] = None,
    ) -> None:
        slow = duration_ms > self.slow_query_ms
        text = sql if len(sql) <= SQL_LOG_LIMIT else sql[:SQL_LOG_LIMIT]
        self.logger.log(
            logging.WARNING if slow else logging.DEBUG,
            "query executed op=%s duration_ms=%d rows=%s performance=%s sql=%s",
            operation or "-",
            round(duration_ms),
            row_count,
            "slow" if slow else "normal",
            text,
        )

    def log_error(self, operation: str, exc: BaseException, **context: Any) -> None:
        self.logger.error(
            "operation failed op=%s error=%s message=%s",
            operation,
            type(exc).__name__,
            str(exc),
            extra={"pgvector": dict(context)} if context else None,
        )

    def log_pool_metrics(self, total: int, idle: int, max_size: int) -> None:
        self.logger.debug("pool stats total=%d idle=%d max=%d", total, idle, max_size)
        self.metrics.gauge(component="pool", name="pool_size", value=total)
        self.metrics.gauge(component="pool", name="pool_idle", value=idle)


__all__ = [
    "MetricsSink",
    "NoopMetrics",
    "InMemoryMetrics",
    "Observability",
    "SQL_LOG_LIMIT",
    "DEFAULT_SLOW_QUERY_MS",
]
