# pgvector_sdk/core/operation_context.py
# SPDX-License-Identifier: Apache-2.0

"""
Request-scoped context for pgvector operations.

`OperationContext` carries correlation ids, an absolute deadline and a
free-form attribute bag through the adapter, pool client and wire handler.
The deadline is the only field that changes behavior: the adapter turns the
remaining budget into a per-statement timeout.

Typical usage
-------------

    from pgvector_sdk.core.operation_context import OperationContext

    ctx = OperationContext.with_timeout(5_000, request_id="req-123")
    result = await adapter.search(spec, ctx=ctx)

Notes
-----
- `deadline_ms` is an absolute epoch timestamp in milliseconds.
- `tenant` may be sensitive; it is never logged or put in metrics.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class OperationContext:
    """
    Fields
    ------
    request_id:
        Identifier for the logical request; used for log correlation.

    tenant:
        Multi-tenant scope. Never logged.

    deadline_ms:
        Absolute epoch milliseconds after which the operation should fail
        with DeadlineExceeded.

    traceparent:
        W3C traceparent header value, if present.

    attrs:
        Free-form attribute bag (e.g. "caller", "route").
    """

    request_id: Optional[str] = None
    tenant: Optional[str] = None
    deadline_ms: Optional[int] = None
    traceparent: Optional[str] = None
    attrs: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def with_timeout(cls, timeout_ms: int, **kwargs: Any) -> "OperationContext":
        """Build a context whose deadline is `timeout_ms` from now."""
        return cls(deadline_ms=int(time.time() * 1000) + int(timeout_ms), **kwargs)

    def remaining_ms(self) -> Optional[int]:
        """
        Return remaining milliseconds until deadline, or None if no deadline set.
        Non-negative (0 if expired).
        """
        if self.deadline_ms is None:
            return None
        now_ms = int(time.time() * 1000)
        return max(0, self.deadline_ms - now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "tenant": self.tenant,
            "deadline_ms": self.deadline_ms,
            "traceparent": self.traceparent,
            "attrs": dict(self.attrs) if self.attrs is not None else {},
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "OperationContext":
        """
        Create an OperationContext from a dict. Missing keys default to None / {};
        unknown keys are ignored.
        """
        if data is None:
            return cls()
        return cls(
            request_id=data.get("request_id"),
            tenant=data.get("tenant"),
            deadline_ms=data.get("deadline_ms"),
            traceparent=data.get("traceparent"),
            attrs=dict(data.get("attrs") or {}),
        )

    def with_updates(
        self,
        *,
        request_id: Optional[str] = None,
        deadline_ms: Optional[int] = None,
        attrs: Optional[Mapping[str, Any]] = None,
    ) -> "OperationContext":
        """
        Return a new OperationContext with the non-None overrides applied.
        `attrs` is merged into a copy of the existing attribute bag.
        """
        new_attrs = dict(self.attrs)
        if attrs:
            new_attrs.update(attrs)
        return replace(
            self,
            request_id=request_id if request_id is not None else self.request_id,
            deadline_ms=deadline_ms if deadline_ms is not None else self.deadline_ms,
            attrs=new_attrs,
        )


__all__ = ["OperationContext"]
