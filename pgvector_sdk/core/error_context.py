# pgvector_sdk/core/error_context.py
# SPDX-License-Identifier: Apache-2.0

"""
Error context utilities.

Attaches operation metadata (operation name, table, attempt count, SQLSTATE)
to exceptions as they propagate out of the pool client and adapter, without
changing the exception's type or message. Error handlers and loggers read it
back with `get_context`.

Typical usage
-------------

    from pgvector_sdk.core.error_context import attach_context

    try:
        rows = await client.execute_with_retry(stmt.text, stmt.params)
    except Exception as exc:
        attach_context(exc, "pool_client", operation="search", attempts=3)
        raise

Context is stored under `__pgvector_context__` (canonical) and
`__<origin>_context__` (origin-specific). Repeated calls merge; the first
`origin` recorded is preserved.

Attachment is best-effort: failures are logged at DEBUG and never mask the
original exception.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, MutableMapping, Optional

logger = logging.getLogger(__name__)

_CANONICAL_ATTR = "__pgvector_context__"


def attach_context(
    exc: BaseException,
    origin: str,
    **context: Any,
) -> None:
    """
    Attach debugging context to an exception.

    Parameters
    ----------
    exc:
        The exception to enrich. Any BaseException works, including
        asyncpg errors and built-in OSError subclasses.

    origin:
        Which layer is contributing context, e.g. "pool_client" or "adapter".

    **context:
        SIEM-safe keys only: operation, table, attempts, sqlstate, etc.
        Never pass passwords, DSNs or raw tenant identifiers.
    """
    try:
        merged_context: MutableMapping[str, Any] = {}

        existing = getattr(exc, _CANONICAL_ATTR, None)
        if isinstance(existing, Mapping):
            merged_context.update(existing)

        merged_context.setdefault("origin", origin)
        merged_context.update(context)

        setattr(exc, _CANONICAL_ATTR, merged_context)
        setattr(exc, f"__{origin}_context__", merged_context)

    except Exception as attachment_error:  # noqa: BLE001
        # Context attachment must never interfere with exception propagation.
        logger.debug(
            "Failed to attach error context to %s: %s",
            type(exc).__name__,
            attachment_error,
            extra={"origin": origin},
        )


def get_context(
    exc: BaseException,
    *,
    origin: Optional[str] = None,
) -> Mapping[str, Any]:
    """
    Retrieve attached context, preferring the origin-specific attribute when
    `origin` is given. Returns an empty dict when nothing is attached.
    """
    try:
        if origin:
            ctx = getattr(exc, f"__{origin}_context__", None)
            if isinstance(ctx, Mapping):
                return ctx

        ctx = getattr(exc, _CANONICAL_ATTR, None)
        if isinstance(ctx, Mapping):
            return ctx

    except Exception as retrieval_error:  # noqa: BLE001
        logger.debug(
            "Failed to retrieve error context from %s: %s",
            type(exc).__name__,
            retrieval_error,
        )

    return {}


def has_context(exc: BaseException) -> bool:
    return len(get_context(exc)) > 0


__all__ = [
    "attach_context",
    "get_context",
    "has_context",
]
