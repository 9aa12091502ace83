# pgvector_sdk/vector/codec.py
# SPDX-License-Identifier: Apache-2.0
"""
Vector decoding, normalization and dimension checks.

Accepted encodings for `parse_vector`, tried in order for strings:

    1. JSON array text            '[0.1, 0.2, 0.3]'
    2. comma-separated numbers    '0.1, 0.2, 0.3'   (non-numeric tokens dropped)
    3. base64 float32 LE bytes    'zczMPc3MTD6amZk+'

Non-string inputs: sequences of numbers or numeric strings, numpy-style
arrays (anything with ``tolist()``), ``pgvector.Vector`` and raw float32
little-endian bytes.

Every vector returned by `parse_vector` contains only finite floats. The CSV
path drops tokens that are not finite numbers; the other paths reject the
whole input with `InvalidVector`.
"""

from __future__ import annotations

import base64
import binascii
import json
import math
import re
import struct
from typing import Any, List, Optional, Sequence

from pgvector import Vector

from pgvector_sdk.vector.vector_base import (
    DimensionMismatch,
    InvalidVector,
    NotAVector,
    UnsupportedFormat,
)

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=]+$")
_PREVIEW_CHARS = 32


def parse_vector(value: Any) -> Optional[List[float]]:
    """
    Decode `value` into a list of finite floats.

    Returns None for None. Raises UnsupportedFormat when a string matches no
    encoding, InvalidVector when a decoded element is non-numeric or
    non-finite.
    """
    if value is None:
        return None
    if isinstance(value, Vector):
        return _finite(value.to_list(), source="vector")
    if isinstance(value, (bytes, bytearray, memoryview)):
        return _from_float32_le(bytes(value), source="bytes")
    if isinstance(value, str):
        return _parse_text(value)
    if hasattr(value, "tolist"):
        value = value.tolist()
    if isinstance(value, (list, tuple)):
        return _coerce_sequence(value, source="array")
    raise UnsupportedFormat(
        f"Unsupported vector format: {type(value).__name__}",
        details={"type": type(value).__name__},
    )


def _parse_text(text: str) -> List[float]:
    stripped = text.strip()

    if stripped.startswith("["):
        try:
            decoded = json.loads(stripped)
        except ValueError:
            decoded = None
        if isinstance(decoded, list):
            return _coerce_sequence(decoded, source="json")

    if "," in stripped:
        out: List[float] = []
        for token in stripped.split(","):
            try:
                number = float(token.strip())
            except ValueError:
                continue
            if math.isfinite(number):
                out.append(number)
        return out

    if stripped and len(stripped) % 4 == 0 and _BASE64_RE.match(stripped):
        try:
            raw = base64.b64decode(stripped, validate=True)
        except (binascii.Error, ValueError):
            raise UnsupportedFormat(
                "Unsupported vector format: invalid base64",
                details={"preview": stripped[:_PREVIEW_CHARS]},
            ) from None
        return _from_float32_le(raw, source="base64")

    raise UnsupportedFormat(
        "Unsupported vector format",
        details={"preview": stripped[:_PREVIEW_CHARS]},
    )


def _from_float32_le(raw: bytes, *, source: str) -> List[float]:
    if len(raw) % 4:
        raise UnsupportedFormat(
            f"Unsupported vector format: {len(raw)} bytes is not a whole number of float32 values",
            details={"source": source, "bytes": len(raw)},
        )
    values = struct.unpack(f"<{len(raw) // 4}f", raw)
    return _finite(list(values), source=source)


def _coerce_sequence(items: Sequence[Any], *, source: str) -> List[float]:
    out: List[float] = []
    for index, item in enumerate(items):
        if isinstance(item, bool):
            raise InvalidVector(
                f"Vector element {index} is not a number",
                details={"source": source, "index": index},
            )
        if isinstance(item, (int, float)):
            out.append(float(item))
            continue
        if isinstance(item, str):
            try:
                out.append(float(item.strip()))
                continue
            except ValueError:
                pass
        raise InvalidVector(
            f"Vector element {index} is not a number",
            details={"source": source, "index": index},
        )
    return _finite(out, source=source)


def _finite(values: List[float], *, source: str) -> List[float]:
    for index, v in enumerate(values):
        if not math.isfinite(v):
            raise InvalidVector(
                f"Vector element {index} is not finite",
                details={"source": source, "index": index},
            )
    return values


def normalize_vector(vector: Any) -> Any:
    """
    Return the L2-normalized copy of `vector`.

    Non-sequences, empty vectors and vectors whose norm is zero or not
    finite are returned unchanged.
    """
    if not isinstance(vector, (list, tuple)) or not vector:
        return vector
    norm = math.sqrt(math.fsum(x * x for x in vector))
    if norm == 0 or not math.isfinite(norm):
        return vector
    return [x / norm for x in vector]


def validate_dimension(vector: Any, expected: Optional[int]) -> Any:
    """
    Check `vector` has exactly `expected` elements. No-op when `expected` is
    falsy (None or 0). Returns the vector unchanged on success.
    """
    if not expected:
        return vector
    if not isinstance(vector, (list, tuple)):
        raise NotAVector("Vector is not an array")
    if len(vector) != int(expected):
        raise DimensionMismatch(
            f"Vector dimension {len(vector)} does not match expected {expected}",
            details={"actual": len(vector), "expected": int(expected)},
        )
    return vector


def vector_literal(vector: Sequence[float]) -> str:
    """pgvector text literal, e.g. '[1.0,2.0,3.0]'. Values are stored as float4."""
    return Vector(list(vector)).to_text()


__all__ = [
    "parse_vector",
    "normalize_vector",
    "validate_dimension",
    "vector_literal",
]
