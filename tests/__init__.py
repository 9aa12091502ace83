# SPDX-License-Identifier: Apache-2.0
"""
pgvector SDK Tests

Unit and contract tests for the vector codec, statement builders, pool client,
operation adapter and wire handler, run against an in-memory pool.
"""
