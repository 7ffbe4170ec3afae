"""Infrastructure Layer — backend HTTP client and cross-cutting concerns.

Invariants:
    - All external calls wrapped with timeout and error mapping

Design Decisions:
    - Thin wrapper over httpx.AsyncClient (ADR: single responsibility)
"""
