"""Services Layer — reconciliation engine, transport adapters, orchestrator.

Invariants:
    - The reconciliation engine is the only writer of the session store
    - Adapters never raise past their task boundary: IO failures become deltas or no-ops

Design Decisions:
    - One adapter per file for locality (ADR: no god objects)
"""
