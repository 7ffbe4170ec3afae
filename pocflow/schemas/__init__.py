"""Pydantic Schemas — wire payloads from the analysis backend and BFF request bodies.

Invariants:
    - Schemas validate at system boundary (backend responses, UI input)
    - Domain types from core/ used for enum fields

Design Decisions:
    - Separate from core snapshots: schemas are wire contracts, snapshots are state
"""
