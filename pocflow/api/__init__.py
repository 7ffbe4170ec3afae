"""API Layer — FastAPI routes exposing the orchestrator to the UI.

Invariants:
    - Routes registered explicitly in main.py (no auto-discovery)
    - All endpoints return structured JSON responses

Design Decisions:
    - Thin routes delegate to the orchestrator (ADR: impureim sandwich)
"""
