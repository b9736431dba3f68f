"""
alerts — Crowd-verified emergency alert escalation.

Sub-modules:
    severity       — Pure scoring: score, tier, radius, escalation edge
    alert_service  — Core orchestration: taps, metrics, lifecycle, read models
    geo_fence      — Spatial targeting and notification fan-out
    notifications  — Caller-scoped inbox operations
    store          — Collaborator interfaces + in-memory implementations
    sql_store      — SQLAlchemy implementations of the collaborators
    models         — Data structures shared across the system
"""
