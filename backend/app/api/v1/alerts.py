"""
FastAPI routes: crowd-verified emergency alerts.

Provides endpoints to:
    POST  /api/v1/alerts                    — report a new incident (first tap)
    POST  /api/v1/alerts/{id}/taps          — corroborate an incident
    PATCH /api/v1/alerts/{id}/status        — reporter changes lifecycle state
    PATCH /api/v1/alerts/{id}/recording     — reporter toggles recording flags
    PUT   /api/v1/alerts/{id}/media         — reporter links recorded media
    GET   /api/v1/alerts/{id}               — alert with detail-view metrics
    GET   /api/v1/alerts/{id}/metrics       — dashboard summary + tap timeline
    GET   /api/v1/alerts/history            — recent alerts around a point
    GET   /api/v1/alerts/nearby             — open alerts around the caller
    GET   /api/v1/alerts/mine               — caller's open alerts
    GET   /api/v1/alerts/active             — all active alerts
    GET   /api/v1/alerts/severity/policy    — scoring configuration in force

The caller is identified by the X-User-Id header (configurable).
Handlers are plain ``def``: the aggregator is synchronous and FastAPI runs
them in its threadpool.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from backend.app.alerts.alert_service import AlertAggregator, to_coordinate
from backend.app.api.deps import get_aggregator, get_caller_id, location_from
from backend.app.api.schemas import (
    CreateAlertRequest,
    MediaAttachRequest,
    RecordingStateRequest,
    StatusUpdateRequest,
    TapRequest,
)

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

@router.post("", status_code=201)
def create_alert(
    body: CreateAlertRequest,
    caller_id: Optional[str] = Depends(get_caller_id),
    aggregator: AlertAggregator = Depends(get_aggregator),
) -> Dict[str, Any]:
    """Open an alert and notify everyone within the initial radius."""
    alert_id = aggregator.create_alert(
        caller_id,
        location_from(body.location),
        {"title": body.title, "description": body.description, "address": body.address},
    )
    return aggregator.get_alert_with_metrics(alert_id)


@router.post("/{alert_id}/taps")
def record_tap(
    alert_id: str,
    body: TapRequest,
    caller_id: Optional[str] = Depends(get_caller_id),
    aggregator: AlertAggregator = Depends(get_aggregator),
) -> Dict[str, Any]:
    """Record a corroborating tap and return the re-scored metrics."""
    result = aggregator.record_tap(alert_id, caller_id, location_from(body.location))
    return result.to_dict()


@router.patch("/{alert_id}/status")
def update_status(
    alert_id: str,
    body: StatusUpdateRequest,
    caller_id: Optional[str] = Depends(get_caller_id),
    aggregator: AlertAggregator = Depends(get_aggregator),
) -> Dict[str, Any]:
    return aggregator.update_status(alert_id, caller_id, body.status).to_dict()


@router.patch("/{alert_id}/recording")
def update_recording_state(
    alert_id: str,
    body: RecordingStateRequest,
    caller_id: Optional[str] = Depends(get_caller_id),
    aggregator: AlertAggregator = Depends(get_aggregator),
) -> Dict[str, Any]:
    alert = aggregator.update_recording_state(
        alert_id, caller_id, body.is_recording, body.is_streaming,
    )
    return alert.to_dict()


@router.put("/{alert_id}/media")
def attach_media(
    alert_id: str,
    body: MediaAttachRequest,
    caller_id: Optional[str] = Depends(get_caller_id),
    aggregator: AlertAggregator = Depends(get_aggregator),
) -> Dict[str, Any]:
    alert = aggregator.attach_media(alert_id, caller_id, body.storage_id, body.media_url)
    return alert.to_dict()


# ---------------------------------------------------------------------------
# Collection reads (declared before /{alert_id} so the paths win)
# ---------------------------------------------------------------------------

@router.get("/history")
def alert_history(
    latitude: float = Query(..., examples=[13.0827]),
    longitude: float = Query(..., examples=[80.2707]),
    radius_km: Optional[float] = Query(None, gt=0, le=500),
    window_days: Optional[int] = Query(None, ge=1, le=365),
    aggregator: AlertAggregator = Depends(get_aggregator),
) -> Dict[str, Any]:
    """Alerts of any status created near a point within the history window."""
    alerts = aggregator.get_alert_history(
        to_coordinate(latitude, longitude),
        radius_km=radius_km,
        window_days=window_days,
    )
    return {"count": len(alerts), "alerts": alerts}


@router.get("/nearby")
def nearby_alerts(
    latitude: float = Query(...),
    longitude: float = Query(...),
    radius_km: Optional[float] = Query(None, gt=0, le=500),
    caller_id: Optional[str] = Depends(get_caller_id),
    aggregator: AlertAggregator = Depends(get_aggregator),
) -> Dict[str, Any]:
    """Open alerts around a point, nearest first."""
    alerts = aggregator.get_nearby_active_alerts(
        caller_id, to_coordinate(latitude, longitude), radius_km=radius_km,
    )
    return {"count": len(alerts), "alerts": alerts}


@router.get("/mine")
def my_alerts(
    caller_id: Optional[str] = Depends(get_caller_id),
    aggregator: AlertAggregator = Depends(get_aggregator),
) -> List[Dict[str, Any]]:
    return [a.to_dict() for a in aggregator.get_user_active_alerts(caller_id)]


@router.get("/active")
def active_alerts(
    aggregator: AlertAggregator = Depends(get_aggregator),
) -> List[Dict[str, Any]]:
    return [a.to_dict() for a in aggregator.get_active_alerts()]


@router.get("/severity/policy")
def severity_policy(
    aggregator: AlertAggregator = Depends(get_aggregator),
) -> Dict[str, Any]:
    return aggregator.severity_policy()


# ---------------------------------------------------------------------------
# Single-alert reads
# ---------------------------------------------------------------------------

@router.get("/{alert_id}")
def get_alert(
    alert_id: str,
    aggregator: AlertAggregator = Depends(get_aggregator),
) -> Dict[str, Any]:
    return aggregator.get_alert_with_metrics(alert_id)


@router.get("/{alert_id}/metrics")
def get_alert_metrics(
    alert_id: str,
    aggregator: AlertAggregator = Depends(get_aggregator),
) -> Dict[str, Any]:
    return aggregator.get_alert_metrics(alert_id)
