"""
geo_fence.py — Proximity targeting and notification fan-out.

Determines which identities in the location directory fall within an
alert's notification zone, and hands one notification per target to the
notification sink.

═══════════════════════════════════════════════════════════════════════════
GEO-FENCE DESIGN
═══════════════════════════════════════════════════════════════════════════

An alert defines a circular geo-fence:

    centre:  (alert.latitude, alert.longitude)   — where it was reported
    radius:  notification_radius_km(score)       — 3 / 5 / 10 / 15 km

A candidate is targeted if:

    haversine(alert_location, candidate_location) ≤ radius_km

The boundary is inclusive. Candidates with no known location are skipped
silently.

A bounding-box pre-filter rejects most candidates with four float
comparisons before running the Haversine trigonometry.

═══════════════════════════════════════════════════════════════════════════
DELIVERY SEMANTICS
═══════════════════════════════════════════════════════════════════════════

    • No ordering guarantee between recipients.
    • Every fan-out is a distinct event: a recipient already notified at a
      lower edge is notified again when the alert escalates.
    • The engine only decides who and what; the sink owns how.
"""

from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional, Set

from backend.app.alerts.models import Alert, NotificationType
from backend.app.alerts.store import NotificationSink
from backend.app.spatial.radius_utils import (
    Coordinate,
    bounding_box,
    format_distance,
    haversine,
    inside_bbox,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Constants
# ═══════════════════════════════════════════════════════════════════════════

NOTIFICATION_TITLE = "🚨 EMERGENCY ALERT - AlertRun"
DEFAULT_INCIDENT_LABEL = "Emergency incident"


# ═══════════════════════════════════════════════════════════════════════════
# Core Geo-fence Filtering
# ═══════════════════════════════════════════════════════════════════════════

def targets_within_radius(
    center: Coordinate,
    radius_km: float,
    candidates: Mapping[str, Optional[Coordinate]],
) -> Dict[str, float]:
    """
    Find every candidate inside the geo-fence.

    Parameters
    ----------
    center : Coordinate
        Alert location.
    radius_km : float
        Fence radius; a candidate at exactly this distance is inside.
    candidates : mapping of identity → Coordinate | None
        Snapshot of the location directory.

    Returns
    -------
    dict
        identity → distance in km, for targeted candidates only.

    Examples
    --------
    >>> center = Coordinate(0.0, 0.0)
    >>> found = targets_within_radius(center, 3.0, {"near": Coordinate(0.0, 0.01),
    ...                                             "far": Coordinate(1.0, 1.0),
    ...                                             "unknown": None})
    >>> {k: round(v, 2) for k, v in found.items()}
    {'near': 1.11}
    """
    if radius_km < 0:
        raise ValueError(f"Radius must be non-negative, got {radius_km}")

    box = bounding_box(center, radius_km)
    targeted: Dict[str, float] = {}

    for identity, location in candidates.items():
        if location is None:
            continue

        # Fast rejection via bounding box
        if not inside_bbox(location, box):
            continue

        # Precise Haversine check
        dist = haversine(center, location)
        if dist <= radius_km:
            targeted[identity] = dist

    return targeted


def notify_within_radius(
    center: Coordinate,
    radius_km: float,
    candidates: Mapping[str, Optional[Coordinate]],
) -> Set[str]:
    """Identities within ``radius_km`` of ``center`` (boundary inclusive)."""
    return set(targets_within_radius(center, radius_km, candidates))


# ═══════════════════════════════════════════════════════════════════════════
# Fan-out
# ═══════════════════════════════════════════════════════════════════════════

def build_message(alert: Alert, distance_km: float) -> str:
    """Notification body for one recipient."""
    label = alert.title or DEFAULT_INCIDENT_LABEL
    return (
        f"{label} detected {format_distance(distance_km)} away. "
        f"Tap to view live stream."
    )


def fan_out(
    sink: NotificationSink,
    alert: Alert,
    radius_km: float,
    candidates: Mapping[str, Optional[Coordinate]],
    *,
    reason: str = "escalation",
) -> Set[str]:
    """
    Notify every candidate within ``radius_km`` of the alert.

    Parameters
    ----------
    sink : NotificationSink
        Where notifications are handed off for delivery.
    alert : Alert
        The alert as committed.
    radius_km : float
        Fence radius for this fan-out.
    candidates : mapping of identity → Coordinate | None
        Location directory snapshot.
    reason : str
        "initial" or "escalation", recorded in notification metadata.

    Returns
    -------
    set of str
        Identities a notification was handed to.
    """
    targets = targets_within_radius(alert.location, radius_km, candidates)

    for identity, dist in targets.items():
        sink.send(
            identity,
            NOTIFICATION_TITLE,
            build_message(alert, dist),
            {
                "alert_id": alert.alert_id,
                "reason": reason,
                "radius_km": radius_km,
                "distance_km": round(dist, 3),
                "severity_score": alert.severity_score,
            },
            type=NotificationType.EMERGENCY,
        )

    logger.info(
        "Fan-out for alert %s (%s): %d notified of %d candidates (radius=%.1f km)",
        alert.alert_id, reason, len(targets), len(candidates), radius_km,
        extra={
            "alert_id": alert.alert_id,
            "radius_km": radius_km,
            "recipient_count": len(targets),
        },
    )

    return set(targets)
