"""
models.py — Shared data structures for the tap escalation engine.

Defines:
    • AlertStatus      — lifecycle state of an incident
    • NotificationType — inbox category
    • Alert            — one active incident with its rolling metrics
    • Tap              — one immutable corroboration event
    • TapMetrics       — metrics recomputed from the full tap log
    • TapResult        — outcome of recording a tap
    • Notification     — one inbox entry produced by fan-out

═══════════════════════════════════════════════════════════════════════════
ALERT LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    first tap ──► ACTIVE ◄──────► ESCALATED
                    │                 │
                    └──────┬──────────┘
                           ▼
                 RESOLVED / FALSE_ALARM   (terminal, reporter only)

    • ACTIVE ↔ ESCALATED moves as severity is recomputed or the reporter
      changes it explicitly.
    • RESOLVED and FALSE_ALARM are terminal: new taps are rejected and the
      resolution timestamp is stamped by the transition into them.

═══════════════════════════════════════════════════════════════════════════
DERIVED vs STORED
═══════════════════════════════════════════════════════════════════════════

tap_count, tap_frequency and severity_score on an Alert are a cache that
is refreshed on every tap by recomputing from the tap log. They are never
incremented in place.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from backend.app.spatial.radius_utils import Coordinate


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertStatus(str, Enum):
    """Lifecycle state of an alert."""
    ACTIVE = "active"
    ESCALATED = "escalated"
    RESOLVED = "resolved"
    FALSE_ALARM = "false-alarm"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({AlertStatus.RESOLVED, AlertStatus.FALSE_ALARM})
OPEN_STATUSES = frozenset({AlertStatus.ACTIVE, AlertStatus.ESCALATED})


class NotificationType(str, Enum):
    """Inbox categories."""
    EMERGENCY = "emergency"
    ALERT = "alert"
    UPDATE = "update"
    REMINDER = "reminder"


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def generate_alert_id() -> str:
    return f"ALR-{uuid.uuid4().hex[:12].upper()}"


def generate_tap_id() -> str:
    return f"TAP-{uuid.uuid4().hex[:12].upper()}"


def generate_notification_id() -> str:
    return f"NTF-{uuid.uuid4().hex[:12].upper()}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Alert:
    """
    One incident being corroborated by taps.

    Attributes
    ----------
    alert_id : str
        Unique identifier.
    reporter_id : str
        Identity that created the alert; the only one allowed to change
        its status or media.
    latitude, longitude : float
        Origin of the report; centre of every fan-out.
    accuracy : float | None
        Reported GPS accuracy in metres.
    tap_count : int
        Total taps (≥ 1), refreshed from the tap log.
    tap_frequency : float
        Taps per second over the trailing window.
    severity_score : int
        0–100, a function of the metrics at the last recomputation.
    media_storage_id, media_url : str | None
        Pointer to recorded media held by the storage collaborator.
    """
    reporter_id: str
    latitude: float
    longitude: float
    alert_id: str = field(default_factory=generate_alert_id)
    accuracy: Optional[float] = None
    title: Optional[str] = None
    description: Optional[str] = None
    address: Optional[str] = None
    tap_count: int = 1
    tap_frequency: float = 0.0
    severity_score: int = 0
    status: AlertStatus = AlertStatus.ACTIVE
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    last_tap_at: datetime = field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None
    media_storage_id: Optional[str] = None
    media_url: Optional[str] = None
    is_recording: bool = False
    is_streaming: bool = False

    @property
    def location(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude, self.accuracy)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def resolution_duration(self) -> Optional[timedelta]:
        """Time from creation to resolution, once resolved."""
        if self.resolved_at is None:
            return None
        return self.resolved_at - self.created_at

    def to_dict(self) -> Dict[str, Any]:
        duration = self.resolution_duration
        return {
            "alert_id": self.alert_id,
            "reporter_id": self.reporter_id,
            "title": self.title,
            "description": self.description,
            "address": self.address,
            "location": {
                "latitude": self.latitude,
                "longitude": self.longitude,
                "accuracy": self.accuracy,
            },
            "tap_count": self.tap_count,
            "tap_frequency": round(self.tap_frequency, 4),
            "severity_score": self.severity_score,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "last_tap_at": self.last_tap_at.isoformat(),
            "resolved_at": _iso(self.resolved_at),
            "resolution_seconds": (
                duration.total_seconds() if duration is not None else None
            ),
            "media": {
                "storage_id": self.media_storage_id,
                "url": self.media_url,
                "is_recording": self.is_recording,
                "is_streaming": self.is_streaming,
            },
        }


@dataclass(frozen=True)
class Tap:
    """One corroboration event. Immutable, append-only."""
    alert_id: str
    reporter_id: str
    timestamp: datetime
    latitude: float
    longitude: float
    tap_id: str = field(default_factory=generate_tap_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tap_id": self.tap_id,
            "alert_id": self.alert_id,
            "reporter_id": self.reporter_id,
            "timestamp": self.timestamp.isoformat(),
            "latitude": self.latitude,
            "longitude": self.longitude,
        }


@dataclass(frozen=True)
class TapMetrics:
    """Rolling metrics re-derived from the full tap log."""
    tap_count: int
    tap_frequency: float
    unique_reporters: int
    last_tap_at: Optional[datetime] = None


@dataclass
class TapResult:
    """Outcome of recording one tap."""
    alert_id: str
    severity_score: int
    tap_count: int
    tap_frequency: float
    unique_reporters: int
    escalated: bool
    escalation_edge: Optional[int]
    status: AlertStatus
    notified: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "severity_score": self.severity_score,
            "tap_count": self.tap_count,
            "tap_frequency": round(self.tap_frequency, 4),
            "unique_reporters": self.unique_reporters,
            "escalated": self.escalated,
            "escalation_edge": self.escalation_edge,
            "status": self.status.value,
            "notified_count": len(self.notified),
        }


@dataclass
class Notification:
    """One inbox entry for a recipient."""
    recipient_id: str
    title: str
    message: str
    type: NotificationType = NotificationType.EMERGENCY
    notification_id: str = field(default_factory=generate_notification_id)
    read: bool = False
    created_at: datetime = field(default_factory=utc_now)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notification_id": self.notification_id,
            "recipient_id": self.recipient_id,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "read": self.read,
            "created_at": self.created_at.isoformat(),
            "metadata": self.metadata,
        }
