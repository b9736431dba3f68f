"""
alert_service.py — Tap aggregation and escalation orchestration.

This is the central coordinator that:
    1. Creates alerts from a first tap and notifies immediate neighbours
    2. Records corroborating taps against an alert
    3. Recomputes rolling metrics from the full tap log
    4. Scores the alert via the severity engine
    5. Persists the tap and the refreshed alert atomically
    6. Fans out to a wider radius when an escalation edge is crossed
    7. Serves reporter-only lifecycle changes and read models

═══════════════════════════════════════════════════════════════════════════
TAP FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  record_tap()       │  caller identity + coordinate
    └─────────┬───────────┘
              │   store.commit_tap() write held from here …
              ▼
    ┌─────────────────────┐
    │  1. Load alert      │  NotFound / AlertClosed rejections
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  2. Recompute       │  tap_count       = |tap log| (incl. new tap)
    │     from tap log    │  tap_frequency   = taps in (now−10s, now] / 10
    │                     │  unique_reporters = |{reporter ids}|
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  3. Score + edge    │  compute_severity / escalation_edge
    └─────────┬───────────┘
              ▼
    ┌─────────────────────┐
    │  4. Commit          │  tap insert + alert patch
    └─────────┬───────────┘
              │   … write committed
              ▼
    ┌─────────────────────┐
    │  5. Fan-out         │  only if commit succeeded AND edge ≥ 50
    └─────────────────────┘

═══════════════════════════════════════════════════════════════════════════
CONSISTENCY
═══════════════════════════════════════════════════════════════════════════

Metrics are re-derived from the tap log on every write and never
incremented. A retried or out-of-order tap therefore cannot drift the
cached counters, and replaying a log always yields the same numbers.

Steps 1-4 run inside the store's serialised write (a lock in memory, a
row lock in SQL), so two processes sharing a database still score from
the same log they commit to. Reporter-only changes (status, media,
recording) are serialised per alert by an in-process lock that lives only
while a caller holds it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from threading import Lock
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from backend.app.alerts.geo_fence import fan_out
from backend.app.alerts.models import (
    Alert,
    AlertStatus,
    OPEN_STATUSES,
    Tap,
    TapMetrics,
    TapResult,
    utc_now,
)
from backend.app.alerts.severity import (
    DEFAULT_WEIGHTS,
    ESCALATION_EDGES,
    ESCALATION_STATUS_EDGE,
    SeverityWeights,
    compute_severity,
    escalation_edge,
    notification_radius_km,
    resolve_weights,
    severity_tier,
)
from backend.app.alerts.store import AlertStore, LocationDirectory, NotificationSink
from backend.app.core.config import Settings
from backend.app.core.errors import (
    AlertClosedError,
    InvalidLocationError,
    NotFoundError,
    UnauthenticatedError,
    UnauthorizedError,
    ValidationError,
)
from backend.app.spatial.radius_utils import Coordinate, filter_within_radius

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Defaults
# ═══════════════════════════════════════════════════════════════════════════

TAP_WINDOW_SECONDS = 10.0
RECENT_TAP_WINDOW_SECONDS = 60.0
INITIAL_NOTIFICATION_RADIUS_KM = 3.0
HISTORY_RADIUS_KM = 50.0
HISTORY_WINDOW_DAYS = 7
NEARBY_RADIUS_KM = 10.0
METRICS_TIMELINE_LENGTH = 10

# Alert metadata accepted by create_alert
ALERT_METADATA_FIELDS = ("title", "description", "address")


# ═══════════════════════════════════════════════════════════════════════════
# Pure helpers
# ═══════════════════════════════════════════════════════════════════════════

def compute_tap_metrics(
    taps: Iterable[Tap],
    now: datetime,
    window_seconds: float = TAP_WINDOW_SECONDS,
) -> TapMetrics:
    """
    Derive rolling metrics from a complete tap log.

    Independent of the order in which taps were inserted.

    Parameters
    ----------
    taps : iterable of Tap
        The full log for one alert.
    now : datetime
        End of the trailing frequency window.
    window_seconds : float
        Width of the trailing window; frequency = taps in window / width.

    Returns
    -------
    TapMetrics
    """
    taps = list(taps)
    window_start = now - timedelta(seconds=window_seconds)
    in_window = sum(1 for t in taps if window_start < t.timestamp <= now)

    return TapMetrics(
        tap_count=len(taps),
        tap_frequency=in_window / window_seconds,
        unique_reporters=len({t.reporter_id for t in taps}),
        last_tap_at=max((t.timestamp for t in taps), default=None),
    )


def to_coordinate(
    latitude: Optional[float],
    longitude: Optional[float],
    accuracy: Optional[float] = None,
) -> Coordinate:
    """Build a Coordinate, reporting bad input as InvalidLocationError."""
    if latitude is None or longitude is None:
        raise InvalidLocationError(
            "Latitude and longitude are required",
            latitude=latitude, longitude=longitude,
        )
    try:
        return Coordinate(float(latitude), float(longitude), accuracy)
    except (TypeError, ValueError) as exc:
        raise InvalidLocationError(str(exc), latitude=latitude, longitude=longitude) from exc


def _parse_status(value: Union[str, AlertStatus]) -> AlertStatus:
    try:
        return AlertStatus(value)
    except ValueError:
        valid = [s.value for s in AlertStatus]
        raise ValidationError(
            f"Invalid status '{value}'. Must be one of: {valid}",
            field="status",
        )


# ═══════════════════════════════════════════════════════════════════════════
# Aggregator
# ═══════════════════════════════════════════════════════════════════════════

class _HeldLock:
    __slots__ = ("lock", "holders")

    def __init__(self) -> None:
        self.lock = Lock()
        self.holders = 0


class AlertAggregator:
    """
    Stateful orchestration over injected collaborators.

    Parameters
    ----------
    store : AlertStore
        Alert and tap persistence.
    sink : NotificationSink
        Receives fan-out notifications.
    locations : LocationDirectory
        Last known coordinate per identity, read at fan-out time.
    weights : SeverityWeights
        Scoring policy.
    reject_null_island : bool
        If True, a (0, 0) coordinate is treated as a missing location.
    """

    def __init__(
        self,
        store: AlertStore,
        sink: NotificationSink,
        locations: LocationDirectory,
        *,
        weights: SeverityWeights = DEFAULT_WEIGHTS,
        tap_window_seconds: float = TAP_WINDOW_SECONDS,
        recent_tap_window_seconds: float = RECENT_TAP_WINDOW_SECONDS,
        initial_radius_km: float = INITIAL_NOTIFICATION_RADIUS_KM,
        history_radius_km: float = HISTORY_RADIUS_KM,
        history_window_days: int = HISTORY_WINDOW_DAYS,
        nearby_radius_km: float = NEARBY_RADIUS_KM,
        reject_null_island: bool = False,
    ) -> None:
        if tap_window_seconds <= 0:
            raise ValueError(f"tap_window_seconds must be positive, got {tap_window_seconds}")
        self.store = store
        self.sink = sink
        self.locations = locations
        self.weights = weights
        self.tap_window_seconds = tap_window_seconds
        self.recent_tap_window_seconds = recent_tap_window_seconds
        self.initial_radius_km = initial_radius_km
        self.history_radius_km = history_radius_km
        self.history_window_days = history_window_days
        self.nearby_radius_km = nearby_radius_km
        self.reject_null_island = reject_null_island

        self._locks_guard = Lock()
        self._locks: Dict[str, _HeldLock] = {}

    @classmethod
    def from_settings(
        cls,
        store: AlertStore,
        sink: NotificationSink,
        locations: LocationDirectory,
        settings: Settings,
    ) -> "AlertAggregator":
        """Build an aggregator configured from application settings."""
        weights = resolve_weights(
            settings.SEVERITY_WEIGHT_PRESET,
            tap_weight=settings.SEVERITY_TAP_WEIGHT,
            freq_weight=settings.SEVERITY_FREQ_WEIGHT,
            reporter_weight=settings.SEVERITY_REPORTER_WEIGHT,
        )
        return cls(
            store, sink, locations,
            weights=weights,
            tap_window_seconds=settings.TAP_WINDOW_SECONDS,
            recent_tap_window_seconds=settings.RECENT_TAP_WINDOW_SECONDS,
            initial_radius_km=settings.INITIAL_NOTIFICATION_RADIUS_KM,
            history_radius_km=settings.HISTORY_RADIUS_KM,
            history_window_days=settings.HISTORY_WINDOW_DAYS,
            nearby_radius_km=settings.NEARBY_RADIUS_KM,
            reject_null_island=settings.REJECT_NULL_ISLAND,
        )

    # ── Guards ──

    @contextmanager
    def _alert_lock(self, alert_id: str) -> Iterator[None]:
        # Entries exist only while some caller holds or waits on them
        with self._locks_guard:
            entry = self._locks.get(alert_id)
            if entry is None:
                entry = self._locks[alert_id] = _HeldLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._locks[alert_id]

    @staticmethod
    def _require_caller(caller_id: Optional[str], operation: str) -> str:
        if not caller_id:
            raise UnauthenticatedError(operation)
        return caller_id

    def _require_location(self, coordinate: Optional[Coordinate]) -> Coordinate:
        if coordinate is None:
            raise InvalidLocationError("A location is required")
        if self.reject_null_island and coordinate.is_null_island:
            raise InvalidLocationError(
                "Zero-valued coordinate is not a usable location",
                latitude=coordinate.latitude, longitude=coordinate.longitude,
            )
        return coordinate

    def _get_alert(self, alert_id: str) -> Alert:
        alert = self.store.get_alert(alert_id)
        if alert is None:
            raise NotFoundError("Alert", alert_id=alert_id)
        return alert

    def _get_owned_alert(self, alert_id: str, requester: str, action: str) -> Alert:
        alert = self._get_alert(alert_id)
        if alert.reporter_id != requester:
            logger.warning(
                "Rejected %s on alert %s by non-reporter %s",
                action, alert_id, requester,
            )
            raise UnauthorizedError(action, alert_id=alert_id)
        return alert

    # ── Writes ──

    def create_alert(
        self,
        reporter_id: Optional[str],
        coordinate: Optional[Coordinate],
        metadata: Optional[Dict[str, Any]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Open a new alert from its first tap.

        The alert starts with tap_count=1, severity 0 and status active.
        Everyone within the initial radius is notified, even at severity 0.

        Returns
        -------
        str
            The new alert id.
        """
        reporter_id = self._require_caller(reporter_id, "create_alert")
        coordinate = self._require_location(coordinate)
        now = now or utc_now()
        metadata = metadata or {}

        alert = Alert(
            reporter_id=reporter_id,
            latitude=coordinate.latitude,
            longitude=coordinate.longitude,
            accuracy=coordinate.accuracy,
            tap_count=1,
            tap_frequency=0.0,
            severity_score=0,
            status=AlertStatus.ACTIVE,
            created_at=now,
            updated_at=now,
            last_tap_at=now,
            **{k: metadata.get(k) for k in ALERT_METADATA_FIELDS},
        )
        first_tap = Tap(
            alert_id=alert.alert_id,
            reporter_id=reporter_id,
            timestamp=now,
            latitude=coordinate.latitude,
            longitude=coordinate.longitude,
        )

        alert_id = self.store.insert_alert(alert, first_tap)

        logger.info(
            "Alert %s created by %s at (%.5f, %.5f)",
            alert_id, reporter_id, alert.latitude, alert.longitude,
            extra={"alert_id": alert_id, "reporter_id": reporter_id},
        )

        fan_out(
            self.sink, alert, self.initial_radius_km,
            self.locations.snapshot(), reason="initial",
        )
        return alert_id

    def record_tap(
        self,
        alert_id: str,
        reporter_id: Optional[str],
        coordinate: Optional[Coordinate],
        *,
        now: Optional[datetime] = None,
    ) -> TapResult:
        """
        Record one corroborating tap and re-score the alert.

        Raises
        ------
        UnauthenticatedError
            No reporter identity.
        InvalidLocationError
            Missing or unusable coordinate.
        NotFoundError
            Unknown alert.
        AlertClosedError
            Alert is resolved or a false alarm.
        """
        reporter_id = self._require_caller(reporter_id, "record_tap")
        coordinate = self._require_location(coordinate)
        now = now or utc_now()

        tap = Tap(
            alert_id=alert_id,
            reporter_id=reporter_id,
            timestamp=now,
            latitude=coordinate.latitude,
            longitude=coordinate.longitude,
        )
        scored: Dict[str, TapMetrics] = {}

        def rescore(alert: Alert, taps: List[Tap]) -> Dict[str, Any]:
            if alert.is_terminal:
                raise AlertClosedError(alert_id, alert.status.value)

            metrics = scored["metrics"] = compute_tap_metrics(
                taps, now, self.tap_window_seconds,
            )
            new_score = compute_severity(
                metrics.tap_count,
                metrics.tap_frequency,
                metrics.unique_reporters,
                self.weights,
            )
            edge = escalation_edge(alert.severity_score, new_score)

            if edge is not None and edge >= ESCALATION_STATUS_EDGE:
                status = AlertStatus.ESCALATED
            elif alert.status == AlertStatus.ESCALATED:
                status = AlertStatus.ESCALATED
            else:
                status = AlertStatus.ACTIVE

            return {
                "tap_count": metrics.tap_count,
                "tap_frequency": metrics.tap_frequency,
                "last_tap_at": metrics.last_tap_at or now,
                "severity_score": new_score,
                "status": status,
                "updated_at": now,
            }

        previous, updated = self.store.commit_tap(tap, rescore)
        metrics = scored["metrics"]
        old_score = previous.severity_score
        new_score = updated.severity_score
        status = updated.status
        edge = escalation_edge(old_score, new_score)

        logger.info(
            "Tap on %s by %s: score %d → %d, taps=%d, freq=%.2f/s, reporters=%d%s",
            alert_id, reporter_id, old_score, new_score,
            metrics.tap_count, metrics.tap_frequency, metrics.unique_reporters,
            f", crossed edge {edge}" if edge is not None else "",
            extra={
                "alert_id": alert_id,
                "reporter_id": reporter_id,
                "severity_score": new_score,
                "escalation_edge": edge,
            },
        )

        notified: List[str] = []
        if edge is not None and edge >= ESCALATION_STATUS_EDGE:
            radius = notification_radius_km(new_score)
            notified = sorted(fan_out(
                self.sink, updated, radius,
                self.locations.snapshot(), reason="escalation",
            ))

        return TapResult(
            alert_id=alert_id,
            severity_score=new_score,
            tap_count=metrics.tap_count,
            tap_frequency=metrics.tap_frequency,
            unique_reporters=metrics.unique_reporters,
            escalated=edge is not None,
            escalation_edge=edge,
            status=status,
            notified=notified,
        )

    def update_status(
        self,
        alert_id: str,
        requester: Optional[str],
        new_status: Union[str, AlertStatus],
        *,
        now: Optional[datetime] = None,
    ) -> Alert:
        """
        Reporter-only lifecycle transition.

        Moving to resolved / false-alarm stamps ``resolved_at``; any other
        transition leaves it unset. Terminal alerts cannot be reopened.
        """
        requester = self._require_caller(requester, "update_status")
        status = _parse_status(new_status)
        now = now or utc_now()

        with self._alert_lock(alert_id):
            alert = self._get_owned_alert(alert_id, requester, "update the alert status")
            if alert.is_terminal:
                raise AlertClosedError(alert_id, alert.status.value)

            updated = self.store.patch_alert(alert_id, {
                "status": status,
                "updated_at": now,
                "resolved_at": now if status.is_terminal else None,
            })

        logger.info(
            "Alert %s status %s → %s by %s",
            alert_id, alert.status.value, status.value, requester,
            extra={"alert_id": alert_id, "reporter_id": requester},
        )
        return updated

    def attach_media(
        self,
        alert_id: str,
        requester: Optional[str],
        storage_id: str,
        media_url: str,
        *,
        now: Optional[datetime] = None,
    ) -> Alert:
        """Link recorded media to the alert and stop the recording flag."""
        requester = self._require_caller(requester, "attach_media")
        now = now or utc_now()

        with self._alert_lock(alert_id):
            self._get_owned_alert(alert_id, requester, "attach media")
            updated = self.store.patch_alert(alert_id, {
                "media_storage_id": storage_id,
                "media_url": media_url,
                "is_recording": False,
                "updated_at": now,
            })

        logger.info("Media %s attached to alert %s", storage_id, alert_id,
                    extra={"alert_id": alert_id})
        return updated

    def update_recording_state(
        self,
        alert_id: str,
        requester: Optional[str],
        is_recording: bool,
        is_streaming: Optional[bool] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Alert:
        """Reporter-only toggle of the recording / streaming flags."""
        requester = self._require_caller(requester, "update_recording_state")
        now = now or utc_now()

        fields: Dict[str, Any] = {"is_recording": is_recording, "updated_at": now}
        if is_streaming is not None:
            fields["is_streaming"] = is_streaming

        with self._alert_lock(alert_id):
            self._get_owned_alert(alert_id, requester, "change the recording state")
            return self.store.patch_alert(alert_id, fields)

    # ── Reads ──

    def get_alert_with_metrics(
        self,
        alert_id: str,
        *,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Stored alert fields plus derived detail-view metrics.

        Adds ``recent_tap_count`` (trailing 60 s), ``unique_users``,
        ``severity_tier`` and ``notification_radius_km``.
        """
        alert = self._get_alert(alert_id)
        now = now or utc_now()

        taps = self.store.list_taps(alert_id)
        recent_since = now - timedelta(seconds=self.recent_tap_window_seconds)

        return {
            **alert.to_dict(),
            "recent_tap_count": sum(1 for t in taps if t.timestamp > recent_since),
            "unique_users": len({t.reporter_id for t in taps}),
            "severity_tier": severity_tier(alert.severity_score).value,
            "notification_radius_km": notification_radius_km(alert.severity_score),
        }

    def get_alert_metrics(self, alert_id: str) -> Dict[str, Any]:
        """Dashboard summary with the most recent taps as a timeline."""
        alert = self._get_alert(alert_id)
        taps = self.store.list_taps(alert_id)
        newest_first = sorted(taps, key=lambda t: t.timestamp, reverse=True)

        return {
            "alert_id": alert_id,
            "total_taps": len(taps),
            "unique_users": len({t.reporter_id for t in taps}),
            "average_tap_frequency": alert.tap_frequency,
            "severity_score": alert.severity_score,
            "severity_tier": severity_tier(alert.severity_score).value,
            "status": alert.status.value,
            "last_tap_at": alert.last_tap_at.isoformat(),
            "recent_taps": [t.to_dict() for t in newest_first[:METRICS_TIMELINE_LENGTH]],
        }

    def get_alert_history(
        self,
        center: Coordinate,
        *,
        radius_km: Optional[float] = None,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """
        Alerts of any status created within the window and radius.

        Newest first; each entry carries ``distance_km``.
        """
        radius_km = self.history_radius_km if radius_km is None else radius_km
        window_days = self.history_window_days if window_days is None else window_days
        now = now or utc_now()

        alerts = self.store.list_alerts(created_since=now - timedelta(days=window_days))
        matched = filter_within_radius(
            center, alerts, radius_km, location_of=lambda a: a.location,
        )
        return [{**a.to_dict(), "distance_km": round(d, 3)} for a, d in matched]

    def get_nearby_active_alerts(
        self,
        caller_id: Optional[str],
        center: Coordinate,
        *,
        radius_km: Optional[float] = None,
    ) -> List[Dict[str, Any]]:
        """
        Open alerts near ``center``, nearest first.

        Only alerts created since the caller first appeared in the location
        directory are shown; unknown and unauthenticated callers get nothing.
        """
        if not caller_id:
            return []
        since = self.locations.registered_at(caller_id)
        if since is None:
            return []
        radius_km = self.nearby_radius_km if radius_km is None else radius_km

        alerts = self.store.list_alerts(statuses=OPEN_STATUSES, created_since=since)
        matched = filter_within_radius(
            center, alerts, radius_km,
            location_of=lambda a: a.location,
            sort_by_distance=True,
        )
        return [{**a.to_dict(), "distance_km": round(d, 3)} for a, d in matched]

    def get_user_active_alerts(self, caller_id: Optional[str]) -> List[Alert]:
        """The caller's own open alerts, newest first."""
        if not caller_id:
            return []
        return self.store.list_alerts(reporter_id=caller_id, statuses=OPEN_STATUSES)

    def get_active_alerts(self) -> List[Alert]:
        """Every alert whose status is exactly active, newest first."""
        return self.store.list_alerts(statuses=[AlertStatus.ACTIVE])

    def severity_policy(self) -> Dict[str, Any]:
        """The scoring configuration in force."""
        return {
            "weights": self.weights.to_dict(),
            "escalation_edges": list(ESCALATION_EDGES),
            "escalation_status_edge": ESCALATION_STATUS_EDGE,
            "tap_window_seconds": self.tap_window_seconds,
            "initial_radius_km": self.initial_radius_km,
            "radius_by_tier_km": {
                tier: notification_radius_km(score)
                for tier, score in (("low", 0), ("medium", 30), ("high", 50), ("critical", 80))
            },
        }
