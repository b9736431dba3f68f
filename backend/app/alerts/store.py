"""
store.py — Collaborator interfaces for the escalation engine.

The engine owns no state. Everything it reads or writes goes through one
of these injected collaborators:

    AlertStore         keyed record store for Alerts and their Tap log
    NotificationSink   delivery hand-off used by fan-out
    NotificationInbox  the sink plus the recipient's inbox view
    LocationDirectory  last known coordinate per identity

Each interface has an in-memory implementation here, used by tests and
the default ``STORE_BACKEND=memory`` deployment. SQLAlchemy-backed
implementations live in ``sql_store``.

In-memory stores hand out copies, never their internal records, so a
caller mutating a returned object cannot bypass ``patch_alert``.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from backend.app.alerts.models import (
    Alert,
    AlertStatus,
    Notification,
    NotificationType,
    Tap,
    utc_now,
)
from backend.app.core.errors import NotFoundError
from backend.app.spatial.radius_utils import Coordinate

logger = logging.getLogger(__name__)

# (alert as stored, full tap log incl. the new tap) -> fields to patch
Rescore = Callable[[Alert, List[Tap]], Dict[str, Any]]


# ═══════════════════════════════════════════════════════════════════════════
# Interfaces
# ═══════════════════════════════════════════════════════════════════════════

class AlertStore(Protocol):
    """Keyed record store for Alert and Tap entities."""

    def insert_alert(self, alert: Alert, first_tap: Tap) -> str:
        """Insert an alert together with its originating tap; return its id."""
        ...

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        ...

    def patch_alert(self, alert_id: str, fields: Dict[str, Any]) -> Alert:
        """Partially update an alert; raises NotFoundError if missing."""
        ...

    def insert_tap(self, tap: Tap) -> None:
        """Append a tap to an existing alert's log."""
        ...

    def list_taps(self, alert_id: str, since: Optional[datetime] = None) -> List[Tap]:
        """Taps for an alert, oldest first; ``since`` is exclusive."""
        ...

    def list_alerts(
        self,
        *,
        reporter_id: Optional[str] = None,
        statuses: Optional[Iterable[AlertStatus]] = None,
        created_since: Optional[datetime] = None,
    ) -> List[Alert]:
        """Alerts matching every given filter, newest first."""
        ...

    def commit_tap(self, tap: Tap, rescore: Rescore) -> Tuple[Alert, Alert]:
        """
        Append ``tap`` and patch its alert as one serialised write.

        ``rescore`` is called inside the write with the alert as stored and
        the full tap log including ``tap``; the fields it returns are applied
        to the alert. Returns ``(before, after)``. Anything ``rescore``
        raises aborts the write.
        """
        ...


class NotificationSink(Protocol):
    """Hands a notification off for delivery."""

    def send(
        self,
        recipient_id: str,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        type: NotificationType = NotificationType.EMERGENCY,
    ) -> Notification:
        ...


class NotificationInbox(NotificationSink, Protocol):
    """Notification sink plus the per-recipient inbox view."""

    def get(self, notification_id: str) -> Optional[Notification]:
        ...

    def list_for(self, recipient_id: str, *, unread_only: bool = False) -> List[Notification]:
        """A recipient's notifications, newest first."""
        ...

    def mark_read(self, notification_id: str) -> None:
        ...

    def delete(self, notification_id: str) -> None:
        ...


class LocationDirectory(Protocol):
    """Last known coordinate per identity, refreshed outside the engine."""

    def snapshot(self) -> Dict[str, Optional[Coordinate]]:
        ...

    def update(
        self, identity: str, coordinate: Coordinate, *, now: Optional[datetime] = None,
    ) -> None:
        ...

    def registered_at(self, identity: str) -> Optional[datetime]:
        """When the identity first appeared in the directory, or None if never."""
        ...


class IdentityProvider(Protocol):
    """Resolves the calling principal, or None when unauthenticated."""

    def current_identity(self) -> Optional[str]:
        ...


# ═══════════════════════════════════════════════════════════════════════════
# In-memory Alert Store
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryAlertStore:
    """Dict-backed AlertStore. A single lock makes every method atomic."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._alerts: Dict[str, Alert] = {}
        self._taps: Dict[str, List[Tap]] = {}

    def insert_alert(self, alert: Alert, first_tap: Tap) -> str:
        with self._lock:
            self._alerts[alert.alert_id] = replace(alert)
            self._taps[alert.alert_id] = [first_tap]
        return alert.alert_id

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            return replace(alert) if alert else None

    def patch_alert(self, alert_id: str, fields: Dict[str, Any]) -> Alert:
        with self._lock:
            return self._patch_locked(alert_id, fields)

    def insert_tap(self, tap: Tap) -> None:
        with self._lock:
            if tap.alert_id not in self._alerts:
                raise NotFoundError("Alert", alert_id=tap.alert_id)
            self._taps[tap.alert_id].append(tap)

    def list_taps(self, alert_id: str, since: Optional[datetime] = None) -> List[Tap]:
        with self._lock:
            taps = list(self._taps.get(alert_id, []))
        if since is not None:
            taps = [t for t in taps if t.timestamp > since]
        return sorted(taps, key=lambda t: t.timestamp)

    def list_alerts(
        self,
        *,
        reporter_id: Optional[str] = None,
        statuses: Optional[Iterable[AlertStatus]] = None,
        created_since: Optional[datetime] = None,
    ) -> List[Alert]:
        wanted = set(statuses) if statuses is not None else None
        with self._lock:
            alerts = [replace(a) for a in self._alerts.values()]

        matched = [
            a for a in alerts
            if (reporter_id is None or a.reporter_id == reporter_id)
            and (wanted is None or a.status in wanted)
            and (created_since is None or a.created_at >= created_since)
        ]
        matched.sort(key=lambda a: a.created_at, reverse=True)
        return matched

    def commit_tap(self, tap: Tap, rescore: Rescore) -> Tuple[Alert, Alert]:
        with self._lock:
            current = self._alerts.get(tap.alert_id)
            if current is None:
                raise NotFoundError("Alert", alert_id=tap.alert_id)
            fields = rescore(replace(current), [*self._taps[tap.alert_id], tap])
            updated = self._patch_locked(tap.alert_id, fields)
            self._taps[tap.alert_id].append(tap)
            return replace(current), updated

    def _patch_locked(self, alert_id: str, fields: Dict[str, Any]) -> Alert:
        current = self._alerts.get(alert_id)
        if current is None:
            raise NotFoundError("Alert", alert_id=alert_id)
        updated = replace(current, **fields)
        self._alerts[alert_id] = updated
        return replace(updated)


# ═══════════════════════════════════════════════════════════════════════════
# In-memory Notification Inbox
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryNotificationInbox:
    """Dict-backed NotificationInbox."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._notifications: Dict[str, Notification] = {}

    def send(
        self,
        recipient_id: str,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        type: NotificationType = NotificationType.EMERGENCY,
    ) -> Notification:
        notification = Notification(
            recipient_id=recipient_id,
            title=title,
            message=message,
            type=type,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self._notifications[notification.notification_id] = notification
        logger.debug(
            "Notification %s queued for %s",
            notification.notification_id, recipient_id,
        )
        return replace(notification)

    def get(self, notification_id: str) -> Optional[Notification]:
        with self._lock:
            found = self._notifications.get(notification_id)
            return replace(found) if found else None

    def list_for(self, recipient_id: str, *, unread_only: bool = False) -> List[Notification]:
        with self._lock:
            items = [
                replace(n) for n in self._notifications.values()
                if n.recipient_id == recipient_id and not (unread_only and n.read)
            ]
        items.sort(key=lambda n: n.created_at, reverse=True)
        return items

    def mark_read(self, notification_id: str) -> None:
        with self._lock:
            found = self._notifications.get(notification_id)
            if found is None:
                raise NotFoundError("Notification", notification_id=notification_id)
            found.read = True

    def delete(self, notification_id: str) -> None:
        with self._lock:
            if self._notifications.pop(notification_id, None) is None:
                raise NotFoundError("Notification", notification_id=notification_id)

    def all(self) -> List[Notification]:
        """Every notification, oldest first."""
        with self._lock:
            items = [replace(n) for n in self._notifications.values()]
        items.sort(key=lambda n: n.created_at)
        return items


# ═══════════════════════════════════════════════════════════════════════════
# In-memory Location Directory
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryLocationDirectory:
    """Dict-backed LocationDirectory. ``None`` marks an identity with no fix."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._locations: Dict[str, Optional[Coordinate]] = {}
        self._registered: Dict[str, datetime] = {}

    def snapshot(self) -> Dict[str, Optional[Coordinate]]:
        with self._lock:
            return dict(self._locations)

    def update(
        self, identity: str, coordinate: Coordinate, *, now: Optional[datetime] = None,
    ) -> None:
        with self._lock:
            self._locations[identity] = coordinate
            self._registered.setdefault(identity, now or utc_now())

    def register(self, identity: str, *, now: Optional[datetime] = None) -> None:
        """Add an identity without a known location."""
        with self._lock:
            self._locations.setdefault(identity, None)
            self._registered.setdefault(identity, now or utc_now())

    def registered_at(self, identity: str) -> Optional[datetime]:
        with self._lock:
            return self._registered.get(identity)
