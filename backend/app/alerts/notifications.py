"""
notifications.py — Recipient-facing inbox operations.

Wraps a NotificationInbox with the caller checks every inbox operation
needs:

    Operation          Unauthenticated     Foreign / missing notification
    ─────────────      ───────────────     ──────────────────────────────
    list_*             empty list          n/a
    unread_count       0                   n/a
    mark_read          UnauthenticatedError NotFoundError
    mark_all_read      UnauthenticatedError n/a
    delete             UnauthenticatedError NotFoundError

A notification owned by somebody else is reported as missing so that
notification ids cannot be probed across users.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from backend.app.alerts.models import Notification
from backend.app.alerts.store import LocationDirectory, NotificationInbox
from backend.app.core.errors import NotFoundError, UnauthenticatedError
from backend.app.spatial.radius_utils import Coordinate

logger = logging.getLogger(__name__)


class NotificationService:
    """Caller-scoped access to the notification inbox."""

    def __init__(self, inbox: NotificationInbox) -> None:
        self.inbox = inbox

    def _owned(self, caller_id: str, notification_id: str) -> Notification:
        found = self.inbox.get(notification_id)
        if found is None or found.recipient_id != caller_id:
            raise NotFoundError("Notification", notification_id=notification_id)
        return found

    def list_notifications(self, caller_id: Optional[str]) -> List[Notification]:
        if not caller_id:
            return []
        return self.inbox.list_for(caller_id)

    def list_unread(self, caller_id: Optional[str]) -> List[Notification]:
        if not caller_id:
            return []
        return self.inbox.list_for(caller_id, unread_only=True)

    def unread_count(self, caller_id: Optional[str]) -> int:
        return len(self.list_unread(caller_id))

    def mark_read(self, caller_id: Optional[str], notification_id: str) -> None:
        if not caller_id:
            raise UnauthenticatedError("mark_read")
        self._owned(caller_id, notification_id)
        self.inbox.mark_read(notification_id)

    def mark_all_read(self, caller_id: Optional[str]) -> int:
        """Mark every unread notification read; returns how many changed."""
        if not caller_id:
            raise UnauthenticatedError("mark_all_read")
        pending = self.inbox.list_for(caller_id, unread_only=True)
        for notification in pending:
            self.inbox.mark_read(notification.notification_id)
        logger.debug("Marked %d notifications read for %s", len(pending), caller_id)
        return len(pending)

    def delete(self, caller_id: Optional[str], notification_id: str) -> None:
        if not caller_id:
            raise UnauthenticatedError("delete_notification")
        self._owned(caller_id, notification_id)
        self.inbox.delete(notification_id)


def update_location(
    directory: LocationDirectory,
    caller_id: Optional[str],
    coordinate: Coordinate,
) -> None:
    """Record the caller's last known location for future fan-outs."""
    if not caller_id:
        raise UnauthenticatedError("update_location")
    directory.update(caller_id, coordinate)
    logger.debug(
        "Location for %s updated to (%.5f, %.5f)",
        caller_id, coordinate.latitude, coordinate.longitude,
    )
