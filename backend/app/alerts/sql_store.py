"""
sql_store.py — SQLAlchemy implementations of the engine's collaborators.

Tables:

    emergency_alerts   one row per Alert
    emergency_taps     append-only tap log, FK → emergency_alerts
    notifications      inbox entries
    user_locations     last known coordinate per identity

Every public method runs in its own ``session_scope`` so a failure rolls
back the whole write. ``commit_tap`` locks the alert row, inserts the tap,
re-derives the metrics from the tap rows and patches the alert in one
transaction, so concurrent workers sharing a database cannot lose a tap.

Timestamps are stored as naive UTC and returned timezone-aware.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    TypeDecorator,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Mapped, Session, mapped_column, sessionmaker

from backend.app.alerts.models import (
    Alert,
    AlertStatus,
    Notification,
    NotificationType,
    Tap,
    utc_now,
)
from backend.app.alerts.store import Rescore
from backend.app.core.database import Base, make_session_factory, session_scope
from backend.app.core.errors import NotFoundError
from backend.app.spatial.radius_utils import Coordinate

logger = logging.getLogger(__name__)


class UTCDateTime(TypeDecorator):
    """DateTime column that always round-trips as aware UTC."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.replace(tzinfo=None)

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# ORM Models
# ═══════════════════════════════════════════════════════════════════════════

class AlertRow(Base):
    __tablename__ = "emergency_alerts"

    alert_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    reporter_id: Mapped[str] = mapped_column(String(128), index=True)
    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    accuracy: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    title: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    address: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    tap_count: Mapped[int] = mapped_column(Integer, default=1)
    tap_frequency: Mapped[float] = mapped_column(Float, default=0.0)
    severity_score: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(16), index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime)
    last_tap_at: Mapped[datetime] = mapped_column(UTCDateTime)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    media_storage_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    media_url: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    is_recording: Mapped[bool] = mapped_column(Boolean, default=False)
    is_streaming: Mapped[bool] = mapped_column(Boolean, default=False)

    @classmethod
    def from_alert(cls, alert: Alert) -> "AlertRow":
        row = cls(alert_id=alert.alert_id)
        row.apply(_alert_columns(alert))
        return row

    def apply(self, fields: Dict[str, Any]) -> None:
        for name, value in fields.items():
            if not hasattr(AlertRow, name):
                raise ValueError(f"Unknown alert field '{name}'")
            if isinstance(value, AlertStatus):
                value = value.value
            setattr(self, name, value)

    def to_alert(self) -> Alert:
        return Alert(
            alert_id=self.alert_id,
            reporter_id=self.reporter_id,
            latitude=self.latitude,
            longitude=self.longitude,
            accuracy=self.accuracy,
            title=self.title,
            description=self.description,
            address=self.address,
            tap_count=self.tap_count,
            tap_frequency=self.tap_frequency,
            severity_score=self.severity_score,
            status=AlertStatus(self.status),
            created_at=self.created_at,
            updated_at=self.updated_at,
            last_tap_at=self.last_tap_at,
            resolved_at=self.resolved_at,
            media_storage_id=self.media_storage_id,
            media_url=self.media_url,
            is_recording=self.is_recording,
            is_streaming=self.is_streaming,
        )


class TapRow(Base):
    __tablename__ = "emergency_taps"

    tap_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    alert_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("emergency_alerts.alert_id"), index=True,
    )
    reporter_id: Mapped[str] = mapped_column(String(128))
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)

    @classmethod
    def from_tap(cls, tap: Tap) -> "TapRow":
        return cls(
            tap_id=tap.tap_id,
            alert_id=tap.alert_id,
            reporter_id=tap.reporter_id,
            timestamp=tap.timestamp,
            latitude=tap.latitude,
            longitude=tap.longitude,
        )

    def to_tap(self) -> Tap:
        return Tap(
            tap_id=self.tap_id,
            alert_id=self.alert_id,
            reporter_id=self.reporter_id,
            timestamp=self.timestamp,
            latitude=self.latitude,
            longitude=self.longitude,
        )


class NotificationRow(Base):
    __tablename__ = "notifications"

    notification_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    recipient_id: Mapped[str] = mapped_column(String(128), index=True)
    type: Mapped[str] = mapped_column(String(16))
    title: Mapped[str] = mapped_column(String(256))
    message: Mapped[str] = mapped_column(Text)
    read: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, index=True)
    # "metadata" is reserved on declarative classes
    meta: Mapped[Dict[str, Any]] = mapped_column("metadata", JSON, default=dict)

    def to_notification(self) -> Notification:
        return Notification(
            notification_id=self.notification_id,
            recipient_id=self.recipient_id,
            type=NotificationType(self.type),
            title=self.title,
            message=self.message,
            read=self.read,
            created_at=self.created_at,
            metadata=dict(self.meta or {}),
        )


class UserLocationRow(Base):
    __tablename__ = "user_locations"

    identity: Mapped[str] = mapped_column(String(128), primary_key=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    accuracy: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    registered_at: Mapped[datetime] = mapped_column(UTCDateTime)


def _alert_columns(alert: Alert) -> Dict[str, Any]:
    return {
        "reporter_id": alert.reporter_id,
        "latitude": alert.latitude,
        "longitude": alert.longitude,
        "accuracy": alert.accuracy,
        "title": alert.title,
        "description": alert.description,
        "address": alert.address,
        "tap_count": alert.tap_count,
        "tap_frequency": alert.tap_frequency,
        "severity_score": alert.severity_score,
        "status": alert.status,
        "created_at": alert.created_at,
        "updated_at": alert.updated_at,
        "last_tap_at": alert.last_tap_at,
        "resolved_at": alert.resolved_at,
        "media_storage_id": alert.media_storage_id,
        "media_url": alert.media_url,
        "is_recording": alert.is_recording,
        "is_streaming": alert.is_streaming,
    }


# ═══════════════════════════════════════════════════════════════════════════
# Stores
# ═══════════════════════════════════════════════════════════════════════════

class _SqlBase:
    def __init__(self, engine: Engine, factory: Optional[sessionmaker] = None) -> None:
        self.engine = engine
        self._factory = factory or make_session_factory(engine)


class SqlAlertStore(_SqlBase):
    """AlertStore over the emergency_alerts / emergency_taps tables."""

    def insert_alert(self, alert: Alert, first_tap: Tap) -> str:
        with session_scope(self._factory) as session:
            session.add(AlertRow.from_alert(alert))
            session.flush()
            session.add(TapRow.from_tap(first_tap))
        return alert.alert_id

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with session_scope(self._factory) as session:
            row = session.get(AlertRow, alert_id)
            return row.to_alert() if row else None

    def patch_alert(self, alert_id: str, fields: Dict[str, Any]) -> Alert:
        with session_scope(self._factory) as session:
            return self._patch(session, alert_id, fields)

    def insert_tap(self, tap: Tap) -> None:
        with session_scope(self._factory) as session:
            if session.get(AlertRow, tap.alert_id) is None:
                raise NotFoundError("Alert", alert_id=tap.alert_id)
            session.add(TapRow.from_tap(tap))

    def list_taps(self, alert_id: str, since: Optional[datetime] = None) -> List[Tap]:
        stmt = select(TapRow).where(TapRow.alert_id == alert_id)
        if since is not None:
            stmt = stmt.where(TapRow.timestamp > since)
        stmt = stmt.order_by(TapRow.timestamp)
        with session_scope(self._factory) as session:
            return [row.to_tap() for row in session.scalars(stmt)]

    def list_alerts(
        self,
        *,
        reporter_id: Optional[str] = None,
        statuses: Optional[Iterable[AlertStatus]] = None,
        created_since: Optional[datetime] = None,
    ) -> List[Alert]:
        stmt = select(AlertRow)
        if reporter_id is not None:
            stmt = stmt.where(AlertRow.reporter_id == reporter_id)
        if statuses is not None:
            stmt = stmt.where(AlertRow.status.in_([AlertStatus(s).value for s in statuses]))
        if created_since is not None:
            stmt = stmt.where(AlertRow.created_at >= created_since)
        stmt = stmt.order_by(AlertRow.created_at.desc())
        with session_scope(self._factory) as session:
            return [row.to_alert() for row in session.scalars(stmt)]

    def commit_tap(self, tap: Tap, rescore: Rescore) -> Tuple[Alert, Alert]:
        with session_scope(self._factory) as session:
            # Write to the alert row before reading anything: this takes the
            # row lock (database write lock on SQLite), so the tap log read
            # below cannot be overtaken by another writer.
            claimed = session.execute(
                update(AlertRow)
                .where(AlertRow.alert_id == tap.alert_id)
                .values(updated_at=tap.timestamp)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 0:
                raise NotFoundError("Alert", alert_id=tap.alert_id)

            row = session.get(AlertRow, tap.alert_id)
            before = row.to_alert()
            session.add(TapRow.from_tap(tap))
            session.flush()

            taps = [
                r.to_tap() for r in session.scalars(
                    select(TapRow)
                    .where(TapRow.alert_id == tap.alert_id)
                    .order_by(TapRow.timestamp)
                )
            ]
            row.apply(rescore(before, taps))
            session.flush()
            return before, row.to_alert()

    @staticmethod
    def _patch(session: Session, alert_id: str, fields: Dict[str, Any]) -> Alert:
        row = session.get(AlertRow, alert_id)
        if row is None:
            raise NotFoundError("Alert", alert_id=alert_id)
        row.apply(fields)
        session.flush()
        return row.to_alert()


class SqlNotificationInbox(_SqlBase):
    """NotificationInbox over the notifications table."""

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
        with session_scope(self._factory) as session:
            session.add(NotificationRow(
                notification_id=notification.notification_id,
                recipient_id=recipient_id,
                type=notification.type.value,
                title=title,
                message=message,
                read=False,
                created_at=notification.created_at,
                meta=notification.metadata,
            ))
        return notification

    def get(self, notification_id: str) -> Optional[Notification]:
        with session_scope(self._factory) as session:
            row = session.get(NotificationRow, notification_id)
            return row.to_notification() if row else None

    def list_for(self, recipient_id: str, *, unread_only: bool = False) -> List[Notification]:
        stmt = select(NotificationRow).where(NotificationRow.recipient_id == recipient_id)
        if unread_only:
            stmt = stmt.where(NotificationRow.read.is_(False))
        stmt = stmt.order_by(NotificationRow.created_at.desc())
        with session_scope(self._factory) as session:
            return [row.to_notification() for row in session.scalars(stmt)]

    def mark_read(self, notification_id: str) -> None:
        with session_scope(self._factory) as session:
            row = session.get(NotificationRow, notification_id)
            if row is None:
                raise NotFoundError("Notification", notification_id=notification_id)
            row.read = True

    def delete(self, notification_id: str) -> None:
        with session_scope(self._factory) as session:
            row = session.get(NotificationRow, notification_id)
            if row is None:
                raise NotFoundError("Notification", notification_id=notification_id)
            session.delete(row)


class SqlLocationDirectory(_SqlBase):
    """LocationDirectory over the user_locations table."""

    def snapshot(self) -> Dict[str, Optional[Coordinate]]:
        with session_scope(self._factory) as session:
            rows = session.scalars(select(UserLocationRow)).all()
            return {
                row.identity: (
                    Coordinate(row.latitude, row.longitude, row.accuracy)
                    if row.latitude is not None and row.longitude is not None
                    else None
                )
                for row in rows
            }

    def update(
        self, identity: str, coordinate: Coordinate, *, now: Optional[datetime] = None,
    ) -> None:
        now = now or utc_now()
        with session_scope(self._factory) as session:
            row = session.get(UserLocationRow, identity)
            if row is None:
                row = UserLocationRow(identity=identity, registered_at=now)
                session.add(row)
            row.latitude = coordinate.latitude
            row.longitude = coordinate.longitude
            row.accuracy = coordinate.accuracy
            row.updated_at = now

    def register(self, identity: str, *, now: Optional[datetime] = None) -> None:
        """Add an identity without a known location."""
        with session_scope(self._factory) as session:
            if session.get(UserLocationRow, identity) is None:
                session.add(UserLocationRow(identity=identity, registered_at=now or utc_now()))

    def registered_at(self, identity: str) -> Optional[datetime]:
        with session_scope(self._factory) as session:
            row = session.get(UserLocationRow, identity)
            return row.registered_at if row else None
