"""
FastAPI dependencies — service wiring and caller identity.

The service container is built once at startup (see ``main.lifespan``)
and stored on ``app.state``; routes receive it through ``get_services``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.engine import Engine

from backend.app.alerts.alert_service import AlertAggregator, to_coordinate
from backend.app.alerts.notifications import NotificationService
from backend.app.alerts.store import (
    InMemoryAlertStore,
    InMemoryLocationDirectory,
    InMemoryNotificationInbox,
    LocationDirectory,
)
from backend.app.api.schemas import LocationInput
from backend.app.core.config import Settings
from backend.app.core.database import create_db_engine, init_db
from backend.app.spatial.radius_utils import Coordinate

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a request handler needs."""
    aggregator: AlertAggregator
    notifications: NotificationService
    locations: LocationDirectory
    engine: Optional[Engine] = None


def build_services(settings: Settings) -> Services:
    """Wire stores and services for the configured backend."""
    backend = settings.STORE_BACKEND.lower()

    if backend == "sql":
        from backend.app.alerts.sql_store import (
            SqlAlertStore,
            SqlLocationDirectory,
            SqlNotificationInbox,
        )

        engine = create_db_engine(settings.DATABASE_URL)
        init_db(engine)
        store = SqlAlertStore(engine)
        inbox = SqlNotificationInbox(engine)
        locations = SqlLocationDirectory(engine)
    elif backend == "memory":
        engine = None
        store = InMemoryAlertStore()
        inbox = InMemoryNotificationInbox()
        locations = InMemoryLocationDirectory()
    else:
        raise ValueError(f"Unknown STORE_BACKEND '{settings.STORE_BACKEND}'. Must be memory or sql")

    logger.info("Store backend: %s", backend)
    return Services(
        aggregator=AlertAggregator.from_settings(store, inbox, locations, settings),
        notifications=NotificationService(inbox),
        locations=locations,
        engine=engine,
    )


class HeaderIdentityProvider:
    """IdentityProvider reading the caller from a request header."""

    def __init__(self, request: Request, header: str) -> None:
        self._request = request
        self._header = header

    def current_identity(self) -> Optional[str]:
        value = self._request.headers.get(self._header, "").strip()
        return value or None


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_caller_id(request: Request) -> Optional[str]:
    """The calling identity, or None for an anonymous request."""
    header = request.app.state.settings.IDENTITY_HEADER
    return HeaderIdentityProvider(request, header).current_identity()


def get_aggregator(services: Services = Depends(get_services)) -> AlertAggregator:
    return services.aggregator


def location_from(body: Optional[LocationInput]) -> Coordinate:
    """Validate a request location into a Coordinate (InvalidLocationError on failure)."""
    if body is None:
        return to_coordinate(None, None)
    return to_coordinate(body.latitude, body.longitude, body.accuracy)
