"""Shared fixtures: in-memory collaborators and an aggregator over them."""

from __future__ import annotations

import pytest

from backend.app.alerts.alert_service import AlertAggregator
from backend.app.alerts.store import (
    InMemoryAlertStore,
    InMemoryLocationDirectory,
    InMemoryNotificationInbox,
)


@pytest.fixture
def store() -> InMemoryAlertStore:
    return InMemoryAlertStore()


@pytest.fixture
def inbox() -> InMemoryNotificationInbox:
    return InMemoryNotificationInbox()


@pytest.fixture
def directory() -> InMemoryLocationDirectory:
    return InMemoryLocationDirectory()


@pytest.fixture
def aggregator(store, inbox, directory) -> AlertAggregator:
    return AlertAggregator(store, inbox, directory)
