"""
Pydantic schemas for the escalation API.

Separated from the route handlers so they are reusable across
the codebase (background workers, tests).

Coordinates are range-checked by the domain layer rather than by Field
bounds so that a bad location surfaces as INVALID_LOCATION, not as a
generic validation error.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from backend.app.alerts.models import AlertStatus


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class LocationInput(BaseModel):
    """A device location from browser geolocation or manual entry."""
    latitude: Optional[float] = Field(
        None, description="Latitude in decimal degrees", examples=[13.0827],
    )
    longitude: Optional[float] = Field(
        None, description="Longitude in decimal degrees", examples=[80.2707],
    )
    accuracy: Optional[float] = Field(
        None, ge=0, description="GPS accuracy in metres", examples=[12.5],
    )


class CreateAlertRequest(BaseModel):
    """Body for POST /api/v1/alerts — the first tap on a new incident."""
    location: LocationInput
    title: Optional[str] = Field(None, max_length=256, examples=["Building fire"])
    description: Optional[str] = Field(None, max_length=4000)
    address: Optional[str] = Field(None, max_length=512, examples=["12 Anna Salai, Chennai"])


class TapRequest(BaseModel):
    """Body for POST /api/v1/alerts/{id}/taps."""
    location: LocationInput


class StatusUpdateRequest(BaseModel):
    status: AlertStatus = Field(..., examples=["resolved"])


class RecordingStateRequest(BaseModel):
    is_recording: bool
    is_streaming: Optional[bool] = None


class MediaAttachRequest(BaseModel):
    storage_id: str = Field(..., min_length=1, examples=["media/ALR-0001/clip.mp4"])
    media_url: str = Field(..., min_length=1, examples=["https://cdn.example.com/clip.mp4"])
