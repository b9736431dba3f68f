"""
FastAPI routes: caller profile data used by the escalation engine.

    PUT /api/v1/users/me/location — report the caller's current location
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from backend.app.alerts.notifications import update_location
from backend.app.api.deps import Services, get_caller_id, get_services, location_from
from backend.app.api.schemas import LocationInput

router = APIRouter(prefix="/api/v1/users", tags=["users"])


@router.put("/me/location")
def put_my_location(
    body: LocationInput,
    caller_id: Optional[str] = Depends(get_caller_id),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    coordinate = location_from(body)
    update_location(services.locations, caller_id, coordinate)
    return {"identity": caller_id, "location": coordinate.to_dict()}
