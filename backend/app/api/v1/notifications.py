"""
FastAPI routes: the caller's notification inbox.

    GET    /api/v1/notifications               — all, newest first
    GET    /api/v1/notifications/unread        — unread only
    GET    /api/v1/notifications/unread/count  — unread badge count
    POST   /api/v1/notifications/{id}/read     — mark one read
    POST   /api/v1/notifications/read-all      — mark all read
    DELETE /api/v1/notifications/{id}          — delete one
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends

from backend.app.api.deps import Services, get_caller_id, get_services

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


@router.get("")
def list_notifications(
    caller_id: Optional[str] = Depends(get_caller_id),
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    return [n.to_dict() for n in services.notifications.list_notifications(caller_id)]


@router.get("/unread")
def list_unread(
    caller_id: Optional[str] = Depends(get_caller_id),
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    return [n.to_dict() for n in services.notifications.list_unread(caller_id)]


@router.get("/unread/count")
def unread_count(
    caller_id: Optional[str] = Depends(get_caller_id),
    services: Services = Depends(get_services),
) -> Dict[str, int]:
    return {"unread": services.notifications.unread_count(caller_id)}


@router.post("/read-all")
def mark_all_read(
    caller_id: Optional[str] = Depends(get_caller_id),
    services: Services = Depends(get_services),
) -> Dict[str, int]:
    return {"marked": services.notifications.mark_all_read(caller_id)}


@router.post("/{notification_id}/read", status_code=204)
def mark_read(
    notification_id: str,
    caller_id: Optional[str] = Depends(get_caller_id),
    services: Services = Depends(get_services),
) -> None:
    services.notifications.mark_read(caller_id, notification_id)


@router.delete("/{notification_id}", status_code=204)
def delete_notification(
    notification_id: str,
    caller_id: Optional[str] = Depends(get_caller_id),
    services: Services = Depends(get_services),
) -> None:
    services.notifications.delete(caller_id, notification_id)
