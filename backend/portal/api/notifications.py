"""FastAPI routes for in-app notifications."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from portal.domain.messaging import schemas
from portal.domain.messaging.notifications import notification_service
from portal.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=schemas.NotificationListResponse)
async def list_notifications_endpoint(
	limit: int = Query(default=20, ge=1, le=100),
	unread_only: bool = Query(default=False, alias="unreadOnly"),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.NotificationListResponse:
	return await notification_service.list(auth_user.id, limit=limit, unread_only=unread_only)


@router.get("/unread-count", response_model=schemas.UnreadCountResponse)
async def unread_count_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.UnreadCountResponse:
	return await notification_service.unread_count(auth_user.id)


@router.post("/{notification_id}/read", response_model=schemas.NotificationEnvelope)
async def mark_notification_read_endpoint(
	notification_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.NotificationEnvelope:
	return await notification_service.mark_read(auth_user.id, notification_id)
