"""Operations endpoints: health checks, Prometheus metrics and presence lookups."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from portal.domain.messaging import policy, schemas
from portal.domain.messaging.presence import presence_tracker
from portal.infra.auth import AuthenticatedUser, get_current_user
from portal.obs import health

router = APIRouter(prefix="", tags=["ops"])


@router.get("/health")
async def health_live() -> dict[str, str]:
	return await health.liveness()


@router.get("/ready")
async def health_ready() -> Response:
	status_code, payload = await health.readiness()
	return JSONResponse(status_code=status_code, content=payload)


@router.get("/metrics")
async def prometheus_metrics() -> Response:
	return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/presence/{user_id}", response_model=schemas.PresenceDTO)
async def presence_endpoint(
	user_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.PresenceDTO:
	presence = await presence_tracker.get(policy.clean_id(user_id, field="user_id"))
	return schemas.PresenceDTO.from_model(presence)
