"""FastAPI routes for messages: send, history, edit, retract, read, reactions, pins."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Query, status

from portal.domain.messaging import schemas
from portal.domain.messaging.messages import message_service
from portal.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(prefix="/messages", tags=["messages"])


@router.get("/conversation/{conversation_id}", response_model=schemas.MessageListResponse)
async def conversation_history_endpoint(
	conversation_id: str,
	page: int = Query(default=1, ge=1),
	limit: Optional[int] = Query(default=None, ge=1),
	sort_by: str = Query(default="createdAt", alias="sortBy"),
	sort_order: str = Query(default="desc", alias="sortOrder"),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MessageListResponse:
	return await message_service.history(
		auth_user.id,
		conversation_id,
		page=page,
		limit=limit,
		sort_by=sort_by,
		sort_order=sort_order,
	)


@router.post(
	"/conversation/{conversation_id}",
	response_model=schemas.MessageEnvelope,
	status_code=status.HTTP_201_CREATED,
)
async def send_message_endpoint(
	conversation_id: str,
	payload: schemas.SendMessageRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MessageEnvelope:
	return await message_service.send(auth_user.id, conversation_id, payload, transport="rest")


@router.post("/read/{conversation_id}", response_model=schemas.ReadResponse)
async def mark_read_endpoint(
	conversation_id: str,
	payload: Optional[schemas.MarkReadRequest] = Body(default=None),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ReadResponse:
	up_to = payload.message_id if payload else None
	return await message_service.mark_read(auth_user.id, conversation_id, up_to)


@router.get("/{message_id}/context", response_model=schemas.MessageContextResponse)
async def message_context_endpoint(
	message_id: str,
	context_size: Optional[int] = Query(default=None, alias="contextSize", ge=0),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MessageContextResponse:
	return await message_service.context(auth_user.id, message_id, context_size=context_size)


@router.patch("/{message_id}", response_model=schemas.MessageEnvelope)
async def edit_message_endpoint(
	message_id: str,
	payload: schemas.EditMessageRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MessageEnvelope:
	return await message_service.edit(auth_user.id, message_id, payload.content)


@router.delete("/{message_id}", response_model=schemas.MessageEnvelope)
async def delete_message_endpoint(
	message_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MessageEnvelope:
	return await message_service.retract(auth_user.id, message_id)


@router.post("/{message_id}/reactions", response_model=schemas.MessageEnvelope)
async def toggle_reaction_endpoint(
	message_id: str,
	payload: schemas.ReactionRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MessageEnvelope:
	return await message_service.toggle_reaction(auth_user.id, message_id, payload.emoji)


@router.post("/{message_id}/pin", response_model=schemas.MessageEnvelope)
async def toggle_pin_endpoint(
	message_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MessageEnvelope:
	return await message_service.toggle_pin(auth_user.id, message_id)


@router.post("/{message_id}/forward", response_model=schemas.MessageEnvelope, status_code=status.HTTP_201_CREATED)
async def forward_message_endpoint(
	message_id: str,
	payload: schemas.ForwardRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MessageEnvelope:
	return await message_service.forward(auth_user.id, message_id, payload.conversation_id)
