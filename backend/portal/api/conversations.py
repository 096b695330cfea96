"""FastAPI routes for conversations, membership and the recent-conversations inbox."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from portal.domain.messaging import schemas
from portal.domain.messaging.conversations import conversation_service
from portal.domain.messaging.messages import message_service
from portal.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(prefix="/conversations", tags=["conversations"])


@router.post("", response_model=schemas.ConversationEnvelope, status_code=status.HTTP_201_CREATED)
async def create_conversation_endpoint(
	payload: schemas.ConversationCreateRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ConversationEnvelope:
	return await conversation_service.create(auth_user.id, payload)


@router.get("", response_model=schemas.ConversationListResponse)
async def list_conversations_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ConversationListResponse:
	return await conversation_service.list(auth_user.id)


@router.get("/recent", response_model=schemas.InboxListResponse)
async def recent_conversations_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.InboxListResponse:
	return await conversation_service.recent(auth_user.id)


@router.patch("/recent/{conversation_id}", response_model=schemas.InboxEntryEnvelope)
async def update_recent_endpoint(
	conversation_id: str,
	payload: schemas.InboxSettingsRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.InboxEntryEnvelope:
	return await conversation_service.update_recent(auth_user.id, conversation_id, payload)


@router.delete("/recent/{conversation_id}", response_model=schemas.OkResponse)
async def remove_recent_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.OkResponse:
	return await conversation_service.remove_from_recent(auth_user.id, conversation_id)


@router.get("/{conversation_id}", response_model=schemas.ConversationEnvelope)
async def get_conversation_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ConversationEnvelope:
	return await conversation_service.get(auth_user.id, conversation_id)


@router.patch("/{conversation_id}", response_model=schemas.ConversationEnvelope)
async def update_conversation_endpoint(
	conversation_id: str,
	payload: schemas.ConversationUpdateRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ConversationEnvelope:
	return await conversation_service.update(auth_user.id, conversation_id, payload)


@router.delete("/{conversation_id}", response_model=schemas.OkResponse)
async def delete_conversation_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.OkResponse:
	return await conversation_service.delete(auth_user.id, conversation_id)


@router.delete("/{conversation_id}/clear", response_model=schemas.ClearHistoryResponse)
async def clear_conversation_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ClearHistoryResponse:
	return await conversation_service.clear(auth_user.id, conversation_id)


@router.post("/{conversation_id}/members", response_model=schemas.MembersAddedResponse)
async def add_members_endpoint(
	conversation_id: str,
	payload: schemas.AddMembersRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MembersAddedResponse:
	return await conversation_service.add_members(auth_user.id, conversation_id, payload.user_ids)


@router.delete("/{conversation_id}/members/{member_id}", response_model=schemas.OkResponse)
async def remove_member_endpoint(
	conversation_id: str,
	member_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.OkResponse:
	return await conversation_service.remove_member(auth_user.id, conversation_id, member_id)


@router.patch("/{conversation_id}/members/{member_id}", response_model=schemas.ConversationEnvelope)
async def update_member_role_endpoint(
	conversation_id: str,
	member_id: str,
	payload: schemas.MemberRoleRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ConversationEnvelope:
	return await conversation_service.update_member_role(auth_user.id, conversation_id, member_id, payload.role)


@router.post("/{conversation_id}/leave", response_model=schemas.OkResponse)
async def leave_conversation_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.OkResponse:
	return await conversation_service.leave(auth_user.id, conversation_id)


@router.get("/{conversation_id}/pinned", response_model=schemas.PinnedMessagesResponse)
async def pinned_messages_endpoint(
	conversation_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.PinnedMessagesResponse:
	return await message_service.list_pinned(auth_user.id, conversation_id)
