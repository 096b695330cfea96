"""Conversation lifecycle, membership and inbox settings.

REST routes and socket handlers both call into `ConversationService`; neither
transport touches the store directly. Room subscriptions and events are only
issued after the store call has returned.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional

import ulid

from portal.domain.messaging import fanout, inbox, models, policy, schemas
from portal.domain.messaging.exceptions import InvalidOperation, NotFoundError, ValidationError
from portal.domain.messaging.notifications import NotificationGateway, notification_gateway
from portal.domain.messaging.repo import get_repository
from portal.obs import logging as obs_logging
from portal.obs import metrics as obs_metrics

_LOG = obs_logging.get_logger("portal.messaging.conversations")


def _now() -> datetime:
	return datetime.now(timezone.utc)


def _conversation_payload(conversation: models.Conversation) -> dict:
	return schemas.ConversationDTO.from_model(conversation).wire()


class ConversationService:
	def __init__(self, *, notifications: NotificationGateway | None = None) -> None:
		self._notifications = notifications or notification_gateway

	@property
	def repo(self):
		return get_repository()

	async def _load(self, conversation_id: str) -> models.Conversation:
		conversation_id = policy.clean_id(conversation_id, field="conversation_id")
		return policy.ensure_active(await self.repo.get_conversation(conversation_id))

	# --- Create / read ----------------------------------------------------

	async def create(
		self,
		actor_id: str,
		payload: schemas.ConversationCreateRequest,
	) -> schemas.ConversationEnvelope:
		actor = policy.require_actor(actor_id)
		if payload.type == models.DIRECT:
			conversation, created = await self._create_direct(actor, payload.participants)
		elif payload.type == models.GROUP:
			conversation, created = await self._create_group(actor, payload)
		else:
			raise ValidationError("invalid_conversation_type")
		obs_metrics.inc_conversation_created(conversation.type, created=created)
		if created:
			participant_ids = conversation.participant_ids()
			await fanout.subscribe(participant_ids, conversation.id)
			await fanout.to_users(participant_ids, "conversationCreated", _conversation_payload(conversation))
			_LOG.info(
				"messaging.conversation_created",
				extra={"conversation_id": conversation.id, "type": conversation.type},
			)
		return schemas.ConversationEnvelope(conversation=schemas.ConversationDTO.from_model(conversation))

	async def _create_direct(self, actor: str, raw_ids: List[str]) -> tuple[models.Conversation, bool]:
		ids = policy.clean_ids(raw_ids, field="participants")
		if len(ids) != len(raw_ids):
			raise ValidationError("duplicate_participants")
		others = [user_id for user_id in ids if user_id != actor]
		if not others:
			raise ValidationError("cannot_message_self")
		if len(others) != 1:
			raise ValidationError("direct_requires_one_participant")
		peer = others[0]
		now = _now()
		conversation = models.Conversation(
			id=str(ulid.new()),
			type=models.DIRECT,
			created_by=actor,
			participants=[
				models.Participant(user_id=actor, role=models.MEMBER, joined_at=now, last_seen=now),
				models.Participant(user_id=peer, role=models.MEMBER, joined_at=now, last_seen=now),
			],
			created_at=now,
			last_activity=now,
		)
		return await self.repo.create_conversation(conversation, pair_key=models.direct_key(actor, peer))

	async def _create_group(
		self,
		actor: str,
		payload: schemas.ConversationCreateRequest,
	) -> tuple[models.Conversation, bool]:
		others = [user_id for user_id in policy.clean_ids(payload.participants, field="participants") if user_id != actor]
		if not others:
			raise ValidationError("group_requires_participants")
		now = _now()
		conversation = models.Conversation(
			id=str(ulid.new()),
			type=models.GROUP,
			created_by=actor,
			participants=[models.Participant(user_id=actor, role=models.OWNER, joined_at=now, last_seen=now)]
			+ [models.Participant(user_id=uid, role=models.MEMBER, joined_at=now, last_seen=now) for uid in others],
			created_at=now,
			last_activity=now,
			name=(payload.name or "").strip() or None,
			description=(payload.description or "").strip() or None,
			group_image=payload.group_image,
		)
		policy.ensure_capacity(conversation, 0)
		return await self.repo.create_conversation(conversation)

	async def get(self, actor_id: str, conversation_id: str) -> schemas.ConversationEnvelope:
		actor = policy.require_actor(actor_id)
		conversation_id = policy.clean_id(conversation_id, field="conversation_id")
		conversation = policy.ensure_visible(await self.repo.get_conversation(conversation_id), actor)
		return schemas.ConversationEnvelope(conversation=schemas.ConversationDTO.from_model(conversation))

	async def list(self, actor_id: str) -> schemas.ConversationListResponse:
		actor = policy.require_actor(actor_id)
		conversations = await self.repo.list_conversations(actor)
		return schemas.ConversationListResponse(
			conversations=[schemas.ConversationDTO.from_model(c) for c in conversations],
		)

	async def require_membership(self, actor_id: str, conversation_id: str) -> models.Conversation:
		actor = policy.require_actor(actor_id)
		conversation = await self._load(conversation_id)
		policy.ensure_participant(conversation, actor)
		return conversation

	async def membership_ids(self, user_id: str) -> List[str]:
		"""Conversation ids a user's channels should be subscribed to."""
		return [conversation.id for conversation in await self.repo.list_conversations(user_id)]

	# --- Membership -------------------------------------------------------

	async def add_members(
		self,
		actor_id: str,
		conversation_id: str,
		user_ids: List[str],
	) -> schemas.MembersAddedResponse:
		actor = policy.require_actor(actor_id)
		conversation = await self._load(conversation_id)
		policy.ensure_group(conversation)
		policy.ensure_manager(conversation, actor)
		requested = policy.clean_ids(user_ids)
		new_ids = [user_id for user_id in requested if not conversation.is_participant(user_id)]
		if not new_ids:
			raise InvalidOperation("no_new_members")
		policy.ensure_capacity(conversation, len(new_ids))
		now = _now()
		added = await self.repo.add_members(
			conversation.id,
			[models.Participant(user_id=uid, role=models.MEMBER, joined_at=now, last_seen=now) for uid in new_ids],
		)
		if not added:
			raise InvalidOperation("no_new_members")
		updated = policy.ensure_active(await self.repo.get_conversation(conversation.id))
		await fanout.subscribe(added, updated.id)
		await fanout.to_conversation(
			updated.id,
			"groupMembersAdded",
			{"conversationId": updated.id, "newMembers": added, "addedBy": actor, "conversation": _conversation_payload(updated)},
		)
		await fanout.inbox_updated(
			entry for entry in await self.repo.inbox_entries(updated.id) if entry.user_id in added
		)
		await self._notifications.members_added(updated.id, actor, added)
		return schemas.MembersAddedResponse(
			conversation=schemas.ConversationDTO.from_model(updated),
			new_members=added,
		)

	async def remove_member(self, actor_id: str, conversation_id: str, member_id: str) -> schemas.OkResponse:
		actor = policy.require_actor(actor_id)
		conversation = await self._load(conversation_id)
		member_id = policy.clean_id(member_id, field="member_id")
		policy.ensure_group(conversation)
		policy.ensure_can_remove(conversation, actor, member_id)
		if not await self.repo.remove_member(conversation.id, member_id):
			raise NotFoundError("member_not_found")
		await fanout.to_conversation(
			conversation.id,
			"groupMemberRemoved",
			{"conversationId": conversation.id, "userId": member_id, "removedBy": actor},
		)
		await fanout.unsubscribe([member_id], conversation.id)
		return schemas.OkResponse(message="member_removed")

	async def leave(self, actor_id: str, conversation_id: str) -> schemas.OkResponse:
		actor = policy.require_actor(actor_id)
		conversation_id = policy.clean_id(conversation_id, field="conversation_id")
		conversation = policy.ensure_visible(await self.repo.get_conversation(conversation_id), actor)
		if conversation.is_direct:
			await self._purge(conversation, reason="direct_leave", actor=actor)
			return schemas.OkResponse(message="conversation_deleted")
		participant = policy.ensure_participant(conversation, actor)
		if participant.role == models.OWNER:
			raise InvalidOperation("owner_cannot_leave")
		await self.repo.remove_member(conversation.id, actor)
		await fanout.to_conversation(
			conversation.id,
			"userLeftGroup",
			{"conversationId": conversation.id, "userId": actor},
		)
		await fanout.unsubscribe([actor], conversation.id)
		return schemas.OkResponse(message="left_conversation")

	async def update_member_role(
		self,
		actor_id: str,
		conversation_id: str,
		member_id: str,
		role: str,
	) -> schemas.ConversationEnvelope:
		actor = policy.require_actor(actor_id)
		conversation = await self._load(conversation_id)
		member_id = policy.clean_id(member_id, field="member_id")
		policy.ensure_group(conversation)
		policy.ensure_owner(conversation, actor)
		if role not in models.ROLES:
			raise ValidationError("invalid_role")
		if conversation.participant(member_id) is None:
			raise NotFoundError("member_not_found")
		if member_id == actor:
			raise InvalidOperation("cannot_change_own_role")
		if role == models.OWNER:
			updated = await self.repo.transfer_ownership(conversation.id, actor, member_id)
		else:
			updated = await self.repo.update_member_role(conversation.id, member_id, role)
		await fanout.to_conversation(
			updated.id,
			"memberRoleUpdated",
			{
				"conversationId": updated.id,
				"userId": member_id,
				"role": role,
				"updatedBy": actor,
				"conversation": _conversation_payload(updated),
			},
		)
		return schemas.ConversationEnvelope(conversation=schemas.ConversationDTO.from_model(updated))

	# --- Conversation-wide operations -------------------------------------

	async def delete(self, actor_id: str, conversation_id: str) -> schemas.OkResponse:
		actor = policy.require_actor(actor_id)
		conversation = await self._load(conversation_id)
		policy.ensure_can_delete(conversation, actor)
		await self._purge(conversation, reason="deleted", actor=actor)
		return schemas.OkResponse(message="conversation_deleted")

	async def _purge(self, conversation: models.Conversation, *, reason: str, actor: str) -> List[str]:
		"""Hard-delete the conversation, its messages and every inbox entry."""
		former = await self.repo.purge_conversation(conversation.id)
		obs_metrics.inc_conversation_purged(reason)
		_LOG.info(
			"messaging.conversation_purged",
			extra={"conversation_id": conversation.id, "reason": reason},
		)
		recipients = former or conversation.participant_ids()
		await fanout.to_users(
			recipients,
			"conversationDeleted",
			{"conversationId": conversation.id, "deletedBy": actor},
		)
		await fanout.close_conversation(conversation.id)
		return recipients

	async def clear(self, actor_id: str, conversation_id: str) -> schemas.ClearHistoryResponse:
		actor = policy.require_actor(actor_id)
		conversation = await self._load(conversation_id)
		policy.ensure_can_clear(conversation, actor)
		deleted = await self.repo.clear_history(conversation.id, _now())
		await fanout.to_conversation(
			conversation.id,
			"conversationCleared",
			{"conversationId": conversation.id, "clearedBy": actor, "messagesDeleted": deleted},
		)
		await fanout.inbox_updated(await self.repo.inbox_entries(conversation.id))
		return schemas.ClearHistoryResponse(messages_deleted=deleted)

	async def update(
		self,
		actor_id: str,
		conversation_id: str,
		payload: schemas.ConversationUpdateRequest,
	) -> schemas.ConversationEnvelope:
		actor = policy.require_actor(actor_id)
		conversation = await self._load(conversation_id)
		policy.ensure_group(conversation)
		policy.ensure_manager(conversation, actor)
		changes: Dict[str, Optional[str]] = {}
		if "name" in payload.model_fields_set:
			name = (payload.name or "").strip()
			if not name:
				raise ValidationError("name_required")
			changes["name"] = name
		if "description" in payload.model_fields_set:
			changes["description"] = (payload.description or "").strip() or None
		if "group_image" in payload.model_fields_set:
			changes["group_image"] = payload.group_image or None
		if not changes:
			raise ValidationError("no_changes")
		updated = await self.repo.update_conversation(conversation.id, changes, _now())
		await fanout.to_conversation(updated.id, "conversationUpdated", _conversation_payload(updated))
		return schemas.ConversationEnvelope(conversation=schemas.ConversationDTO.from_model(updated))

	# --- Inbox ------------------------------------------------------------

	async def recent(self, actor_id: str) -> schemas.InboxListResponse:
		actor = policy.require_actor(actor_id)
		items = inbox.sort_items(await self.repo.list_inbox(actor))
		return schemas.InboxListResponse(conversations=[schemas.InboxItemDTO.from_item(item) for item in items])

	async def update_recent(
		self,
		actor_id: str,
		conversation_id: str,
		payload: schemas.InboxSettingsRequest,
	) -> schemas.InboxEntryEnvelope:
		actor = policy.require_actor(actor_id)
		conversation_id = policy.clean_id(conversation_id, field="conversation_id")
		policy.ensure_visible(await self.repo.get_conversation(conversation_id), actor)
		fields = payload.model_fields_set
		changes: Dict[str, object] = {}
		if "is_pinned" in fields:
			if payload.is_pinned is None:
				raise ValidationError("invalid_is_pinned")
			changes["is_pinned"] = payload.is_pinned
		if "muted_until" in fields:
			changes["muted_until"] = policy.normalize_muted_until(payload.muted_until)
			if "is_muted" not in fields:
				changes["is_muted"] = payload.muted_until is not None
		if "is_muted" in fields:
			if payload.is_muted is None:
				raise ValidationError("invalid_is_muted")
			changes["is_muted"] = payload.is_muted
			if not payload.is_muted:
				changes["muted_until"] = None
		if not changes:
			raise ValidationError("no_changes")
		entry = await self.repo.update_inbox_settings(actor, conversation_id, changes, _now())
		if entry is None:
			raise NotFoundError("recent_conversation_not_found")
		await fanout.inbox_updated([entry])
		return schemas.InboxEntryEnvelope(conversation=schemas.InboxEntryDTO.from_model(entry))

	async def remove_from_recent(self, actor_id: str, conversation_id: str) -> schemas.OkResponse:
		actor = policy.require_actor(actor_id)
		conversation_id = policy.clean_id(conversation_id, field="conversation_id")
		conversation = policy.ensure_visible(await self.repo.get_conversation(conversation_id), actor)
		if conversation.is_direct:
			await self._purge(conversation, reason="direct_removed_from_recent", actor=actor)
			return schemas.OkResponse(message="conversation_deleted")
		if not await self.repo.remove_inbox_entry(actor, conversation.id):
			raise NotFoundError("recent_conversation_not_found")
		return schemas.OkResponse(message="removed_from_recent")


conversation_service = ConversationService()
