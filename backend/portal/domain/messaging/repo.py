"""Async repository for the messaging domain backed by asyncpg.

Tables are normalized (conversation_members, inbox_entries, message_reads,
message_reactions, message_edits), so every mutation is a targeted row update.
Operations touching more than one table run in a single transaction; sends,
reads and history clears lock the conversation row first, which serializes
them per conversation and keeps `seq` equal to commit order.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import asyncpg

from portal.domain.messaging import inbox, models
from portal.domain.messaging.exceptions import NotFoundError
from portal.domain.messaging.memory import MemoryRepository
from portal.infra.postgres import get_pool
from portal.settings import settings

_CONVERSATION_COLUMNS = {
	"name": "name",
	"description": "description",
	"group_image": "group_image",
}

_INBOX_COLUMNS = {
	"is_pinned": "is_pinned",
	"is_muted": "is_muted",
	"muted_until": "muted_until",
}

_MESSAGE_SELECT = """
	SELECT id, conversation_id, seq, sender_id, content, attachments, reply_to, mentions, status,
		is_edited, is_pinned, forward_info, created_at, updated_at, deleted_at
	FROM messages
"""


def _load_json(raw, default):
	if raw is None:
		return default
	if isinstance(raw, str):
		return json.loads(raw) if raw else default
	return raw


def _rows_affected(status: str) -> int:
	try:
		return int(status.split()[-1])
	except (ValueError, IndexError):
		return 0


class MessagingRepository:
	"""Thin data-access layer around asyncpg."""

	# --- Inbox projection -------------------------------------------------

	async def _apply_inbox(
		self,
		conn: asyncpg.Connection,
		conversation_id: str,
		mutations: Sequence[inbox.InboxMutation],
		now: datetime,
	) -> None:
		# consecutive mutations of one kind go out as a single executemany
		batch: List[inbox.InboxMutation] = []
		for mutation in mutations:
			if batch and batch[-1].op != mutation.op:
				await self._apply_inbox_batch(conn, conversation_id, batch, now)
				batch = []
			batch.append(mutation)
		if batch:
			await self._apply_inbox_batch(conn, conversation_id, batch, now)

	async def _apply_inbox_batch(
		self,
		conn: asyncpg.Connection,
		conversation_id: str,
		batch: Sequence[inbox.InboxMutation],
		now: datetime,
	) -> None:
		op = batch[0].op
		if op == inbox.ENSURE:
			await conn.executemany(
				"""
				INSERT INTO inbox_entries (user_id, conversation_id, updated_at)
				VALUES ($1, $2, $3)
				ON CONFLICT (user_id, conversation_id) DO NOTHING
				""",
				[(m.user_id, conversation_id, now) for m in batch],
			)
		elif op == inbox.INCREMENT:
			await conn.executemany(
				"""
				UPDATE inbox_entries SET unread_count = unread_count + 1, updated_at = $3
				WHERE user_id = $1 AND conversation_id = $2
				""",
				[(m.user_id, conversation_id, now) for m in batch],
			)
		elif op == inbox.RESET:
			await conn.executemany(
				"""
				UPDATE inbox_entries SET unread_count = 0, last_read_message_id = $3, last_read_seq = $4, updated_at = $5
				WHERE user_id = $1 AND conversation_id = $2
				""",
				[(m.user_id, conversation_id, m.message_id, m.seq, now) for m in batch],
			)
		elif op == inbox.READ_THROUGH:
			await conn.executemany(
				"""
				UPDATE inbox_entries
				SET last_read_message_id = $3,
					last_read_seq = $4,
					unread_count = (
						SELECT COUNT(*) FROM messages
						WHERE conversation_id = $2 AND seq > $4 AND sender_id <> $1
					),
					updated_at = $5
				WHERE user_id = $1 AND conversation_id = $2
					AND (last_read_seq IS NULL OR last_read_seq < $4)
				""",
				[(m.user_id, conversation_id, m.message_id, m.seq if m.seq is not None else 0, now) for m in batch],
			)
		elif op == inbox.CLEAR:
			await conn.executemany(
				"""
				UPDATE inbox_entries SET unread_count = 0, last_read_message_id = NULL, last_read_seq = NULL, updated_at = $3
				WHERE user_id = $1 AND conversation_id = $2
				""",
				[(m.user_id, conversation_id, now) for m in batch],
			)
		elif op == inbox.REMOVE:
			await conn.executemany(
				"DELETE FROM inbox_entries WHERE user_id = $1 AND conversation_id = $2",
				[(m.user_id, conversation_id) for m in batch],
			)

	# --- Conversations ----------------------------------------------------

	async def create_conversation(
		self,
		conversation: models.Conversation,
		*,
		pair_key: Optional[str] = None,
	) -> Tuple[models.Conversation, bool]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				inserted = await conn.fetchval(
					"""
					INSERT INTO conversations (id, type, name, description, group_image, created_by, direct_key,
						last_activity, status, created_at, updated_at)
					VALUES ($1, $2, $3, $4, $5, $6, $7, $8, 'active', $8, $8)
					ON CONFLICT (direct_key) WHERE type = 'direct' AND status = 'active' DO NOTHING
					RETURNING id
					""",
					conversation.id,
					conversation.type,
					conversation.name,
					conversation.description,
					conversation.group_image,
					conversation.created_by,
					pair_key,
					conversation.created_at,
				)
				if inserted is None:
					existing_id = await conn.fetchval(
						"SELECT id FROM conversations WHERE direct_key = $1 AND type = 'direct' AND status = 'active'",
						pair_key,
					)
					existing = await self._fetch_conversation(conn, str(existing_id))
					assert existing is not None
					return existing, False
				await conn.executemany(
					"""
					INSERT INTO conversation_members (conversation_id, user_id, role, joined_at, last_seen)
					VALUES ($1, $2, $3, $4, $5)
					""",
					[
						(conversation.id, p.user_id, p.role, p.joined_at, p.last_seen)
						for p in conversation.participants
					],
				)
				await self._apply_inbox(
					conn,
					conversation.id,
					inbox.on_conversation_created(conversation.participant_ids()),
					conversation.created_at,
				)
				created = await self._fetch_conversation(conn, conversation.id)
				assert created is not None
				return created, True

	async def get_conversation(self, conversation_id: str) -> Optional[models.Conversation]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			return await self._fetch_conversation(conn, conversation_id)

	async def list_conversations(self, user_id: str) -> List[models.Conversation]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT c.id
				FROM conversations c
				JOIN conversation_members m ON m.conversation_id = c.id
				WHERE m.user_id = $1 AND c.status = 'active'
				ORDER BY c.last_activity DESC, c.id DESC
				""",
				user_id,
			)
			return await self._fetch_conversations(conn, [str(row["id"]) for row in rows])

	async def add_members(
		self,
		conversation_id: str,
		participants: Sequence[models.Participant],
	) -> List[str]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				await self._lock_conversation(conn, conversation_id)
				added: List[str] = []
				for participant in participants:
					user_id = await conn.fetchval(
						"""
						INSERT INTO conversation_members (conversation_id, user_id, role, joined_at, last_seen)
						VALUES ($1, $2, $3, $4, $5)
						ON CONFLICT (conversation_id, user_id) DO NOTHING
						RETURNING user_id
						""",
						conversation_id,
						participant.user_id,
						participant.role,
						participant.joined_at,
						participant.last_seen,
					)
					if user_id is not None:
						added.append(str(user_id))
				if added:
					now = participants[0].joined_at
					await conn.execute("UPDATE conversations SET updated_at = $2 WHERE id = $1", conversation_id, now)
					await self._apply_inbox(conn, conversation_id, inbox.on_members_added(added), now)
				return added

	async def remove_member(self, conversation_id: str, user_id: str) -> bool:
		pool = await get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				status = await conn.execute(
					"DELETE FROM conversation_members WHERE conversation_id = $1 AND user_id = $2",
					conversation_id,
					user_id,
				)
				if _rows_affected(status) == 0:
					return False
				await self._apply_inbox(conn, conversation_id, inbox.on_member_removed(user_id), datetime.now(timezone.utc))
				return True

	async def update_member_role(self, conversation_id: str, user_id: str, role: str) -> models.Conversation:
		pool = await get_pool()
		async with pool.acquire() as conn:
			status = await conn.execute(
				"UPDATE conversation_members SET role = $3 WHERE conversation_id = $1 AND user_id = $2",
				conversation_id,
				user_id,
				role,
			)
			if _rows_affected(status) == 0:
				raise NotFoundError("member_not_found")
			conversation = await self._fetch_conversation(conn, conversation_id)
			assert conversation is not None
			return conversation

	async def transfer_ownership(self, conversation_id: str, from_user: str, to_user: str) -> models.Conversation:
		pool = await get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				await self._lock_conversation(conn, conversation_id)
				promoted = await conn.execute(
					"UPDATE conversation_members SET role = 'owner' WHERE conversation_id = $1 AND user_id = $2",
					conversation_id,
					to_user,
				)
				if _rows_affected(promoted) == 0:
					raise NotFoundError("member_not_found")
				await conn.execute(
					"UPDATE conversation_members SET role = 'admin' WHERE conversation_id = $1 AND user_id = $2",
					conversation_id,
					from_user,
				)
				conversation = await self._fetch_conversation(conn, conversation_id)
				assert conversation is not None
				return conversation

	async def update_conversation(
		self,
		conversation_id: str,
		changes: Dict[str, Optional[str]],
		now: datetime,
	) -> models.Conversation:
		assignments: List[str] = []
		params: List[object] = [conversation_id, now]
		for field_name, value in changes.items():
			column = _CONVERSATION_COLUMNS[field_name]
			params.append(value)
			assignments.append(f"{column} = ${len(params)}")
		assignments.append("updated_at = $2")
		pool = await get_pool()
		async with pool.acquire() as conn:
			status = await conn.execute(
				f"UPDATE conversations SET {', '.join(assignments)} WHERE id = $1 AND status = 'active'",
				*params,
			)
			if _rows_affected(status) == 0:
				raise NotFoundError("conversation_not_found")
			conversation = await self._fetch_conversation(conn, conversation_id)
			assert conversation is not None
			return conversation

	async def purge_conversation(self, conversation_id: str) -> List[str]:
		"""Delete the conversation; members, messages and inbox entries cascade with it."""
		pool = await get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				rows = await conn.fetch(
					"SELECT user_id FROM conversation_members WHERE conversation_id = $1 ORDER BY joined_at, user_id",
					conversation_id,
				)
				await conn.execute("DELETE FROM inbox_entries WHERE conversation_id = $1", conversation_id)
				await conn.execute("DELETE FROM messages WHERE conversation_id = $1", conversation_id)
				deleted = await conn.fetchval("DELETE FROM conversations WHERE id = $1 RETURNING id", conversation_id)
				if deleted is None:
					return []
				return [str(row["user_id"]) for row in rows]

	async def clear_history(self, conversation_id: str, now: datetime) -> int:
		pool = await get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				await self._lock_conversation(conn, conversation_id)
				status = await conn.execute("DELETE FROM messages WHERE conversation_id = $1", conversation_id)
				await conn.execute(
					"""
					UPDATE conversations SET last_message_id = NULL, last_activity = $2, updated_at = $2
					WHERE id = $1
					""",
					conversation_id,
					now,
				)
				participants = await self._member_ids(conn, conversation_id)
				await self._apply_inbox(conn, conversation_id, inbox.on_history_cleared(participants), now)
				return _rows_affected(status)

	async def touch_last_seen(self, conversation_id: str, user_id: str, now: datetime) -> None:
		pool = await get_pool()
		async with pool.acquire() as conn:
			await conn.execute(
				"UPDATE conversation_members SET last_seen = $3 WHERE conversation_id = $1 AND user_id = $2",
				conversation_id,
				user_id,
				now,
			)

	async def _lock_conversation(self, conn: asyncpg.Connection, conversation_id: str) -> None:
		found = await conn.fetchval(
			"SELECT id FROM conversations WHERE id = $1 AND status = 'active' FOR UPDATE",
			conversation_id,
		)
		if found is None:
			raise NotFoundError("conversation_not_found")

	async def _member_ids(self, conn: asyncpg.Connection, conversation_id: str) -> List[str]:
		rows = await conn.fetch(
			"SELECT user_id FROM conversation_members WHERE conversation_id = $1 ORDER BY joined_at, user_id",
			conversation_id,
		)
		return [str(row["user_id"]) for row in rows]

	async def _fetch_conversation(self, conn: asyncpg.Connection, conversation_id: str) -> Optional[models.Conversation]:
		found = await self._fetch_conversations(conn, [conversation_id])
		return found[0] if found else None

	async def _fetch_conversations(self, conn: asyncpg.Connection, ids: List[str]) -> List[models.Conversation]:
		if not ids:
			return []
		rows = await conn.fetch("SELECT * FROM conversations WHERE id = ANY($1::text[])", ids)
		member_rows = await conn.fetch(
			"""
			SELECT conversation_id, user_id, role, joined_at, last_seen
			FROM conversation_members
			WHERE conversation_id = ANY($1::text[])
			ORDER BY joined_at, user_id
			""",
			ids,
		)
		members: Dict[str, List[models.Participant]] = {}
		for row in member_rows:
			members.setdefault(str(row["conversation_id"]), []).append(
				models.Participant(
					user_id=str(row["user_id"]),
					role=row["role"],
					joined_at=row["joined_at"],
					last_seen=row["last_seen"],
				)
			)
		by_id = {
			str(row["id"]): models.Conversation(
				id=str(row["id"]),
				type=row["type"],
				created_by=str(row["created_by"]),
				participants=members.get(str(row["id"]), []),
				created_at=row["created_at"],
				last_activity=row["last_activity"],
				name=row["name"],
				description=row["description"],
				group_image=row["group_image"],
				last_message_id=row["last_message_id"],
				total_messages=int(row["total_messages"]),
				status=row["status"],
				updated_at=row["updated_at"],
			)
			for row in rows
		}
		return [by_id[cid] for cid in ids if cid in by_id]

	# --- Messages ---------------------------------------------------------

	async def append_message(self, draft: models.MessageDraft, now: datetime) -> models.Message:
		pool = await get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				# the counter bump takes the row lock that orders concurrent sends
				seq = await conn.fetchval(
					"""
					UPDATE conversations
					SET total_messages = total_messages + 1, last_message_id = $2, last_activity = $3, updated_at = $3
					WHERE id = $1 AND status = 'active'
					RETURNING total_messages
					""",
					draft.conversation_id,
					draft.id,
					now,
				)
				if seq is None:
					raise NotFoundError("conversation_not_found")
				await conn.execute(
					"""
					INSERT INTO messages (id, conversation_id, seq, sender_id, content, attachments, reply_to,
						mentions, forward_info, created_at, updated_at)
					VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9::jsonb, $10, $10)
					""",
					draft.id,
					draft.conversation_id,
					int(seq),
					draft.sender_id,
					draft.content,
					json.dumps([attachment.to_dict() for attachment in draft.attachments]),
					draft.reply_to,
					list(draft.mentions),
					json.dumps(draft.forward_info.to_dict()) if draft.forward_info else None,
					now,
				)
				participants = await self._member_ids(conn, draft.conversation_id)
				await self._apply_inbox(
					conn,
					draft.conversation_id,
					inbox.on_message_sent(participants, draft.sender_id, draft.id, int(seq)),
					now,
				)
				message = await self._fetch_message(conn, draft.id)
				assert message is not None
				return message

	async def get_message(self, message_id: str) -> Optional[models.Message]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			return await self._fetch_message(conn, message_id)

	async def list_messages(
		self,
		conversation_id: str,
		*,
		offset: int,
		limit: int,
		sort_by: str = "created_at",
		descending: bool = True,
	) -> models.MessagePage:
		direction = "DESC" if descending else "ASC"
		if sort_by == "created_at":
			order = f"created_at {direction}, seq {direction}"
		else:
			order = f"seq {direction}"
		pool = await get_pool()
		async with pool.acquire() as conn:
			total = await conn.fetchval("SELECT COUNT(*) FROM messages WHERE conversation_id = $1", conversation_id)
			rows = await conn.fetch(
				_MESSAGE_SELECT + f" WHERE conversation_id = $1 ORDER BY {order} LIMIT $2 OFFSET $3",
				conversation_id,
				limit,
				offset,
			)
			return models.MessagePage(items=await self._hydrate(conn, rows), total=int(total or 0))

	async def messages_around(
		self,
		conversation_id: str,
		seq: int,
		*,
		before: int,
		after: int,
	) -> Tuple[List[models.Message], List[models.Message]]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			older_rows = await conn.fetch(
				_MESSAGE_SELECT + " WHERE conversation_id = $1 AND seq < $2 ORDER BY seq DESC LIMIT $3",
				conversation_id,
				seq,
				max(before, 0),
			)
			newer_rows = await conn.fetch(
				_MESSAGE_SELECT + " WHERE conversation_id = $1 AND seq > $2 ORDER BY seq ASC LIMIT $3",
				conversation_id,
				seq,
				max(after, 0),
			)
			older = await self._hydrate(conn, list(reversed(older_rows)))
			newer = await self._hydrate(conn, newer_rows)
			return older, newer

	async def edit_message(self, message_id: str, content: str, now: datetime) -> models.Message:
		pool = await get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				previous = await conn.fetchrow("SELECT content FROM messages WHERE id = $1 FOR UPDATE", message_id)
				if previous is None:
					raise NotFoundError("message_not_found")
				await conn.execute(
					"INSERT INTO message_edits (message_id, content, edited_at) VALUES ($1, $2, $3)",
					message_id,
					previous["content"],
					now,
				)
				await conn.execute(
					"UPDATE messages SET content = $2, is_edited = TRUE, updated_at = $3 WHERE id = $1",
					message_id,
					content,
					now,
				)
				message = await self._fetch_message(conn, message_id)
				assert message is not None
				return message

	async def retract_message(self, message_id: str, now: datetime) -> models.Message:
		pool = await get_pool()
		async with pool.acquire() as conn:
			status = await conn.execute(
				"""
				UPDATE messages
				SET status = 'deleted', content = NULL, attachments = '[]'::jsonb, deleted_at = $2, updated_at = $2
				WHERE id = $1
				""",
				message_id,
				now,
			)
			if _rows_affected(status) == 0:
				raise NotFoundError("message_not_found")
			message = await self._fetch_message(conn, message_id)
			assert message is not None
			return message

	async def mark_read(
		self,
		conversation_id: str,
		user_id: str,
		up_to_seq: Optional[int],
		now: datetime,
	) -> models.ReadResult:
		pool = await get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				await self._lock_conversation(conn, conversation_id)
				if up_to_seq is None:
					bound = await conn.fetchval(
						"SELECT COALESCE(MAX(seq), 0) FROM messages WHERE conversation_id = $1",
						conversation_id,
					)
				else:
					bound = up_to_seq
				bound = int(bound or 0)
				pointer = await conn.fetchval(
					"SELECT id FROM messages WHERE conversation_id = $1 AND seq <= $2 ORDER BY seq DESC LIMIT 1",
					conversation_id,
					bound,
				)
				rows = await conn.fetch(
					"""
					INSERT INTO message_reads (message_id, user_id, read_at)
					SELECT id, $2, $4 FROM messages
					WHERE conversation_id = $1 AND seq <= $3 AND sender_id <> $2
					ON CONFLICT (message_id, user_id) DO NOTHING
					RETURNING message_id
					""",
					conversation_id,
					user_id,
					bound,
					now,
				)
				message_ids = [str(row["message_id"]) for row in rows]
				if message_ids:
					await conn.execute(
						"""
						UPDATE messages SET status = 'read'
						WHERE id = ANY($1::text[]) AND status IN ('sent', 'delivered')
						""",
						message_ids,
					)
				await self._apply_inbox(
					conn,
					conversation_id,
					inbox.on_read(user_id, str(pointer) if pointer else None, bound),
					now,
				)
				entry = await conn.fetchrow(
					"""
					SELECT unread_count, last_read_message_id FROM inbox_entries
					WHERE user_id = $1 AND conversation_id = $2
					""",
					user_id,
					conversation_id,
				)
				if entry is not None:
					pointer = entry["last_read_message_id"]
				return models.ReadResult(
					conversation_id=conversation_id,
					user_id=user_id,
					message_ids=message_ids,
					last_read_message_id=str(pointer) if pointer else None,
					unread_count=int(entry["unread_count"]) if entry is not None else 0,
					read_at=now,
				)

	async def mark_delivered(self, message_id: str) -> bool:
		pool = await get_pool()
		async with pool.acquire() as conn:
			status = await conn.execute(
				"UPDATE messages SET status = 'delivered' WHERE id = $1 AND status = 'sent'",
				message_id,
			)
			return _rows_affected(status) > 0

	async def toggle_reaction(self, message_id: str, emoji: str, user_id: str) -> models.Message:
		pool = await get_pool()
		async with pool.acquire() as conn:
			async with conn.transaction():
				removed = await conn.execute(
					"DELETE FROM message_reactions WHERE message_id = $1 AND emoji = $2 AND user_id = $3",
					message_id,
					emoji,
					user_id,
				)
				if _rows_affected(removed) == 0:
					try:
						await conn.execute(
							"INSERT INTO message_reactions (message_id, emoji, user_id) VALUES ($1, $2, $3)",
							message_id,
							emoji,
							user_id,
						)
					except asyncpg.ForeignKeyViolationError as exc:
						raise NotFoundError("message_not_found") from exc
				message = await self._fetch_message(conn, message_id)
				if message is None:
					raise NotFoundError("message_not_found")
				return message

	async def set_pinned(self, message_id: str, pinned: bool, now: datetime) -> models.Message:
		pool = await get_pool()
		async with pool.acquire() as conn:
			status = await conn.execute(
				"UPDATE messages SET is_pinned = $2, updated_at = $3 WHERE id = $1",
				message_id,
				pinned,
				now,
			)
			if _rows_affected(status) == 0:
				raise NotFoundError("message_not_found")
			message = await self._fetch_message(conn, message_id)
			assert message is not None
			return message

	async def list_pinned(self, conversation_id: str) -> List[models.Message]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				_MESSAGE_SELECT + " WHERE conversation_id = $1 AND is_pinned ORDER BY seq ASC",
				conversation_id,
			)
			return await self._hydrate(conn, rows)

	async def _fetch_message(self, conn: asyncpg.Connection, message_id: str) -> Optional[models.Message]:
		rows = await conn.fetch(_MESSAGE_SELECT + " WHERE id = $1", message_id)
		hydrated = await self._hydrate(conn, rows)
		return hydrated[0] if hydrated else None

	async def _hydrate(self, conn: asyncpg.Connection, rows: Iterable[asyncpg.Record]) -> List[models.Message]:
		rows = list(rows)
		if not rows:
			return []
		ids = [str(row["id"]) for row in rows]
		reaction_rows = await conn.fetch(
			"""
			SELECT message_id, emoji, user_id FROM message_reactions
			WHERE message_id = ANY($1::text[])
			ORDER BY created_at, user_id
			""",
			ids,
		)
		read_rows = await conn.fetch(
			"""
			SELECT message_id, user_id, read_at FROM message_reads
			WHERE message_id = ANY($1::text[])
			ORDER BY read_at, user_id
			""",
			ids,
		)
		edit_rows = await conn.fetch(
			"""
			SELECT message_id, content, edited_at FROM message_edits
			WHERE message_id = ANY($1::text[])
			ORDER BY id
			""",
			ids,
		)
		reactions: Dict[str, Dict[str, List[str]]] = {}
		for row in reaction_rows:
			reactions.setdefault(str(row["message_id"]), {}).setdefault(row["emoji"], []).append(str(row["user_id"]))
		reads: Dict[str, List[models.ReadReceipt]] = {}
		for row in read_rows:
			reads.setdefault(str(row["message_id"]), []).append(
				models.ReadReceipt(user_id=str(row["user_id"]), read_at=row["read_at"])
			)
		edits: Dict[str, List[models.EditRecord]] = {}
		for row in edit_rows:
			edits.setdefault(str(row["message_id"]), []).append(
				models.EditRecord(content=row["content"], edited_at=row["edited_at"])
			)
		messages: List[models.Message] = []
		for row in rows:
			message_id = str(row["id"])
			forward_raw = _load_json(row["forward_info"], None)
			messages.append(
				models.Message(
					id=message_id,
					conversation_id=str(row["conversation_id"]),
					seq=int(row["seq"]),
					sender_id=str(row["sender_id"]),
					content=row["content"],
					created_at=row["created_at"],
					attachments=tuple(models.Attachment.from_dict(item) for item in _load_json(row["attachments"], [])),
					reply_to=row["reply_to"],
					mentions=tuple(row["mentions"] or ()),
					reactions=reactions.get(message_id, {}),
					read_by=reads.get(message_id, []),
					status=row["status"],
					is_edited=bool(row["is_edited"]),
					edit_history=edits.get(message_id, []),
					is_pinned=bool(row["is_pinned"]),
					forward_info=models.ForwardInfo.from_dict(forward_raw) if forward_raw else None,
					updated_at=row["updated_at"],
					deleted_at=row["deleted_at"],
				)
			)
		return messages

	# --- Inbox ------------------------------------------------------------

	async def list_inbox(self, user_id: str) -> List[models.InboxItem]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT ie.* FROM inbox_entries ie
				JOIN conversations c ON c.id = ie.conversation_id
				WHERE ie.user_id = $1 AND c.status = 'active'
				""",
				user_id,
			)
			entries = [self._row_to_entry(row) for row in rows]
			conversations = await self._fetch_conversations(conn, [entry.conversation_id for entry in entries])
			by_id = {conversation.id: conversation for conversation in conversations}
			last_ids = [c.last_message_id for c in conversations if c.last_message_id]
			last_rows = await conn.fetch(_MESSAGE_SELECT + " WHERE id = ANY($1::text[])", last_ids) if last_ids else []
			last_messages = {message.id: message for message in await self._hydrate(conn, last_rows)}
			items: List[models.InboxItem] = []
			for entry in entries:
				conversation = by_id.get(entry.conversation_id)
				if conversation is None:
					continue
				items.append(
					models.InboxItem(
						entry=entry,
						conversation=conversation,
						last_message=last_messages.get(conversation.last_message_id or ""),
					)
				)
			return items

	async def get_inbox_entry(self, user_id: str, conversation_id: str) -> Optional[models.InboxEntry]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"SELECT * FROM inbox_entries WHERE user_id = $1 AND conversation_id = $2",
				user_id,
				conversation_id,
			)
			return self._row_to_entry(row) if row else None

	async def update_inbox_settings(
		self,
		user_id: str,
		conversation_id: str,
		changes: Dict[str, object],
		now: datetime,
	) -> Optional[models.InboxEntry]:
		assignments: List[str] = []
		params: List[object] = [user_id, conversation_id, now]
		for field_name, value in changes.items():
			params.append(value)
			assignments.append(f"{_INBOX_COLUMNS[field_name]} = ${len(params)}")
		assignments.append("updated_at = $3")
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				f"""
				UPDATE inbox_entries SET {', '.join(assignments)}
				WHERE user_id = $1 AND conversation_id = $2
				RETURNING *
				""",
				*params,
			)
			return self._row_to_entry(row) if row else None

	async def remove_inbox_entry(self, user_id: str, conversation_id: str) -> bool:
		pool = await get_pool()
		async with pool.acquire() as conn:
			status = await conn.execute(
				"DELETE FROM inbox_entries WHERE user_id = $1 AND conversation_id = $2",
				user_id,
				conversation_id,
			)
			return _rows_affected(status) > 0

	async def inbox_entries(self, conversation_id: str) -> List[models.InboxEntry]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch("SELECT * FROM inbox_entries WHERE conversation_id = $1", conversation_id)
			return [self._row_to_entry(row) for row in rows]

	@staticmethod
	def _row_to_entry(row: asyncpg.Record) -> models.InboxEntry:
		return models.InboxEntry(
			user_id=str(row["user_id"]),
			conversation_id=str(row["conversation_id"]),
			unread_count=int(row["unread_count"]),
			last_read_message_id=row["last_read_message_id"],
			last_read_seq=row["last_read_seq"],
			is_pinned=bool(row["is_pinned"]),
			is_muted=bool(row["is_muted"]),
			muted_until=row["muted_until"],
			updated_at=row["updated_at"],
		)

	# --- Notifications ----------------------------------------------------

	async def insert_notification(self, notification: models.Notification) -> models.Notification:
		pool = await get_pool()
		async with pool.acquire() as conn:
			await conn.execute(
				"""
				INSERT INTO notifications (id, user_id, type, title, body, data, actor_id, conversation_id,
					message_id, is_read, created_at)
				VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8, $9, FALSE, $10)
				ON CONFLICT (id) DO NOTHING
				""",
				notification.id,
				notification.user_id,
				notification.type,
				notification.title,
				notification.body,
				json.dumps(notification.data),
				notification.actor_id,
				notification.conversation_id,
				notification.message_id,
				notification.created_at,
			)
		return notification

	async def list_notifications(
		self,
		user_id: str,
		*,
		limit: int,
		unread_only: bool = False,
	) -> List[models.Notification]:
		clause = " AND NOT is_read" if unread_only else ""
		pool = await get_pool()
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				f"""
				SELECT * FROM notifications
				WHERE user_id = $1{clause}
				ORDER BY created_at DESC, id DESC
				LIMIT $2
				""",
				user_id,
				limit,
			)
			return [self._row_to_notification(row) for row in rows]

	async def mark_notification_read(
		self,
		user_id: str,
		notification_id: str,
		now: datetime,
	) -> Optional[models.Notification]:
		pool = await get_pool()
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				UPDATE notifications SET is_read = TRUE, read_at = COALESCE(read_at, $3)
				WHERE id = $1 AND user_id = $2
				RETURNING *
				""",
				notification_id,
				user_id,
				now,
			)
			return self._row_to_notification(row) if row else None

	async def count_unread_notifications(self, user_id: str) -> int:
		pool = await get_pool()
		async with pool.acquire() as conn:
			count = await conn.fetchval(
				"SELECT COUNT(*) FROM notifications WHERE user_id = $1 AND NOT is_read",
				user_id,
			)
			return int(count or 0)

	@staticmethod
	def _row_to_notification(row: asyncpg.Record) -> models.Notification:
		return models.Notification(
			id=str(row["id"]),
			user_id=str(row["user_id"]),
			type=row["type"],
			title=row["title"],
			body=row["body"],
			created_at=row["created_at"],
			data=_load_json(row["data"], {}),
			actor_id=row["actor_id"],
			conversation_id=row["conversation_id"],
			message_id=row["message_id"],
			is_read=bool(row["is_read"]),
			read_at=row["read_at"],
		)


_REPOSITORY: MessagingRepository | MemoryRepository | None = None


def get_repository() -> MessagingRepository | MemoryRepository:
	"""Return the process-wide store selected by settings.messaging_store."""
	global _REPOSITORY
	if _REPOSITORY is None:
		if settings.messaging_store == "memory":
			_REPOSITORY = MemoryRepository()
		else:
			_REPOSITORY = MessagingRepository()
	return _REPOSITORY


def set_repository(repository: MessagingRepository | MemoryRepository | None) -> None:
	global _REPOSITORY
	_REPOSITORY = repository
