"""Domain models for conversations, messages, inbox entries and notifications."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

DIRECT = "direct"
GROUP = "group"

OWNER = "owner"
ADMIN = "admin"
MEMBER = "member"
ROLES = (OWNER, ADMIN, MEMBER)

ACTIVE = "active"

STATUS_SENT = "sent"
STATUS_DELIVERED = "delivered"
STATUS_READ = "read"
STATUS_DELETED = "deleted"

ATTACHMENT_TYPES = ("document", "file", "image", "video", "audio", "poll")


def direct_key(user_a: str, user_b: str) -> str:
	"""Order-independent key for the unordered pair behind a Direct conversation."""
	first, second = sorted((str(user_a), str(user_b)))
	return f"{first}:{second}"


@dataclass(slots=True)
class Participant:
	user_id: str
	role: str
	joined_at: datetime
	last_seen: datetime

	@property
	def is_admin(self) -> bool:
		return self.role in (OWNER, ADMIN)

	def to_dict(self) -> dict:
		return {
			"userId": self.user_id,
			"role": self.role,
			"joinedAt": self.joined_at.isoformat(),
			"lastSeen": self.last_seen.isoformat(),
			"isAdmin": self.is_admin,
		}


@dataclass(slots=True)
class Conversation:
	id: str
	type: str
	created_by: str
	participants: List[Participant]
	created_at: datetime
	last_activity: datetime
	name: Optional[str] = None
	description: Optional[str] = None
	group_image: Optional[str] = None
	last_message_id: Optional[str] = None
	total_messages: int = 0
	status: str = ACTIVE
	updated_at: Optional[datetime] = None

	@property
	def is_direct(self) -> bool:
		return self.type == DIRECT

	@property
	def is_group(self) -> bool:
		return self.type == GROUP

	@property
	def is_active(self) -> bool:
		return self.status == ACTIVE

	def participant(self, user_id: str) -> Optional[Participant]:
		for participant in self.participants:
			if participant.user_id == user_id:
				return participant
		return None

	def participant_ids(self) -> List[str]:
		return [participant.user_id for participant in self.participants]

	def is_participant(self, user_id: str) -> bool:
		return self.participant(user_id) is not None


@dataclass(slots=True)
class Attachment:
	type: str
	url: str
	ref: Optional[str] = None
	file_name: Optional[str] = None
	file_size: Optional[int] = None
	mime_type: Optional[str] = None

	def to_dict(self) -> dict:
		return {
			"type": self.type,
			"url": self.url,
			"ref": self.ref,
			"fileName": self.file_name,
			"fileSize": self.file_size,
			"mimeType": self.mime_type,
		}

	@classmethod
	def from_dict(cls, data: dict) -> "Attachment":
		return cls(
			type=str(data.get("type") or ""),
			url=str(data.get("url") or ""),
			ref=data.get("ref"),
			file_name=data.get("file_name", data.get("fileName")),
			file_size=data.get("file_size", data.get("fileSize")),
			mime_type=data.get("mime_type", data.get("mimeType")),
		)


@dataclass(slots=True)
class ReadReceipt:
	user_id: str
	read_at: datetime


@dataclass(slots=True)
class EditRecord:
	content: Optional[str]
	edited_at: datetime


@dataclass(slots=True)
class ForwardInfo:
	original_message_id: str
	original_conversation_id: str
	forwarded_by: str
	forwarded_at: datetime

	def to_dict(self) -> dict:
		return {
			"originalMessageId": self.original_message_id,
			"originalConversationId": self.original_conversation_id,
			"forwardedBy": self.forwarded_by,
			"forwardedAt": self.forwarded_at.isoformat(),
		}

	@classmethod
	def from_dict(cls, data: dict) -> "ForwardInfo":
		forwarded_at = data["forwardedAt"]
		if isinstance(forwarded_at, str):
			forwarded_at = datetime.fromisoformat(forwarded_at)
		return cls(
			original_message_id=str(data["originalMessageId"]),
			original_conversation_id=str(data["originalConversationId"]),
			forwarded_by=str(data["forwardedBy"]),
			forwarded_at=forwarded_at,
		)


@dataclass(slots=True)
class MessageDraft:
	"""Validated input for a new message, before it has a sequence number."""

	id: str
	conversation_id: str
	sender_id: str
	content: Optional[str]
	attachments: Tuple[Attachment, ...] = ()
	reply_to: Optional[str] = None
	mentions: Tuple[str, ...] = ()
	forward_info: Optional[ForwardInfo] = None


@dataclass(slots=True)
class Message:
	id: str
	conversation_id: str
	seq: int
	sender_id: str
	content: Optional[str]
	created_at: datetime
	attachments: Tuple[Attachment, ...] = ()
	reply_to: Optional[str] = None
	mentions: Tuple[str, ...] = ()
	reactions: Dict[str, List[str]] = field(default_factory=dict)
	read_by: List[ReadReceipt] = field(default_factory=list)
	status: str = STATUS_SENT
	is_edited: bool = False
	edit_history: List[EditRecord] = field(default_factory=list)
	is_pinned: bool = False
	forward_info: Optional[ForwardInfo] = None
	updated_at: Optional[datetime] = None
	deleted_at: Optional[datetime] = None

	@property
	def is_retracted(self) -> bool:
		return self.status == STATUS_DELETED

	def is_read_by(self, user_id: str) -> bool:
		return any(receipt.user_id == user_id for receipt in self.read_by)


@dataclass(slots=True)
class InboxEntry:
	user_id: str
	conversation_id: str
	unread_count: int = 0
	last_read_message_id: Optional[str] = None
	last_read_seq: Optional[int] = None
	is_pinned: bool = False
	is_muted: bool = False
	muted_until: Optional[datetime] = None
	updated_at: Optional[datetime] = None

	def is_muted_at(self, now: datetime) -> bool:
		"""A mute with an expiry only holds until that instant."""
		if self.muted_until is not None:
			return self.muted_until > now
		return self.is_muted


@dataclass(slots=True)
class InboxItem:
	"""An inbox entry joined with the conversation it summarises."""

	entry: InboxEntry
	conversation: Conversation
	last_message: Optional[Message] = None


@dataclass(slots=True)
class MessagePage:
	items: List[Message]
	total: int


@dataclass(slots=True)
class ReadResult:
	conversation_id: str
	user_id: str
	message_ids: List[str]
	last_read_message_id: Optional[str]
	unread_count: int
	read_at: datetime


@dataclass(slots=True)
class Notification:
	id: str
	user_id: str
	type: str
	title: str
	body: str
	created_at: datetime
	data: Dict[str, object] = field(default_factory=dict)
	actor_id: Optional[str] = None
	conversation_id: Optional[str] = None
	message_id: Optional[str] = None
	is_read: bool = False
	read_at: Optional[datetime] = None


@dataclass(slots=True)
class Presence:
	user_id: str
	status: str
	socket_id: Optional[str]
	last_seen: Optional[datetime]

	@property
	def is_online(self) -> bool:
		return self.status != "offline" and self.socket_id is not None

	def to_dict(self) -> dict:
		return {
			"userId": self.user_id,
			"status": self.status,
			"lastSeen": self.last_seen.isoformat() if self.last_seen else None,
		}
