"""Pydantic schemas for the messaging REST and Socket.IO surfaces.

Field names are snake_case in Python and camelCase on the wire; requests accept either.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from portal.domain.messaging import models


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# --- Requests --------------------------------------------------------------


class ConversationCreateRequest(WireModel):
    participants: List[str] = Field(default_factory=list, max_length=512)
    type: str = Field(default=models.DIRECT, pattern="^(direct|group)$")
    name: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    group_image: Optional[str] = Field(default=None, max_length=2048)


class AddMembersRequest(WireModel):
    user_ids: List[str] = Field(..., min_length=1, max_length=256)


class ConversationUpdateRequest(WireModel):
    name: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    group_image: Optional[str] = Field(default=None, max_length=2048)


class MemberRoleRequest(WireModel):
    role: str = Field(..., pattern="^(owner|admin|member)$")


class InboxSettingsRequest(WireModel):
    is_pinned: Optional[bool] = None
    is_muted: Optional[bool] = None
    muted_until: Optional[datetime] = None


class AttachmentIn(WireModel):
    type: str = Field(..., pattern="^(document|file|image|video|audio|poll)$")
    url: str = Field(..., min_length=1, max_length=2048)
    ref: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = Field(default=None, ge=0)
    mime_type: Optional[str] = None

    def to_model(self) -> models.Attachment:
        return models.Attachment(
            type=self.type,
            url=self.url,
            ref=self.ref,
            file_name=self.file_name,
            file_size=self.file_size,
            mime_type=self.mime_type,
        )


class SendMessageRequest(WireModel):
    content: Optional[str] = None
    attachments: List[AttachmentIn] = Field(default_factory=list, max_length=10)
    reply_to: Optional[str] = None
    mentions: List[str] = Field(default_factory=list, max_length=100)


class EditMessageRequest(WireModel):
    content: str = Field(..., min_length=1)


class MarkReadRequest(WireModel):
    message_id: Optional[str] = None


class ReactionRequest(WireModel):
    emoji: str = Field(..., min_length=1, max_length=32)


class ForwardRequest(WireModel):
    conversation_id: str = Field(..., min_length=1)


class PresenceStatusRequest(WireModel):
    status: str = Field(..., pattern="^(online|idle|dnd)$")


# --- Responses -------------------------------------------------------------


class ParticipantDTO(WireModel):
    user_id: str
    role: str
    is_admin: bool
    joined_at: datetime
    last_seen: datetime

    @classmethod
    def from_model(cls, participant: models.Participant) -> "ParticipantDTO":
        return cls(
            user_id=participant.user_id,
            role=participant.role,
            is_admin=participant.is_admin,
            joined_at=participant.joined_at,
            last_seen=participant.last_seen,
        )


class ConversationMetadataDTO(WireModel):
    total_messages: int
    last_activity: datetime


class ConversationDTO(WireModel):
    id: str
    type: str
    participants: List[ParticipantDTO]
    name: Optional[str] = None
    description: Optional[str] = None
    group_image: Optional[str] = None
    last_message: Optional[str] = None
    metadata: ConversationMetadataDTO
    status: str
    created_by: str
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, conversation: models.Conversation) -> "ConversationDTO":
        return cls(
            id=conversation.id,
            type=conversation.type,
            participants=[ParticipantDTO.from_model(p) for p in conversation.participants],
            name=conversation.name,
            description=conversation.description,
            group_image=conversation.group_image,
            last_message=conversation.last_message_id,
            metadata=ConversationMetadataDTO(
                total_messages=conversation.total_messages,
                last_activity=conversation.last_activity,
            ),
            status=conversation.status,
            created_by=conversation.created_by,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
        )


class AttachmentDTO(WireModel):
    type: str
    url: str
    ref: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None


class ReactionDTO(WireModel):
    emoji: str
    users: List[str]


class ReadReceiptDTO(WireModel):
    user_id: str
    read_at: datetime


class EditRecordDTO(WireModel):
    content: Optional[str] = None
    edited_at: datetime


class ForwardInfoDTO(WireModel):
    original_message_id: str
    original_conversation_id: str
    forwarded_by: str
    forwarded_at: datetime


class MessageDTO(WireModel):
    id: str
    conversation_id: str
    seq: int
    sender_id: str
    content: Optional[str] = None
    attachments: List[AttachmentDTO] = Field(default_factory=list)
    reply_to: Optional[str] = None
    mentions: List[str] = Field(default_factory=list)
    reactions: List[ReactionDTO] = Field(default_factory=list)
    read_by: List[ReadReceiptDTO] = Field(default_factory=list)
    status: str
    is_edited: bool = False
    edit_history: List[EditRecordDTO] = Field(default_factory=list)
    is_pinned: bool = False
    is_deleted: bool = False
    forward_info: Optional[ForwardInfoDTO] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, message: models.Message) -> "MessageDTO":
        forward = message.forward_info
        return cls(
            id=message.id,
            conversation_id=message.conversation_id,
            seq=message.seq,
            sender_id=message.sender_id,
            content=message.content,
            attachments=[
                AttachmentDTO(
                    type=a.type,
                    url=a.url,
                    ref=a.ref,
                    file_name=a.file_name,
                    file_size=a.file_size,
                    mime_type=a.mime_type,
                )
                for a in message.attachments
            ],
            reply_to=message.reply_to,
            mentions=list(message.mentions),
            reactions=[ReactionDTO(emoji=emoji, users=list(users)) for emoji, users in message.reactions.items()],
            read_by=[ReadReceiptDTO(user_id=r.user_id, read_at=r.read_at) for r in message.read_by],
            status=message.status,
            is_edited=message.is_edited,
            edit_history=[EditRecordDTO(content=e.content, edited_at=e.edited_at) for e in message.edit_history],
            is_pinned=message.is_pinned,
            is_deleted=message.is_retracted,
            forward_info=ForwardInfoDTO(
                original_message_id=forward.original_message_id,
                original_conversation_id=forward.original_conversation_id,
                forwarded_by=forward.forwarded_by,
                forwarded_at=forward.forwarded_at,
            )
            if forward
            else None,
            created_at=message.created_at,
            updated_at=message.updated_at,
        )


class InboxEntryDTO(WireModel):
    conversation_id: str
    unread_count: int
    last_read_message_id: Optional[str] = None
    is_pinned: bool = False
    is_muted: bool = False
    muted_until: Optional[datetime] = None

    @classmethod
    def from_model(cls, entry: models.InboxEntry) -> "InboxEntryDTO":
        return cls(
            conversation_id=entry.conversation_id,
            unread_count=entry.unread_count,
            last_read_message_id=entry.last_read_message_id,
            is_pinned=entry.is_pinned,
            is_muted=entry.is_muted,
            muted_until=entry.muted_until,
        )


class InboxItemDTO(InboxEntryDTO):
    conversation: ConversationDTO
    last_message: Optional[MessageDTO] = None

    @classmethod
    def from_item(cls, item: models.InboxItem) -> "InboxItemDTO":
        entry = InboxEntryDTO.from_model(item.entry)
        return cls(
            **entry.model_dump(),
            conversation=ConversationDTO.from_model(item.conversation),
            last_message=MessageDTO.from_model(item.last_message) if item.last_message else None,
        )


class PaginationDTO(WireModel):
    total: int
    page: int
    limit: int
    total_pages: int
    has_next_page: bool
    has_prev_page: bool


class NotificationDTO(WireModel):
    id: str
    type: str
    title: str
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)
    actor_id: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    is_read: bool = False
    created_at: datetime
    read_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, notification: models.Notification) -> "NotificationDTO":
        return cls(
            id=notification.id,
            type=notification.type,
            title=notification.title,
            body=notification.body,
            data=dict(notification.data),
            actor_id=notification.actor_id,
            conversation_id=notification.conversation_id,
            message_id=notification.message_id,
            is_read=notification.is_read,
            created_at=notification.created_at,
            read_at=notification.read_at,
        )


class PresenceDTO(WireModel):
    user_id: str
    status: str
    last_seen: Optional[datetime] = None

    @classmethod
    def from_model(cls, presence: models.Presence) -> "PresenceDTO":
        return cls(user_id=presence.user_id, status=presence.status, last_seen=presence.last_seen)


# --- Envelopes -------------------------------------------------------------


class ConversationEnvelope(WireModel):
    success: bool = True
    conversation: ConversationDTO


class ConversationListResponse(WireModel):
    success: bool = True
    conversations: List[ConversationDTO]


class MembersAddedResponse(WireModel):
    success: bool = True
    conversation: ConversationDTO
    new_members: List[str]


class ClearHistoryResponse(WireModel):
    success: bool = True
    messages_deleted: int


class InboxListResponse(WireModel):
    success: bool = True
    conversations: List[InboxItemDTO]


class InboxEntryEnvelope(WireModel):
    success: bool = True
    conversation: InboxEntryDTO


class MessageEnvelope(WireModel):
    success: bool = True
    message: MessageDTO


class MessageListResponse(WireModel):
    success: bool = True
    messages: List[MessageDTO]
    pagination: PaginationDTO


class MessageContextResponse(WireModel):
    success: bool = True
    conversation_id: str
    target_message_id: str
    messages: List[MessageDTO]


class PinnedMessagesResponse(WireModel):
    success: bool = True
    messages: List[MessageDTO]


class ReadResponse(WireModel):
    success: bool = True
    conversation_id: str
    message_ids: List[str]
    last_read_message_id: Optional[str] = None
    unread_count: int


class NotificationListResponse(WireModel):
    success: bool = True
    notifications: List[NotificationDTO]


class NotificationEnvelope(WireModel):
    success: bool = True
    notification: NotificationDTO


class UnreadCountResponse(WireModel):
    success: bool = True
    count: int


class OkResponse(WireModel):
    success: bool = True
    message: str = "ok"
