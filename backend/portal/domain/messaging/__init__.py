"""Messaging domain exports."""

from .conversations import ConversationService, conversation_service
from .messages import MessageService, message_service

__all__ = ["ConversationService", "MessageService", "conversation_service", "message_service"]
