"""Typed errors raised by the messaging services."""

from __future__ import annotations

from fastapi import status


class MessagingError(Exception):
	"""Base class for messaging errors; carries the wire code and HTTP status."""

	status_code: int = status.HTTP_400_BAD_REQUEST
	code: str = "MESSAGING_ERROR"
	detail: str = "messaging_error"

	def __init__(self, detail: str | None = None) -> None:
		super().__init__(detail or self.detail)
		if detail:
			self.detail = detail

	@property
	def message(self) -> str:
		return self.detail

	def to_payload(self) -> dict[str, object]:
		return {"success": False, "message": self.detail, "code": self.code}


class ValidationError(MessagingError):
	"""Malformed or missing input."""

	status_code = status.HTTP_400_BAD_REQUEST
	code = "VALIDATION_ERROR"
	detail = "validation_error"


class UnauthorizedError(MessagingError):
	"""Missing or invalid identity."""

	status_code = status.HTTP_401_UNAUTHORIZED
	code = "UNAUTHORIZED"
	detail = "unauthorized"


class ForbiddenError(MessagingError):
	"""Authenticated but lacking permission."""

	status_code = status.HTTP_403_FORBIDDEN
	code = "FORBIDDEN"
	detail = "forbidden"


class NotFoundError(MessagingError):
	"""Entity missing or not visible to the actor."""

	status_code = status.HTTP_404_NOT_FOUND
	code = "NOT_FOUND"
	detail = "not_found"


class InvalidOperation(MessagingError):
	"""Well-formed request that violates a domain rule."""

	status_code = status.HTTP_400_BAD_REQUEST
	code = "INVALID_OPERATION"
	detail = "invalid_operation"


class InternalError(MessagingError):
	status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
	code = "INTERNAL_ERROR"
	detail = "internal_error"


__all__ = [
	"ForbiddenError",
	"InternalError",
	"InvalidOperation",
	"MessagingError",
	"NotFoundError",
	"UnauthorizedError",
	"ValidationError",
]
