"""Authentication helpers for FastAPI endpoints and Socket.IO handshakes.

- Bearer JWTs (HS256) are verified with settings.secret_key.
- Dev headers (X-User-Id) and socket `auth.user_id` are only honoured in development.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from portal.domain.messaging.exceptions import UnauthorizedError
from portal.infra import jwt as jwt_helper
from portal.obs import logging as obs_logging
from portal.settings import settings


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	roles: Tuple[str, ...] = ()
	session_id: Optional[str] = None

	def has_role(self, role: str) -> bool:
		return role in self.roles


_bearer_scheme = HTTPBearer(auto_error=False)


def _parse_roles(raw: object) -> Tuple[str, ...]:
	if isinstance(raw, (list, tuple)):
		return tuple(str(r).strip() for r in raw if str(r).strip())
	if isinstance(raw, str):
		return tuple(part.strip() for part in raw.split(",") if part.strip())
	return ()


def verify_access_jwt(token: str) -> AuthenticatedUser:
	"""Decode and validate an access JWT and return an AuthenticatedUser."""
	try:
		payload = jwt_helper.decode_access(token)
	except Exception:
		raise UnauthorizedError("invalid_token") from None

	sub = str(payload.get("sub") or "").strip()
	if not sub:
		raise UnauthorizedError("invalid_token")
	session_id = payload.get("sid")
	return AuthenticatedUser(
		id=sub,
		roles=_parse_roles(payload.get("roles") or payload.get("role")),
		session_id=str(session_id).strip() if session_id is not None else None,
	)


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	x_user_roles: Optional[str] = Header(default=None, alias="X-User-Roles"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser:
	"""Resolve the authenticated user.

	In development we allow simple headers. In all other environments, headers are
	ignored and a valid Bearer JWT is required.
	"""
	user: AuthenticatedUser | None = None
	if credentials and credentials.scheme.lower() == "bearer":
		user = verify_access_jwt(credentials.credentials)
	elif settings.is_dev() and x_user_id:
		user = AuthenticatedUser(id=x_user_id.strip(), roles=_parse_roles(x_user_roles))
	if user is None or not user.id:
		raise UnauthorizedError("invalid_token")
	obs_logging.bind_context(user_id=user.id)
	return user


def _header(scope: dict, name: str) -> Optional[str]:
	target = name.encode().lower()
	for key, value in scope.get("headers", []):
		if key.lower() == target:
			return value.decode()
	return None


def _query_param(scope: dict, name: str) -> Optional[str]:
	raw = scope.get("query_string") or b""
	if isinstance(raw, bytes):
		raw = raw.decode()
	for pair in str(raw).split("&"):
		key, _, value = pair.partition("=")
		if key == name and value:
			return value
	return None


def authenticate_socket(environ: dict, auth: Optional[dict]) -> AuthenticatedUser:
	"""Resolve the user for a Socket.IO handshake.

	Token sources, in order: `auth.token`, the Authorization header, the `token`
	query parameter. In development `auth.user_id` is accepted as well.
	"""
	scope = environ.get("asgi.scope", environ)
	auth_payload = auth or environ.get("auth") or scope.get("auth") or {}
	token = auth_payload.get("token")
	if not token:
		auth_header = _header(scope, "authorization")
		if auth_header and auth_header.lower().startswith("bearer "):
			token = auth_header.split(" ", 1)[1]
	if not token:
		token = _query_param(scope, "token")
	if token:
		return verify_access_jwt(str(token))
	if settings.is_dev():
		user_id = auth_payload.get("user_id") or auth_payload.get("userId")
		if user_id:
			return AuthenticatedUser(id=str(user_id))
	raise UnauthorizedError("missing_token")
