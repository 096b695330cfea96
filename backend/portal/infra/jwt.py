"""Access tokens for the messaging API and the socket handshake.

Tokens are HS256, signed with settings.secret_key, issued by `portal-api` for
the `portal-fe` audience. The subject is the portal user id; `roles` and `sid`
(session id) are optional claims.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Mapping

import jwt
from jwt import InvalidTokenError

from portal.settings import settings


ISSUER = "portal-api"
AUDIENCE = "portal-fe"
ALGORITHM = "HS256"
DEFAULT_TTL_SECONDS = 3600

_REQUIRED_CLAIMS = ["sub", "exp", "iat", "iss", "aud"]
_CLOCK_SKEW_SECONDS = 5


def encode_access(claims: Mapping[str, object], *, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> str:
    issued = int(time.time())
    body: Dict[str, Any] = {"iss": ISSUER, "aud": AUDIENCE, "iat": issued, "exp": issued + ttl_seconds}
    body.update(claims)
    return jwt.encode(body, settings.secret_key, algorithm=ALGORITHM)


def decode_access(token: str) -> Dict[str, Any]:
    """Raises jwt.InvalidTokenError (or a subclass) when the token is unusable."""
    payload = jwt.decode(
        token,
        settings.secret_key,
        algorithms=[ALGORITHM],
        audience=AUDIENCE,
        issuer=ISSUER,
        leeway=_CLOCK_SKEW_SECONDS,
        options={"require": _REQUIRED_CLAIMS},
    )
    if not str(payload["sub"]).strip():
        raise InvalidTokenError("empty_subject")
    return payload
