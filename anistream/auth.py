# anistream/auth.py
"""
Request authentication for the JSON API.

Views opt in with one of three decorators and receive an ``auth`` keyword
argument holding an :class:`AuthContext`:

* ``auth_optional``: anonymous context when no bearer token is sent;
* ``auth_required``: a missing token is rejected with 401;
* ``admin_required``: as ``auth_required``, plus 403 for non-admins.

A token that is present but invalid or expired, or that names a user that no
longer exists, is rejected with 401 in every mode.
"""
import logging
from dataclasses import dataclass
from functools import wraps
from typing import Optional

from flask import current_app, request

from anistream.models import User
from anistream.security import InvalidTokenError, TokenIssuer
from anistream.service import AnimeService, AuthError, ForbiddenError

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


@dataclass
class AuthContext:
    user: Optional[User] = None

    @property
    def user_id(self) -> Optional[int]:
        return self.user.id if self.user else None


def bearer_token(header: Optional[str]) -> Optional[str]:
    """Token from an ``Authorization: Bearer <token>`` header, or None when absent or malformed."""
    if not header or not header.startswith(BEARER_PREFIX):
        return None
    token = header[len(BEARER_PREFIX):].strip()
    return token or None


def resolve_auth(header: Optional[str], service: AnimeService, tokens: TokenIssuer,
                 required: bool) -> AuthContext:
    token = bearer_token(header)
    if token is None:
        if required:
            raise AuthError("Authentication required")
        return AuthContext()
    try:
        user_id = tokens.user_id(token)
    except InvalidTokenError as e:
        logger.info("Rejected token: %s", e)
        raise AuthError("Invalid or expired token") from e
    user = service.repo.get_user(user_id)
    if not user:
        logger.info("Token for missing user id=%s", user_id)
        raise AuthError("User not found")
    return AuthContext(user=user)


def _authenticate(required: bool) -> AuthContext:
    return resolve_auth(request.headers.get("Authorization"), current_app.config["SERVICE"],
                        current_app.config["TOKENS"], required)


def auth_optional(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        return view(*args, auth=_authenticate(required=False), **kwargs)
    return wrapper


def auth_required(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        return view(*args, auth=_authenticate(required=True), **kwargs)
    return wrapper


def admin_required(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        ctx = _authenticate(required=True)
        if not ctx.user.is_admin:
            logger.warning("Admin route %s refused for user id=%s", request.path, ctx.user_id)
            raise ForbiddenError("Admin access required")
        return view(*args, auth=ctx, **kwargs)
    return wrapper
