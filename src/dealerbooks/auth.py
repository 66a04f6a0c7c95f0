"""Bearer-credential gate over user profiles.

Only the sha256 hash of an API token is stored; the plaintext is shown once
when issued.
"""

import hashlib
import logging
import secrets

import sqlalchemy as sa
from sqlalchemy.orm import Session

from dealerbooks.db import Profile
from dealerbooks.errors import AuthError, NotFoundError

logger = logging.getLogger(__name__)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def issue_token(session: Session, user_id: str) -> str:
    """Generate a new API token for a profile, replacing any previous one."""
    profile = session.get(Profile, user_id)
    if not profile:
        raise NotFoundError(f"Profile {user_id} not found")
    token = secrets.token_urlsafe(32)
    profile.api_token_hash = hash_token(token)
    session.commit()
    return token


def _bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise AuthError("Missing authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthError("Invalid authorization header")
    return token.strip()


def authenticate(session: Session, authorization: str | None) -> Profile:
    """Resolve an ``Authorization: Bearer <token>`` header to an active profile."""
    token = _bearer_token(authorization)
    profile = session.scalars(
        sa.select(Profile).where(Profile.api_token_hash == hash_token(token))
    ).first()
    if not profile or not profile.is_active:
        logger.warning("Rejected request with unknown or inactive credential")
        raise AuthError("Invalid user token")
    return profile


def require_same_user(profile: Profile, user_id: str | None) -> None:
    """Reject requests acting on behalf of a different user than the authenticated one."""
    if user_id and user_id != profile.user_id:
        logger.warning(
            "Profile mismatch: token user %s, requested user %s",
            profile.user_id,
            user_id,
            extra={"user_id": profile.user_id},
        )
        raise AuthError("User does not match the authenticated profile", status_code=403)
