"""Fortnox OAuth2 credential lifecycle.

One active ``FortnoxIntegration`` row per user holds the access/refresh token
pair. Access tokens are short-lived; ``ensure_fresh`` swaps an expired one
for a new pair before any API call and persists the result.
"""

import logging
import secrets
from datetime import UTC, datetime, timedelta

import sqlalchemy as sa
from sqlalchemy.orm import Session

from dealerbooks.db import FortnoxIntegration, log_fortnox_error
from dealerbooks.errors import NotFoundError, ReconnectRequired, UpstreamError, ValidationError
from dealerbooks.logging_config import mask_token
from dealerbooks.retry import retry_on_token_expiry

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def is_expired(integration: FortnoxIntegration, now: datetime | None = None) -> bool:
    """True when the access token is at or past its expiry (or has none recorded)."""
    if integration.token_expires_at is None:
        return True
    now = now or datetime.now(UTC)
    return now >= as_utc(integration.token_expires_at)


class TokenManager:
    def __init__(self, engine, client, redirect_uri: str = "", scope: str = ""):
        self.engine = engine
        self.client = client
        self.redirect_uri = redirect_uri
        self.scope = scope

    def get_active_integration(self, session: Session, user_id: str) -> FortnoxIntegration:
        integration = session.scalars(
            sa.select(FortnoxIntegration)
            .where(
                FortnoxIntegration.user_id == user_id,
                FortnoxIntegration.is_active.is_(True),
            )
            .order_by(FortnoxIntegration.created_at.desc())
        ).first()
        if not integration:
            raise NotFoundError(
                "No active Fortnox integration found. Please connect to Fortnox first."
            )
        return integration

    def ensure_fresh(self, session: Session, integration: FortnoxIntegration) -> str:
        """Return a usable access token, refreshing first if the stored one has expired."""
        if not is_expired(integration):
            return integration.access_token
        logger.info(
            "Fortnox access token expired at %s, refreshing",
            integration.token_expires_at,
            extra={"user_id": integration.user_id},
        )
        return self.force_refresh(session, integration)

    def force_refresh(self, session: Session, integration: FortnoxIntegration) -> str:
        """Exchange the refresh token for a new pair and persist it.

        Raises ReconnectRequired when there is no refresh token or Fortnox
        rejects it; the failure is recorded in the error log first.
        """
        if not integration.refresh_token:
            self._record_refresh_failure(session, integration, "Missing refresh token", {})
            raise ReconnectRequired(
                "Access token expired and no refresh token available. "
                "Please reconnect to Fortnox."
            )

        try:
            tokens = self.client.refresh_token(integration.refresh_token)
        except UpstreamError as exc:
            self._record_refresh_failure(
                session,
                integration,
                "Fortnox refresh failed",
                {"status": exc.upstream_status, "response": exc.body},
            )
            raise ReconnectRequired(
                f"Token refresh failed: {exc.message}. Please reconnect to Fortnox.",
                upstream_status=exc.upstream_status,
                body=exc.body,
            ) from exc

        self._store_tokens(integration, tokens)
        session.commit()
        logger.info(
            "Fortnox token refreshed (%s), new expiry %s",
            mask_token(integration.access_token),
            integration.token_expires_at.isoformat(),
            extra={"user_id": integration.user_id},
        )
        return integration.access_token

    def call_with_token(self, user_id: str, func, *args, **kwargs):
        """Run ``func(access_token, *args)`` for the user's integration.

        The token is refreshed first when expired, and once more if Fortnox
        rejects it mid-call.
        """
        with Session(self.engine) as session:
            integration = self.get_active_integration(session, user_id)
            access_token = self.ensure_fresh(session, integration)
            wrapped = retry_on_token_expiry(lambda: self.force_refresh(session, integration))(func)
            return wrapped(access_token, *args, **kwargs)

    def _store_tokens(self, integration: FortnoxIntegration, tokens: dict) -> None:
        now = datetime.now(UTC)
        integration.access_token = tokens["access_token"]
        # Fortnox rotates refresh tokens, but keep the old one if none came back
        integration.refresh_token = tokens.get("refresh_token") or integration.refresh_token
        integration.token_expires_at = now + timedelta(
            seconds=int(tokens.get("expires_in") or DEFAULT_EXPIRES_IN)
        )
        integration.updated_at = now

    def _record_refresh_failure(
        self, session: Session, integration: FortnoxIntegration, message: str, context: dict
    ) -> None:
        logger.error(message, extra={"user_id": integration.user_id})
        log_fortnox_error(session, integration.user_id, "refresh_token_error", message, context)
        session.commit()

    # Connect / disconnect

    def begin_connect(self, user_id: str, redirect_uri: str | None = None) -> dict:
        """Create a pending integration row holding a fresh OAuth state; return the consent URL."""
        state = secrets.token_urlsafe(32)
        with Session(self.engine) as session:
            session.add(FortnoxIntegration(user_id=user_id, oauth_state=state, is_active=False))
            session.commit()

        auth_url = self.client.authorization_url(
            redirect_uri or self.redirect_uri, state, self.scope
        )
        logger.info("Generated Fortnox consent URL", extra={"user_id": user_id})
        return {"auth_url": auth_url, "state": state}

    def connect(
        self, user_id: str, code: str, state: str, redirect_uri: str | None = None
    ) -> dict:
        """Finish the OAuth flow: exchange the code and activate the integration.

        Any previously active integration for the user is deactivated so that
        at most one stays active.
        """
        if not code:
            raise ValidationError("Missing authorization code")
        if not state:
            raise ValidationError("Missing OAuth state")

        with Session(self.engine) as session:
            pending = session.scalars(
                sa.select(FortnoxIntegration).where(
                    FortnoxIntegration.user_id == user_id,
                    FortnoxIntegration.oauth_state == state,
                )
            ).first()
            if not pending:
                raise ValidationError("Unknown or expired OAuth state")

            tokens = self.client.exchange_code(code, redirect_uri or self.redirect_uri)
            company_name = self.client.get_company_name(tokens["access_token"])

            # Consents started but never completed
            session.execute(
                sa.delete(FortnoxIntegration).where(
                    FortnoxIntegration.user_id == user_id,
                    FortnoxIntegration.id != pending.id,
                    FortnoxIntegration.oauth_state.is_not(None),
                    FortnoxIntegration.is_active.is_(False),
                )
            )
            session.execute(
                sa.update(FortnoxIntegration)
                .where(
                    FortnoxIntegration.user_id == user_id,
                    FortnoxIntegration.id != pending.id,
                )
                .values(is_active=False, updated_at=datetime.now(UTC))
            )

            self._store_tokens(pending, tokens)
            pending.company_name = company_name
            pending.oauth_state = None
            pending.is_active = True
            session.commit()

        logger.info("Fortnox connected for %s", company_name, extra={"user_id": user_id})
        return {"success": True, "company_name": company_name}

    def disconnect(self, user_id: str) -> dict:
        with Session(self.engine) as session:
            session.execute(
                sa.update(FortnoxIntegration)
                .where(FortnoxIntegration.user_id == user_id)
                .values(is_active=False, updated_at=datetime.now(UTC))
            )
            session.commit()
        logger.info("Fortnox disconnected", extra={"user_id": user_id})
        return {"success": True}

    def status(self, user_id: str) -> dict:
        with Session(self.engine) as session:
            try:
                integration = self.get_active_integration(session, user_id)
            except NotFoundError:
                return {"success": True, "connected": False}
            return {
                "success": True,
                "connected": True,
                "company_name": integration.company_name,
                "connected_since": integration.created_at.isoformat(),
                "token_expires_at": (
                    integration.token_expires_at.isoformat()
                    if integration.token_expires_at
                    else None
                ),
            }
