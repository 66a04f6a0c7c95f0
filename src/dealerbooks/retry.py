"""Refresh-and-retry-once policy for Fortnox calls rejected with an expired token."""

import functools
import logging
from collections.abc import Callable

from dealerbooks.errors import ReconnectRequired, UpstreamError

logger = logging.getLogger(__name__)


def _is_token_expired(exc: Exception) -> bool:
    """True when the upstream rejected the access token (and a refresh may help)."""
    if isinstance(exc, ReconnectRequired):
        return False
    return isinstance(exc, UpstreamError) and exc.token_expired


def retry_on_token_expiry(refresh: Callable[[], str]):
    """Decorator for calls whose first positional argument is the access token.

    When the call fails with an expired-token ``UpstreamError``, ``refresh`` is
    invoked once to obtain a new access token and the call is repeated exactly
    once with it. Every other error, and any failure of the retry itself,
    propagates unchanged.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(access_token: str, *args, **kwargs):
            try:
                return func(access_token, *args, **kwargs)
            except UpstreamError as exc:
                if not _is_token_expired(exc):
                    raise
                logger.warning(
                    "Access token rejected in %s, refreshing and retrying once: %s",
                    getattr(func, "__name__", "call"),
                    exc,
                )
            fresh_token = refresh()
            return func(fresh_token, *args, **kwargs)

        return wrapper

    return decorator
