"""Keeps a user's Gmail access token usable without user interaction.

``get_valid_token`` returns the stored token while it is comfortably inside
its lifetime and refreshes it otherwise. Refreshes for the same user are
serialized, so concurrent sends observing an expired token trigger a single
call to Google's token endpoint.
"""

from __future__ import annotations

import logging
import threading
import weakref
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Protocol

import requests

from mailcraft.errors import AuthExpired, AuthRequired

from .google_oauth import GMAIL_SEND_SCOPE, GoogleOAuthError, GoogleTokenExchange
from .grant_store import OAuthGrant
from .token_security import redact_sensitive_text

logger = logging.getLogger(__name__)

DEFAULT_SKEW_SECONDS = 300
DEFAULT_EXPIRES_IN_SECONDS = 3600

# Broader Gmail scopes that also allow sending.
IMPLIED_SCOPES: dict[str, frozenset[str]] = {
    GMAIL_SEND_SCOPE: frozenset(
        {
            "https://mail.google.com/",
            "https://www.googleapis.com/auth/gmail.compose",
            "https://www.googleapis.com/auth/gmail.modify",
        }
    ),
}


class TokenStore(Protocol):
    def get_grant(self, user_id: str, provider: str = "google") -> OAuthGrant | None: ...

    def save_refreshed_tokens(
        self,
        grant: OAuthGrant,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        scope: str | None,
        token_type: str | None = None,
    ) -> OAuthGrant: ...


class TokenRefresher(Protocol):
    def refresh_access_token(self, refresh_token: str) -> GoogleTokenExchange: ...


class TokenLifecycleManager:
    def __init__(
        self,
        store: TokenStore,
        oauth: TokenRefresher,
        required_scopes: Iterable[str] = (GMAIL_SEND_SCOPE,),
        skew_seconds: int = DEFAULT_SKEW_SECONDS,
        provider: str = "google",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._oauth = oauth
        self._required_scopes = tuple(required_scopes)
        self._skew = timedelta(seconds=max(0, skew_seconds))
        self._provider = provider
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # Entries disappear once no request holds the user's lock.
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._locks_guard = threading.Lock()

    def get_valid_token(self, user_id: str) -> str:
        grant = self._load_usable_grant(user_id)
        if self._is_fresh(grant):
            return grant.access_token or ""

        with self._user_lock(user_id):
            # Another request may have refreshed while this one waited.
            grant = self._load_usable_grant(user_id)
            if self._is_fresh(grant):
                return grant.access_token or ""
            return self._refresh(grant)

    def has_required_scopes(self, scopes: Iterable[str]) -> bool:
        granted = set(scopes)
        for scope in self._required_scopes:
            if scope in granted:
                continue
            if granted & IMPLIED_SCOPES.get(scope, frozenset()):
                continue
            return False
        return True

    def _load_usable_grant(self, user_id: str) -> OAuthGrant:
        grant = self._store.get_grant(user_id=user_id, provider=self._provider)
        if grant is None:
            logger.info("No %s grant stored for user %s", self._provider, user_id)
            raise AuthRequired(f"No {self._provider} grant stored for this user.")
        if not grant.refresh_token:
            logger.error(
                "Grant %s for user %s has no refresh token; the connect flow must "
                "request offline access",
                grant.id,
                user_id,
            )
            raise AuthRequired("Stored grant has no refresh token.")
        if not self.has_required_scopes(grant.scopes):
            missing = [scope for scope in self._required_scopes if scope not in grant.scopes]
            logger.warning(
                "Grant %s for user %s lacks required scope(s): %s",
                grant.id,
                user_id,
                ", ".join(missing),
            )
            raise AuthRequired(
                f"Stored grant lacks required scope(s): {', '.join(missing)}."
            )
        return grant

    def _is_fresh(self, grant: OAuthGrant) -> bool:
        if not grant.access_token or grant.expires_at is None:
            return False
        return self._clock() < grant.expires_at - self._skew

    def _refresh(self, grant: OAuthGrant) -> str:
        refresh_token = grant.refresh_token or ""
        try:
            refreshed = self._oauth.refresh_access_token(refresh_token)
        except (GoogleOAuthError, requests.RequestException) as exc:
            message = redact_sensitive_text(str(exc))
            logger.warning("Token refresh failed for user %s: %s", grant.user_id, message)
            raise AuthExpired(message) from exc

        expires_in = refreshed.expires_in
        if not isinstance(expires_in, int) or expires_in <= 0:
            expires_in = DEFAULT_EXPIRES_IN_SECONDS
        expires_at = self._clock() + timedelta(seconds=expires_in)
        # Persist a rotated refresh token whenever Google hands one back.
        self._store.save_refreshed_tokens(
            grant,
            access_token=refreshed.access_token,
            refresh_token=refreshed.refresh_token or refresh_token,
            expires_at=expires_at,
            scope=refreshed.scope,
            token_type=refreshed.token_type,
        )
        logger.info(
            "Refreshed %s access token for user %s (rotated refresh token: %s)",
            self._provider,
            grant.user_id,
            bool(refreshed.refresh_token and refreshed.refresh_token != refresh_token),
        )
        return refreshed.access_token

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[user_id] = lock
            return lock
