from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import parse_qs

import requests

from .grant_store import GrantStore, GrantUpsert, OAuthGrant
from .token_security import redact_sensitive_text

logger = logging.getLogger(__name__)

GMAIL_SEND_SCOPE = "https://www.googleapis.com/auth/gmail.send"
AUTHORIZATION_SCOPES = ("openid", "email", "profile", GMAIL_SEND_SCOPE)


class GoogleOAuthError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class GoogleTokenExchange:
    access_token: str
    refresh_token: str | None
    token_type: str | None
    scope: str | None
    expires_in: int | None


class GoogleOAuthService:
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        redirect_uri: str | None,
        timeout_seconds: int = 8,
    ) -> None:
        self.client_id = (client_id or "").strip()
        self.client_secret = (client_secret or "").strip()
        self.redirect_uri = (redirect_uri or "").strip()
        self.timeout_seconds = max(1, timeout_seconds)

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def connect_account(
        self,
        store: GrantStore,
        user_id: str,
        code: str,
        code_verifier: str | None = None,
    ) -> OAuthGrant:
        """Exchange an authorization code and create or update the user's grant."""
        self._ensure_configured()
        token = self.exchange_code(code=code, code_verifier=code_verifier)
        user_info = self.fetch_user_info(token.access_token)
        provider_account_id = self._read_provider_account_id(user_info)
        existing = store.get_grant(
            user_id=user_id,
            provider="google",
            provider_account_id=provider_account_id,
        )
        # Google only returns a refresh token on the first consent.
        refresh_token = token.refresh_token or (existing.refresh_token if existing else None)
        if not refresh_token:
            raise GoogleOAuthError(
                "Google did not return a refresh token. "
                "Reconnect with access_type=offline and prompt=consent."
            )
        scope = token.scope or (existing.scope_text if existing else None)

        grant = store.upsert_grant(
            GrantUpsert(
                user_id=user_id,
                provider="google",
                provider_account_id=provider_account_id,
                access_token=token.access_token,
                refresh_token=refresh_token,
                token_type=token.token_type,
                scope=scope,
                expires_at=expires_at_from(token.expires_in),
                status="active",
                meta={
                    "email": user_info.get("email"),
                    "email_verified": user_info.get("email_verified"),
                    "name": user_info.get("name"),
                    "picture": user_info.get("picture"),
                },
            )
        )
        logger.info("Stored Google grant for user %s", user_id)
        return grant

    def refresh_access_token(self, refresh_token: str) -> GoogleTokenExchange:
        self._ensure_configured()
        body = {
            "refresh_token": refresh_token.strip(),
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "refresh_token",
        }
        return self._post_token_request(body, action="refresh")

    def exchange_code(
        self, code: str, code_verifier: str | None = None
    ) -> GoogleTokenExchange:
        body = {
            "code": code.strip(),
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": self.redirect_uri,
            "grant_type": "authorization_code",
        }
        if code_verifier:
            body["code_verifier"] = code_verifier.strip()
        return self._post_token_request(body, action="token exchange")

    def fetch_user_info(self, access_token: str) -> dict[str, Any]:
        response = requests.get(
            self.USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=self.timeout_seconds,
        )
        if not response.ok:
            raise GoogleOAuthError(
                "Google userinfo fetch failed: "
                f"HTTP {response.status_code} {redact_sensitive_text(response.text.strip())}",
                status_code=response.status_code,
            )
        payload = response.json()
        if not isinstance(payload, dict):
            raise GoogleOAuthError("Google userinfo returned unexpected payload.")
        return payload

    def _post_token_request(self, body: dict[str, str], action: str) -> GoogleTokenExchange:
        response = requests.post(
            self.TOKEN_URL,
            data=body,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=self.timeout_seconds,
        )
        if not response.ok:
            detail = _extract_google_error(response)
            raise GoogleOAuthError(
                f"Google {action} failed: {detail}", status_code=response.status_code
            )

        payload = response.json()
        if not isinstance(payload, dict):
            raise GoogleOAuthError(f"Google {action} returned unexpected payload.")
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise GoogleOAuthError(f"Google {action} missing access_token.")

        expires_in_raw = payload.get("expires_in")
        expires_in: int | None = None
        if isinstance(expires_in_raw, int):
            expires_in = expires_in_raw
        elif isinstance(expires_in_raw, str) and expires_in_raw.isdigit():
            expires_in = int(expires_in_raw)

        return GoogleTokenExchange(
            access_token=access_token.strip(),
            refresh_token=_opt_str(payload.get("refresh_token")),
            token_type=_opt_str(payload.get("token_type")),
            scope=_opt_str(payload.get("scope")),
            expires_in=expires_in,
        )

    def _ensure_configured(self) -> None:
        if self.is_configured():
            return
        raise GoogleOAuthError(
            "Google OAuth is not configured. Set GOOGLE_CLIENT_ID, "
            "GOOGLE_CLIENT_SECRET, and GOOGLE_REDIRECT_URI."
        )

    @staticmethod
    def _read_provider_account_id(user_info: dict[str, Any]) -> str:
        sub = user_info.get("sub")
        if not isinstance(sub, str) or not sub.strip():
            raise GoogleOAuthError(
                "Google userinfo missing 'sub'. Ensure 'openid' scope is included."
            )
        return sub.strip()


def expires_at_from(
    expires_in: int | None, now: datetime | None = None
) -> datetime | None:
    if not isinstance(expires_in, int) or expires_in <= 0:
        return None
    return (now or datetime.now(timezone.utc)) + timedelta(seconds=expires_in)


def _opt_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value.strip() else None


def _extract_google_error(response: requests.Response) -> str:
    text = redact_sensitive_text(response.text.strip())
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        desc = payload.get("error_description")
        if isinstance(err, str) and isinstance(desc, str):
            return f"{err}: {desc}"
        if isinstance(err, str):
            return err
    if not text:
        return f"HTTP {response.status_code}"
    if "=" in text and "&" in text:
        parsed = parse_qs(text, keep_blank_values=True)
        err = parsed.get("error", [""])[0]
        desc = parsed.get("error_description", [""])[0]
        if err and desc:
            return f"{err}: {desc}"
    return text
