from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import requests

from .token_security import TokenCipher, redact_sensitive_text


@dataclass(frozen=True)
class OAuthGrant:
    id: str
    user_id: str
    provider: str
    provider_account_id: str
    access_token: str | None
    refresh_token: str | None
    token_type: str | None
    scopes: frozenset[str]
    expires_at: datetime | None
    status: str
    meta: dict[str, Any]
    updated_at: datetime | None

    @property
    def scope_text(self) -> str:
        return " ".join(sorted(self.scopes))


@dataclass(frozen=True)
class GrantUpsert:
    user_id: str
    provider: str
    provider_account_id: str
    access_token: str | None = None
    refresh_token: str | None = None
    token_type: str | None = None
    scope: str | None = None
    expires_at: datetime | None = None
    status: str = "active"
    meta: dict[str, Any] | None = None


class GrantStore:
    """OAuth grants persisted in a Supabase table through PostgREST.

    Grants are created by the connect flow and updated in place by token
    refreshes. This store never deletes them.
    """

    def __init__(
        self,
        supabase_url: str | None,
        supabase_service_role_key: str | None,
        table: str = "connected_accounts",
        timeout_seconds: int = 8,
        token_cipher: TokenCipher | None = None,
    ) -> None:
        self.supabase_url = (supabase_url or "").rstrip("/")
        self.supabase_service_role_key = (supabase_service_role_key or "").strip()
        self.table = (table or "connected_accounts").strip()
        self.timeout_seconds = max(1, int(timeout_seconds))
        self.token_cipher = token_cipher or TokenCipher(None)

    def is_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key and self.table)

    def get_grant(
        self,
        user_id: str,
        provider: str = "google",
        provider_account_id: str | None = None,
    ) -> OAuthGrant | None:
        self._ensure_configured()
        params: dict[str, str] = {
            "select": (
                "id,user_id,provider,provider_account_id,access_token,refresh_token,"
                "token_type,scope,expires_at,status,meta,updated_at"
            ),
            "user_id": f"eq.{user_id}",
            "provider": f"eq.{provider.strip().lower()}",
            "status": "eq.active",
            "deleted_at": "is.null",
            "order": "updated_at.desc",
            "limit": "1",
        }
        if provider_account_id:
            params["provider_account_id"] = f"eq.{provider_account_id}"

        response = requests.get(
            self._table_url(),
            headers=self._headers(),
            params=params,
            timeout=self.timeout_seconds,
        )
        self._raise_for_error(response, "fetch oauth grant")
        payload = response.json()
        if not isinstance(payload, list):
            raise RuntimeError("Unexpected oauth grant response payload.")
        for row in payload:
            if isinstance(row, dict):
                return _to_grant(row, token_cipher=self.token_cipher)
        return None

    def upsert_grant(self, payload: GrantUpsert) -> OAuthGrant:
        existing = self.get_grant(
            user_id=payload.user_id,
            provider=payload.provider,
            provider_account_id=payload.provider_account_id,
        )
        if existing is None:
            return self._insert(payload)
        return self._patch(
            grant_id=existing.id,
            patch={
                "access_token": payload.access_token,
                "refresh_token": payload.refresh_token,
                "token_type": payload.token_type,
                "scope": payload.scope,
                "expires_at": _to_iso(payload.expires_at),
                "status": payload.status,
                "meta": payload.meta or {},
            },
        )

    def save_refreshed_tokens(
        self,
        grant: OAuthGrant,
        *,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
        scope: str | None,
        token_type: str | None = None,
    ) -> OAuthGrant:
        return self._patch(
            grant_id=grant.id,
            patch={
                "access_token": access_token,
                "refresh_token": refresh_token,
                "expires_at": _to_iso(expires_at),
                "scope": scope if scope is not None else grant.scope_text,
                "token_type": token_type or grant.token_type,
            },
        )

    def _insert(self, payload: GrantUpsert) -> OAuthGrant:
        self._ensure_configured()
        body = {
            "user_id": payload.user_id,
            "provider": payload.provider.strip().lower(),
            "provider_account_id": payload.provider_account_id,
            "access_token": self.token_cipher.encrypt(payload.access_token),
            "refresh_token": self.token_cipher.encrypt(payload.refresh_token),
            "token_type": payload.token_type,
            "scope": payload.scope,
            "expires_at": _to_iso(payload.expires_at),
            "status": payload.status,
            "meta": payload.meta or {},
        }
        response = requests.post(
            self._table_url(),
            headers=self._headers(prefer="return=representation"),
            json=body,
            timeout=self.timeout_seconds,
        )
        self._raise_for_error(response, "insert oauth grant")
        return self._single_row(response, "Insert oauth grant returned no rows.")

    def _patch(self, grant_id: str, patch: dict[str, Any]) -> OAuthGrant:
        self._ensure_configured()
        clean_patch = {
            key: self.token_cipher.encrypt(value)
            if key in {"access_token", "refresh_token"}
            else value
            for key, value in patch.items()
        }
        response = requests.patch(
            self._table_url(),
            headers=self._headers(prefer="return=representation"),
            params={"id": f"eq.{grant_id}"},
            json=clean_patch,
            timeout=self.timeout_seconds,
        )
        self._raise_for_error(response, "update oauth grant")
        return self._single_row(response, "Update oauth grant returned no rows.")

    def _single_row(self, response: requests.Response, empty_message: str) -> OAuthGrant:
        rows = response.json()
        if not isinstance(rows, list) or not rows or not isinstance(rows[0], dict):
            raise RuntimeError(empty_message)
        return _to_grant(rows[0], token_cipher=self.token_cipher)

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {
            "apikey": self.supabase_service_role_key,
            "Authorization": f"Bearer {self.supabase_service_role_key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _table_url(self) -> str:
        return f"{self.supabase_url}/rest/v1/{self.table}"

    def _ensure_configured(self) -> None:
        if self.is_configured():
            return
        raise RuntimeError(
            "Grant store is not configured. "
            "Set SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY, and GRANTS_TABLE."
        )

    @staticmethod
    def _raise_for_error(response: requests.Response, action: str) -> None:
        if response.ok:
            return
        detail = redact_sensitive_text(response.text.strip())
        raise RuntimeError(
            f"Failed to {action}: HTTP {response.status_code} {detail or 'request failed'}"
        )


def split_scopes(scope_text: str | None) -> frozenset[str]:
    raw = (scope_text or "").strip()
    if not raw:
        return frozenset()
    return frozenset(token for token in raw.replace(",", " ").split(" ") if token)


def _to_grant(row: dict[str, Any], token_cipher: TokenCipher) -> OAuthGrant:
    return OAuthGrant(
        id=str(row.get("id", "")),
        user_id=str(row.get("user_id", "")),
        provider=str(row.get("provider", "")),
        provider_account_id=str(row.get("provider_account_id", "")),
        access_token=token_cipher.decrypt(_opt_str(row.get("access_token"))),
        refresh_token=token_cipher.decrypt(_opt_str(row.get("refresh_token"))),
        token_type=_opt_str(row.get("token_type")),
        scopes=split_scopes(_opt_str(row.get("scope"))),
        expires_at=_parse_time(row.get("expires_at")),
        status=str(row.get("status", "")),
        meta=row.get("meta") if isinstance(row.get("meta"), dict) else {},
        updated_at=_parse_time(row.get("updated_at")),
    )


def _opt_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value != "" else None


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_time(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
