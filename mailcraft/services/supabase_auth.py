from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import requests


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    email: str | None
    name: str | None


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    raw = authorization.strip()
    if not raw:
        return None
    if not raw.lower().startswith("bearer "):
        return None
    token = raw[7:].strip()
    return token or None


def fetch_supabase_user(
    access_token: str,
    supabase_url: str | None,
    supabase_anon_key: str | None,
    timeout_seconds: int = 5,
) -> AuthenticatedUser:
    url = (supabase_url or "").strip().rstrip("/")
    anon_key = (supabase_anon_key or "").strip()
    if not url or not anon_key:
        raise RuntimeError(
            "SUPABASE_URL and SUPABASE_ANON_KEY are required to validate bearer auth."
        )

    response = requests.get(
        f"{url}/auth/v1/user",
        headers={
            "Authorization": f"Bearer {access_token}",
            "apikey": anon_key,
        },
        timeout=max(1, timeout_seconds),
    )
    if response.status_code == 401:
        raise ValueError("Invalid or expired access token.")
    if not response.ok:
        raise RuntimeError(f"Auth provider unavailable: HTTP {response.status_code}")

    payload = response.json()
    if not isinstance(payload, dict):
        raise RuntimeError("Auth provider returned unexpected payload.")
    user_id = payload.get("id")
    if not isinstance(user_id, str) or not user_id.strip():
        raise ValueError("Access token missing user id.")
    return AuthenticatedUser(
        id=user_id.strip(),
        email=_opt_str(payload.get("email")),
        name=_display_name(payload.get("user_metadata")),
    )


def resolve_user_from_authorization(
    authorization: str | None,
    supabase_url: str | None,
    supabase_anon_key: str | None,
    timeout_seconds: int = 5,
) -> AuthenticatedUser:
    token = extract_bearer_token(authorization)
    if not token:
        raise ValueError("Bearer token required.")
    return fetch_supabase_user(
        access_token=token,
        supabase_url=supabase_url,
        supabase_anon_key=supabase_anon_key,
        timeout_seconds=timeout_seconds,
    )


def _display_name(metadata: Any) -> str | None:
    if not isinstance(metadata, dict):
        return None
    for key in ("full_name", "name"):
        value = _opt_str(metadata.get(key))
        if value:
            return value
    return None


def _opt_str(value: Any) -> str | None:
    return value.strip() if isinstance(value, str) and value.strip() else None
