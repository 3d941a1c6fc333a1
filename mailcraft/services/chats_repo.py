from __future__ import annotations

import requests

from .token_security import redact_sensitive_text


class ChatsRepository:
    """Read-only ownership check against the chats table managed elsewhere."""

    def __init__(
        self,
        supabase_url: str | None,
        supabase_service_role_key: str | None,
        table: str = "chats",
        timeout_seconds: int = 8,
    ) -> None:
        self.supabase_url = (supabase_url or "").rstrip("/")
        self.supabase_service_role_key = (supabase_service_role_key or "").strip()
        self.table = (table or "chats").strip()
        self.timeout_seconds = max(1, int(timeout_seconds))

    def is_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key and self.table)

    def is_owned_by(self, chat_id: str, user_id: str) -> bool:
        if not self.is_configured():
            raise RuntimeError(
                "Chats repository is not configured. "
                "Set SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY, and CHATS_TABLE."
            )
        response = requests.get(
            f"{self.supabase_url}/rest/v1/{self.table}",
            headers={
                "apikey": self.supabase_service_role_key,
                "Authorization": f"Bearer {self.supabase_service_role_key}",
            },
            params={
                "select": "id",
                "id": f"eq.{chat_id}",
                "user_id": f"eq.{user_id}",
                "limit": "1",
            },
            timeout=self.timeout_seconds,
        )
        if not response.ok:
            detail = redact_sensitive_text(response.text.strip())
            raise RuntimeError(
                f"Failed to fetch chat: HTTP {response.status_code} {detail or 'request failed'}"
            )
        payload = response.json()
        return isinstance(payload, list) and len(payload) > 0
