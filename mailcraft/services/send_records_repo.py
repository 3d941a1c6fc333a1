from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import requests

from .token_security import redact_sensitive_text


class SendStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class SendRecordStateError(RuntimeError):
    """Raised when a terminal transition targets a record that is no longer pending."""


@dataclass(frozen=True)
class Recipient:
    email: str
    name: str | None = None

    def as_json(self) -> dict[str, str]:
        out = {"email": self.email}
        if self.name:
            out["name"] = self.name
        return out


@dataclass(frozen=True)
class AttachmentRef:
    name: str
    url: str
    size: int
    type: str
    id: str | None = None

    def as_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "name": self.name,
            "url": self.url,
            "size": self.size,
            "type": self.type,
        }
        if self.id:
            out["id"] = self.id
        return out


@dataclass(frozen=True)
class NewSendRecord:
    owner_id: str
    chat_id: str
    subject: str
    sender_name: str
    sender_email: str
    recipients: list[Recipient]
    rendered_body: str
    attachments: list[AttachmentRef] = field(default_factory=list)


@dataclass(frozen=True)
class SendRecord:
    id: str
    owner_id: str
    chat_id: str
    subject: str
    sender_name: str
    sender_email: str
    recipients: list[Recipient]
    rendered_body: str
    attachments: list[AttachmentRef]
    status: SendStatus
    sent_at: datetime | None
    error_message: str | None
    metadata: dict[str, Any]
    created_at: datetime | None


class SendRecordsRepository:
    """Audit trail of send attempts, stored in a Supabase table via PostgREST.

    Terminal transitions patch with a ``status=eq.pending`` filter, so a record
    that already reached SENT or FAILED cannot be reopened or overwritten.
    """

    SELECT_COLUMNS = (
        "id,chat_id,user_id,subject,sender_name,sender_email,recipients,template_html,"
        "attachments,status,sent_at,error_message,metadata,created_at"
    )

    def __init__(
        self,
        supabase_url: str | None,
        supabase_service_role_key: str | None,
        table: str = "email_sends",
        timeout_seconds: int = 8,
    ) -> None:
        self.supabase_url = (supabase_url or "").rstrip("/")
        self.supabase_service_role_key = (supabase_service_role_key or "").strip()
        self.table = (table or "email_sends").strip()
        self.timeout_seconds = max(1, int(timeout_seconds))

    def is_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_role_key and self.table)

    def create_pending(self, record: NewSendRecord) -> SendRecord:
        self._ensure_configured()
        body = {
            "user_id": record.owner_id,
            "chat_id": record.chat_id,
            "subject": record.subject,
            "sender_name": record.sender_name,
            "sender_email": record.sender_email,
            "recipients": [recipient.as_json() for recipient in record.recipients],
            "template_html": record.rendered_body,
            "attachments": [attachment.as_json() for attachment in record.attachments],
            "status": SendStatus.PENDING.value,
            "metadata": {},
        }
        response = requests.post(
            self._table_url(),
            headers=self._headers(prefer="return=representation"),
            json=body,
            timeout=self.timeout_seconds,
        )
        self._raise_for_error(response, "insert send record")
        rows = response.json()
        if not isinstance(rows, list) or not rows or not isinstance(rows[0], dict):
            raise RuntimeError("Insert send record returned no rows.")
        return _to_send_record(rows[0])

    def mark_sent(
        self,
        record_id: str,
        sent_at: datetime,
        rendered_body: str,
        metadata: dict[str, Any],
    ) -> SendRecord:
        return self._transition(
            record_id,
            {
                "status": SendStatus.SENT.value,
                "sent_at": _to_iso(sent_at),
                "template_html": rendered_body,
                "metadata": metadata,
            },
        )

    def mark_failed(
        self,
        record_id: str,
        error_message: str,
        metadata: dict[str, Any],
        rendered_body: str | None = None,
    ) -> SendRecord:
        patch: dict[str, Any] = {
            "status": SendStatus.FAILED.value,
            "error_message": error_message,
            "metadata": metadata,
        }
        if rendered_body is not None:
            patch["template_html"] = rendered_body
        return self._transition(record_id, patch)

    def list_for_owner(
        self,
        owner_id: str,
        chat_id: str | None = None,
        limit: int = 50,
    ) -> list[SendRecord]:
        self._ensure_configured()
        params: dict[str, str] = {
            "select": self.SELECT_COLUMNS,
            "user_id": f"eq.{owner_id}",
            "order": "created_at.desc",
            "limit": str(max(1, limit)),
        }
        if chat_id:
            params["chat_id"] = f"eq.{chat_id}"
        response = requests.get(
            self._table_url(),
            headers=self._headers(),
            params=params,
            timeout=self.timeout_seconds,
        )
        self._raise_for_error(response, "fetch send records")
        payload = response.json()
        if not isinstance(payload, list):
            raise RuntimeError("Unexpected send records response payload.")
        return [_to_send_record(row) for row in payload if isinstance(row, dict)]

    def _transition(self, record_id: str, patch: dict[str, Any]) -> SendRecord:
        self._ensure_configured()
        response = requests.patch(
            self._table_url(),
            headers=self._headers(prefer="return=representation"),
            params={"id": f"eq.{record_id}", "status": f"eq.{SendStatus.PENDING.value}"},
            json=patch,
            timeout=self.timeout_seconds,
        )
        self._raise_for_error(response, "update send record")
        rows = response.json()
        if not isinstance(rows, list) or not rows or not isinstance(rows[0], dict):
            raise SendRecordStateError(
                f"Send record {record_id} is not pending; refusing to move it to "
                f"{patch.get('status')}."
            )
        return _to_send_record(rows[0])

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
            "Send records repository is not configured. "
            "Set SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY, and SEND_RECORDS_TABLE."
        )

    @staticmethod
    def _raise_for_error(response: requests.Response, action: str) -> None:
        if response.ok:
            return
        detail = redact_sensitive_text(response.text.strip())
        raise RuntimeError(
            f"Failed to {action}: HTTP {response.status_code} {detail or 'request failed'}"
        )


def _to_send_record(row: dict[str, Any]) -> SendRecord:
    raw_status = str(row.get("status") or "").lower()
    try:
        status = SendStatus(raw_status)
    except ValueError:
        status = SendStatus.PENDING
    return SendRecord(
        id=str(row.get("id", "")),
        owner_id=str(row.get("user_id", "")),
        chat_id=str(row.get("chat_id", "")),
        subject=str(row.get("subject") or ""),
        sender_name=str(row.get("sender_name") or ""),
        sender_email=str(row.get("sender_email") or ""),
        recipients=[
            Recipient(email=str(item.get("email") or ""), name=item.get("name") or None)
            for item in _as_list(row.get("recipients"))
        ],
        rendered_body=str(row.get("template_html") or ""),
        attachments=[
            AttachmentRef(
                name=str(item.get("name") or ""),
                url=str(item.get("url") or ""),
                size=_as_int(item.get("size")),
                type=str(item.get("type") or ""),
                id=item.get("id") or None,
            )
            for item in _as_list(row.get("attachments"))
        ],
        status=status,
        sent_at=_parse_time(row.get("sent_at")),
        error_message=row.get("error_message") or None,
        metadata=row.get("metadata") if isinstance(row.get("metadata"), dict) else {},
        created_at=_parse_time(row.get("created_at")),
    )


def _as_list(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return 0


def _to_iso(value: datetime) -> str:
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
