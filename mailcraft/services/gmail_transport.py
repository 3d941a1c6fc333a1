from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import requests

from mailcraft.config import DEFAULT_PREFLIGHT_URL

from .token_security import redact_sensitive_text

logger = logging.getLogger(__name__)


class GmailApiError(RuntimeError):
    """A failed Gmail call. ``status_code`` is None when no response arrived."""

    def __init__(self, message: str, status_code: int | None = None, reason: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason


@dataclass(frozen=True)
class GmailIdentity:
    email: str | None
    subject: str | None


@dataclass(frozen=True)
class SentMessage:
    id: str
    thread_id: str | None
    label_ids: list[str]


class GmailTransportClient:
    SEND_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"

    def __init__(
        self,
        timeout_seconds: int = 10,
        preflight_url: str = DEFAULT_PREFLIGHT_URL,
    ) -> None:
        self.timeout_seconds = max(1, timeout_seconds)
        self.preflight_url = preflight_url

    def verify_identity(self, access_token: str) -> GmailIdentity:
        """Cheap authenticated call proving the token is usable before a send."""
        payload = self._request_json("GET", self.preflight_url, access_token)
        # userinfo answers with "email"/"sub"; the Gmail profile with "emailAddress".
        email = payload.get("email") or payload.get("emailAddress")
        subject = payload.get("sub")
        return GmailIdentity(
            email=email if isinstance(email, str) else None,
            subject=subject if isinstance(subject, str) else None,
        )

    def send_raw(self, access_token: str, raw_message: str) -> SentMessage:
        payload = self._request_json(
            "POST",
            self.SEND_URL,
            access_token,
            body={"raw": raw_message},
        )
        message_id = str(payload.get("id") or "").strip()
        if not message_id:
            raise GmailApiError("Gmail returned an unexpected send payload.")
        thread_id = str(payload.get("threadId") or "").strip() or None
        labels = payload.get("labelIds")
        return SentMessage(
            id=message_id,
            thread_id=thread_id,
            label_ids=[str(label) for label in labels] if isinstance(labels, list) else [],
        )

    def _request_json(
        self,
        method: str,
        url: str,
        access_token: str,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {
            "Accept": "application/json",
            "Authorization": f"Bearer {access_token}",
        }
        try:
            response = requests.request(
                method,
                url,
                headers=headers,
                json=body,
                timeout=self.timeout_seconds,
            )
        except requests.Timeout as exc:
            raise GmailApiError(
                f"Gmail request timed out after {self.timeout_seconds}s."
            ) from exc
        except requests.RequestException as exc:
            raise GmailApiError(
                f"Gmail request failed: {redact_sensitive_text(str(exc))}"
            ) from exc

        if not response.ok:
            message, reason = _extract_gmail_error(response)
            logger.info("Gmail %s %s failed with HTTP %s", method, url, response.status_code)
            raise GmailApiError(
                f"Gmail API failed ({response.status_code}): {message}",
                status_code=response.status_code,
                reason=reason,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise GmailApiError("Gmail returned a non-JSON payload.") from exc
        if not isinstance(payload, dict):
            raise GmailApiError("Gmail returned an unexpected payload.")
        return payload


def _extract_gmail_error(response: requests.Response) -> tuple[str, str]:
    text = redact_sensitive_text(response.text.strip())
    try:
        parsed = response.json()
    except ValueError:
        return (text or f"HTTP {response.status_code}", "")
    if not isinstance(parsed, dict):
        return (text or f"HTTP {response.status_code}", "")
    nested = parsed.get("error")
    if isinstance(nested, str):
        # OAuth-style error bodies: {"error": "invalid_token", "error_description": ...}
        desc = parsed.get("error_description")
        message = f"{nested}: {desc}" if isinstance(desc, str) else nested
        return (redact_sensitive_text(message), nested)
    if not isinstance(nested, dict):
        return (text or f"HTTP {response.status_code}", "")
    message = str(nested.get("message") or "").strip() or f"HTTP {response.status_code}"
    reason = ""
    errors = nested.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        reason = str(errors[0].get("reason") or "")
    if reason:
        message = f"{message} [{reason}]"
    return (redact_sensitive_text(message), reason)
