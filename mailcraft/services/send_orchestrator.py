"""Send use case: validate, audit, authorize, render, transmit, reconcile.

A request that fails validation is rejected before any audit row exists.
Every later failure ends with the PENDING record moved to FAILED and one
``SendError`` returned to the caller. The orchestrator does not deduplicate:
two identical calls create two records and may deliver two emails.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Protocol, Union

from mailcraft.errors import SendError, TransportError, ValidationError, classify_provider_failure

from .email_renderer import MessageHeaders, RenderedMessage
from .gmail_transport import GmailApiError, GmailIdentity, SentMessage
from .send_records_repo import (
    AttachmentRef,
    NewSendRecord,
    Recipient,
    SendRecord,
    SendStatus,
)
from .token_security import redact_sensitive_text

logger = logging.getLogger(__name__)

DEFAULT_SENDER_NAME = "User"
MAX_SUBJECT_LENGTH = 500


class RecordStore(Protocol):
    def create_pending(self, record: NewSendRecord) -> SendRecord: ...

    def mark_sent(
        self,
        record_id: str,
        sent_at: datetime,
        rendered_body: str,
        metadata: dict[str, Any],
    ) -> SendRecord: ...

    def mark_failed(
        self,
        record_id: str,
        error_message: str,
        metadata: dict[str, Any],
        rendered_body: str | None = None,
    ) -> SendRecord: ...


class TokenProvider(Protocol):
    def get_valid_token(self, user_id: str) -> str: ...


class Transport(Protocol):
    def verify_identity(self, access_token: str) -> GmailIdentity: ...

    def send_raw(self, access_token: str, raw_message: str) -> SentMessage: ...


class Renderer(Protocol):
    def render(self, html_body: str, headers: MessageHeaders) -> RenderedMessage: ...


@dataclass(frozen=True)
class SenderIdentity:
    user_id: str
    email: str | None
    name: str | None = None


@dataclass(frozen=True)
class SendCommand:
    chat_id: str
    subject: str
    template: str
    recipients: list[Recipient]
    sender_name: str | None = None
    reply_to: str | None = None
    attachments: list[AttachmentRef] = field(default_factory=list)


@dataclass(frozen=True)
class SendSucceeded:
    record: SendRecord
    provider_message_id: str
    provider_thread_id: str | None
    recipient_count: int
    timestamp: datetime


@dataclass(frozen=True)
class SendFailed:
    error: SendError
    record: SendRecord | None = None


SendOutcome = Union[SendSucceeded, SendFailed]


def filter_recipients(recipients: list[Recipient]) -> list[Recipient]:
    out: list[Recipient] = []
    for recipient in recipients:
        email = (recipient.email or "").strip()
        # Header values must stay on one line.
        if "@" in email and "." in email and not _has_line_break(email):
            out.append(Recipient(email=email, name=recipient.name))
    return out


def _has_line_break(value: str) -> bool:
    return "\r" in value or "\n" in value


def _single_line(value: str | None) -> str:
    return " ".join((value or "").split())


class SendOrchestrator:
    def __init__(
        self,
        records: RecordStore,
        tokens: TokenProvider,
        transport: Transport,
        renderer: Renderer,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._records = records
        self._tokens = tokens
        self._transport = transport
        self._renderer = renderer
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def send(self, sender: SenderIdentity, command: SendCommand) -> SendOutcome:
        try:
            recipients = self.validate(sender, command)
        except ValidationError as exc:
            logger.info("Rejected send request from user %s: %s", sender.user_id, exc.diagnostic)
            return SendFailed(error=exc)

        sender_email = sender.email or ""
        sender_name = (
            (command.sender_name or "").strip()
            or _single_line(sender.name)
            or DEFAULT_SENDER_NAME
        )
        record = self._records.create_pending(
            NewSendRecord(
                owner_id=sender.user_id,
                chat_id=command.chat_id.strip(),
                subject=command.subject.strip(),
                sender_name=sender_name,
                sender_email=sender_email,
                recipients=recipients,
                rendered_body=command.template,
                attachments=list(command.attachments),
            )
        )
        logger.info(
            "Send %s pending: %d recipient(s), %d attachment(s), chat %s",
            record.id,
            len(recipients),
            len(command.attachments),
            record.chat_id,
        )

        rendered_html: str | None = None
        try:
            token = self._tokens.get_valid_token(sender.user_id)
            self._preflight(record, token)
            rendered = self._renderer.render(
                command.template,
                MessageHeaders(
                    to=[recipient.email for recipient in recipients],
                    from_email=sender_email,
                    from_name=sender_name,
                    subject=command.subject.strip(),
                    reply_to=(command.reply_to or "").strip() or None,
                ),
            )
            rendered_html = rendered.html
            sent = self._transmit(record, token, rendered)
        except SendError as exc:
            return self._fail(record, exc, rendered_html)
        except Exception as exc:
            logger.exception("Send %s failed unexpectedly", record.id)
            return self._fail(
                record, TransportError(redact_sensitive_text(str(exc))), rendered_html
            )
        return self._succeed(record, sent, rendered.html, len(recipients))

    def validate(self, sender: SenderIdentity, command: SendCommand) -> list[Recipient]:
        """Raise ``ValidationError`` for a request that must not be audited or sent."""
        if not (command.subject or "").strip() or not (command.template or "").strip() or not (
            command.chat_id or ""
        ).strip():
            raise ValidationError(
                "Missing required fields.",
                details="Subject, template, and chat ID are required.",
            )
        if len(command.subject.strip()) > MAX_SUBJECT_LENGTH:
            raise ValidationError(
                "Subject is too long.",
                details=f"Subject must be at most {MAX_SUBJECT_LENGTH} characters.",
            )
        for label, value in (
            ("Subject", command.subject),
            ("Sender name", command.sender_name),
            ("Reply-To", command.reply_to),
            ("Sender email", sender.email),
        ):
            if value and _has_line_break(value):
                raise ValidationError(
                    f"{label} contains a line break.",
                    details=f"{label} must be a single line.",
                )
        if not sender.email:
            raise ValidationError(
                "Authenticated user has no email address.",
                details="Cannot send email without authenticated user email.",
            )
        recipients = filter_recipients(command.recipients)
        if not recipients:
            raise ValidationError(
                "No valid recipient emails provided.",
                details="At least one valid recipient email is required.",
            )
        return recipients

    def _preflight(self, record: SendRecord, token: str) -> None:
        try:
            self._transport.verify_identity(token)
        except GmailApiError as exc:
            logger.warning(
                "Pre-flight for send %s failed (HTTP %s): %s", record.id, exc.status_code, exc
            )
            raise classify_provider_failure(exc.status_code, str(exc)) from exc

    def _transmit(self, record: SendRecord, token: str, rendered: RenderedMessage) -> SentMessage:
        try:
            return self._transport.send_raw(token, rendered.raw_base64url)
        except GmailApiError as exc:
            logger.warning(
                "Gmail send %s failed (HTTP %s): %s", record.id, exc.status_code, exc
            )
            raise classify_provider_failure(exc.status_code, str(exc)) from exc

    def _succeed(
        self,
        record: SendRecord,
        sent: SentMessage,
        rendered_html: str,
        recipient_count: int,
    ) -> SendSucceeded:
        sent_at = self._clock()
        metadata = {
            "providerMessageId": sent.id,
            "providerThreadId": sent.thread_id,
            "labelIds": sent.label_ids,
            "service": "Gmail API",
            "emailFormat": "simple-html",
        }
        try:
            record = self._records.mark_sent(
                record.id, sent_at=sent_at, rendered_body=rendered_html, metadata=metadata
            )
        except Exception:
            # The provider already accepted the message; report the send as done.
            logger.exception("Could not mark send %s as sent", record.id)
            record = replace(
                record, status=SendStatus.SENT, sent_at=sent_at, metadata=metadata
            )
        logger.info(
            "Send %s delivered to Gmail: message %s, thread %s",
            record.id,
            sent.id,
            sent.thread_id,
        )
        return SendSucceeded(
            record=record,
            provider_message_id=sent.id,
            provider_thread_id=sent.thread_id,
            recipient_count=recipient_count,
            timestamp=sent_at,
        )

    def _fail(
        self, record: SendRecord, error: SendError, rendered_html: str | None
    ) -> SendFailed:
        logger.info("Send %s failed with %s", record.id, error.code.value)
        metadata = {"errorCode": error.code.value}
        try:
            record = self._records.mark_failed(
                record.id,
                error_message=error.diagnostic,
                metadata=metadata,
                rendered_body=rendered_html,
            )
        except Exception:
            logger.exception("Could not mark send %s as failed", record.id)
            record = replace(
                record,
                status=SendStatus.FAILED,
                error_message=error.diagnostic,
                metadata=metadata,
            )
        return SendFailed(error=error, record=record)
