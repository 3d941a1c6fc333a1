from __future__ import annotations

import logging
from datetime import datetime

from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.responses import JSONResponse

from mailcraft.config import settings
from mailcraft.errors import SendError, TransportError, ValidationError
from mailcraft.models import (
    AttachmentIn,
    GoogleConnectionStatusResponse,
    GoogleConnectRequest,
    GoogleConnectResponse,
    RecipientIn,
    SendEmailFailure,
    SendEmailRequest,
    SendEmailSuccess,
    SendHistoryResponse,
    SendRecordOut,
)
from mailcraft.services.chats_repo import ChatsRepository
from mailcraft.services.email_renderer import EmailRenderer
from mailcraft.services.gmail_transport import GmailTransportClient
from mailcraft.services.google_oauth import GoogleOAuthService
from mailcraft.services.grant_store import GrantStore
from mailcraft.services.send_orchestrator import (
    SendCommand,
    SendFailed,
    SenderIdentity,
    SendOrchestrator,
)
from mailcraft.services.send_records_repo import (
    AttachmentRef,
    Recipient,
    SendRecord,
    SendRecordsRepository,
)
from mailcraft.services.supabase_auth import AuthenticatedUser, resolve_user_from_authorization
from mailcraft.services.token_manager import TokenLifecycleManager
from mailcraft.services.token_security import TokenCipher, redact_sensitive_text

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Mailcraft API", version="0.1.0")

grant_store = GrantStore(
    supabase_url=settings.supabase_url,
    supabase_service_role_key=settings.supabase_service_role_key,
    table=settings.grants_table,
    timeout_seconds=settings.repository_timeout_seconds,
    token_cipher=TokenCipher(settings.grant_token_encryption_key),
)
send_records = SendRecordsRepository(
    supabase_url=settings.supabase_url,
    supabase_service_role_key=settings.supabase_service_role_key,
    table=settings.send_records_table,
    timeout_seconds=settings.repository_timeout_seconds,
)
chats = ChatsRepository(
    supabase_url=settings.supabase_url,
    supabase_service_role_key=settings.supabase_service_role_key,
    table=settings.chats_table,
    timeout_seconds=settings.repository_timeout_seconds,
)
google_oauth = GoogleOAuthService(
    client_id=settings.google_client_id,
    client_secret=settings.google_client_secret,
    redirect_uri=settings.google_redirect_uri,
    timeout_seconds=settings.google_oauth_timeout_seconds,
)
token_manager = TokenLifecycleManager(
    store=grant_store,
    oauth=google_oauth,
    skew_seconds=settings.token_refresh_skew_seconds,
)
orchestrator = SendOrchestrator(
    records=send_records,
    tokens=token_manager,
    transport=GmailTransportClient(
        timeout_seconds=settings.gmail_timeout_seconds,
        preflight_url=settings.gmail_preflight_url,
    ),
    renderer=EmailRenderer(),
)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/v1/email/send", response_model=SendEmailSuccess)
def send_email(
    payload: SendEmailRequest,
    authorization: str | None = Header(default=None),
) -> SendEmailSuccess | JSONResponse:
    user = _resolve_user(authorization)
    _require_repositories()

    chat_id = payload.chat_id.strip()
    sender = SenderIdentity(user_id=user.id, email=user.email, name=user.name)
    command = SendCommand(
        chat_id=chat_id,
        subject=payload.subject,
        template=payload.template,
        recipients=[Recipient(email=row.email, name=row.name) for row in payload.recipients],
        sender_name=payload.sender_name,
        reply_to=payload.reply_to,
        attachments=[
            AttachmentRef(name=row.name, url=row.url, size=row.size, type=row.type, id=row.id)
            for row in payload.attachments
        ],
    )
    # Malformed requests are rejected before the chat lookup.
    try:
        orchestrator.validate(sender, command)
    except ValidationError as exc:
        return _failure_response(exc)

    try:
        owned = chats.is_owned_by(chat_id=chat_id, user_id=user.id)
    except Exception as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    if not owned:
        raise HTTPException(status_code=404, detail="Chat not found")

    try:
        outcome = orchestrator.send(sender, command)
    except Exception as exc:
        logger.exception("Send request for user %s failed before reconciliation", user.id)
        return _failure_response(TransportError(redact_sensitive_text(str(exc))))

    if isinstance(outcome, SendFailed):
        return _failure_response(outcome.error)
    return SendEmailSuccess(
        send_id=outcome.record.id,
        provider_message_id=outcome.provider_message_id,
        provider_thread_id=outcome.provider_thread_id,
        recipient_count=outcome.recipient_count,
        timestamp=outcome.timestamp.isoformat(),
    )


@app.get("/v1/email/sends", response_model=SendHistoryResponse)
def list_email_sends(
    chat_id: str | None = Query(default=None, alias="chatId"),
    authorization: str | None = Header(default=None),
) -> SendHistoryResponse:
    user = _resolve_user(authorization)
    _require_repositories()
    try:
        records = send_records.list_for_owner(
            owner_id=user.id,
            chat_id=(chat_id or "").strip() or None,
            limit=settings.send_history_limit,
        )
    except Exception as exc:
        raise HTTPException(status_code=500, detail="Failed to fetch email sends") from exc
    return SendHistoryResponse(email_sends=[_record_out(record) for record in records])


@app.post("/v1/integrations/google/connect", response_model=GoogleConnectResponse)
def google_connect(
    payload: GoogleConnectRequest,
    authorization: str | None = Header(default=None),
) -> GoogleConnectResponse:
    user = _resolve_user(authorization)
    if not grant_store.is_configured():
        raise HTTPException(
            status_code=503,
            detail="Grant store is not configured. Set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY.",
        )
    if not google_oauth.is_configured():
        raise HTTPException(
            status_code=503,
            detail=(
                "Google OAuth is not configured. "
                "Set GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET, and GOOGLE_REDIRECT_URI."
            ),
        )

    try:
        grant = google_oauth.connect_account(
            store=grant_store,
            user_id=user.id,
            code=payload.code,
            code_verifier=payload.code_verifier,
        )
    except Exception as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return GoogleConnectResponse(
        provider="google",
        provider_account_id=grant.provider_account_id,
        user_id=grant.user_id,
        status=grant.status,
        scopes=sorted(grant.scopes),
        expires_at=grant.expires_at.isoformat() if grant.expires_at else None,
        can_send=token_manager.has_required_scopes(grant.scopes),
    )


@app.get("/v1/integrations/google/status", response_model=GoogleConnectionStatusResponse)
def google_status(
    authorization: str | None = Header(default=None),
) -> GoogleConnectionStatusResponse:
    user = _resolve_user(authorization)
    if not grant_store.is_configured():
        return GoogleConnectionStatusResponse(connected=False)
    grant = grant_store.get_grant(user_id=user.id, provider="google")
    if grant is None:
        return GoogleConnectionStatusResponse(connected=False)
    return GoogleConnectionStatusResponse(
        connected=True,
        scopes=sorted(grant.scopes),
        can_send=bool(grant.refresh_token) and token_manager.has_required_scopes(grant.scopes),
    )


def _resolve_user(authorization: str | None) -> AuthenticatedUser:
    try:
        return resolve_user_from_authorization(
            authorization=authorization,
            supabase_url=settings.supabase_url,
            supabase_anon_key=settings.supabase_anon_key,
            timeout_seconds=5,
        )
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except Exception as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


def _require_repositories() -> None:
    if send_records.is_configured() and chats.is_configured() and grant_store.is_configured():
        return
    raise HTTPException(
        status_code=503,
        detail=(
            "Repositories are not configured. "
            "Set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY."
        ),
    )


def _failure_response(error: SendError) -> JSONResponse:
    body = SendEmailFailure(error=error.title, details=error.details, code=error.code)
    return JSONResponse(
        status_code=error.http_status,
        content=body.model_dump(by_alias=True, mode="json"),
    )


def _record_out(record: SendRecord) -> SendRecordOut:
    return SendRecordOut(
        id=record.id,
        chat_id=record.chat_id,
        subject=record.subject,
        sender_name=record.sender_name,
        sender_email=record.sender_email,
        recipients=[RecipientIn(email=row.email, name=row.name) for row in record.recipients],
        attachments=[
            AttachmentIn(id=row.id, name=row.name, url=row.url, type=row.type, size=row.size)
            for row in record.attachments
        ],
        status=record.status.value.upper(),
        sent_at=_iso(record.sent_at),
        created_at=_iso(record.created_at),
        metadata=record.metadata,
    )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None
