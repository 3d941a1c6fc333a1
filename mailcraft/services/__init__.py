from .chats_repo import ChatsRepository
from .email_renderer import EmailRenderer, MessageHeaders, RenderedMessage
from .gmail_transport import GmailApiError, GmailTransportClient
from .google_oauth import GoogleOAuthService
from .grant_store import GrantStore, GrantUpsert, OAuthGrant
from .send_orchestrator import (
    SendCommand,
    SendFailed,
    SenderIdentity,
    SendOrchestrator,
    SendOutcome,
    SendSucceeded,
)
from .send_records_repo import SendRecord, SendRecordsRepository, SendStatus
from .supabase_auth import resolve_user_from_authorization
from .token_manager import TokenLifecycleManager

__all__ = [
    "ChatsRepository",
    "EmailRenderer",
    "MessageHeaders",
    "RenderedMessage",
    "GmailApiError",
    "GmailTransportClient",
    "GoogleOAuthService",
    "GrantStore",
    "GrantUpsert",
    "OAuthGrant",
    "SendCommand",
    "SendFailed",
    "SenderIdentity",
    "SendOrchestrator",
    "SendOutcome",
    "SendSucceeded",
    "SendRecord",
    "SendRecordsRepository",
    "SendStatus",
    "resolve_user_from_authorization",
    "TokenLifecycleManager",
]
