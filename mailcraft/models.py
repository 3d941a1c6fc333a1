from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from mailcraft.errors import ErrorCode


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RecipientIn(_CamelModel):
    email: str = ""
    name: str | None = None


class AttachmentIn(_CamelModel):
    id: str | None = None
    name: str = ""
    url: str = ""
    type: str = ""
    size: int = Field(default=0, ge=0)


class SendEmailRequest(_CamelModel):
    # Missing fields are reported as VALIDATION_ERROR by the orchestrator, not by pydantic.
    chat_id: str = Field(
        default="", validation_alias=AliasChoices("chatId", "chatRef", "chat_id")
    )
    subject: str = ""
    sender_name: str | None = None
    recipients: list[RecipientIn] = Field(default_factory=list)
    reply_to: str | None = None
    template: str = ""
    attachments: list[AttachmentIn] = Field(default_factory=list)


class SendEmailSuccess(_CamelModel):
    success: Literal[True] = True
    send_id: str
    provider_message_id: str
    provider_thread_id: str | None = None
    recipient_count: int
    timestamp: str


class SendEmailFailure(_CamelModel):
    success: Literal[False] = False
    error: str
    details: str
    code: ErrorCode


class SendRecordOut(_CamelModel):
    id: str
    chat_id: str
    subject: str
    sender_name: str
    sender_email: str
    recipients: list[RecipientIn]
    attachments: list[AttachmentIn]
    status: str
    sent_at: str | None = None
    created_at: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class SendHistoryResponse(_CamelModel):
    success: Literal[True] = True
    email_sends: list[SendRecordOut] = Field(default_factory=list)


class GoogleConnectRequest(BaseModel):
    code: str = Field(min_length=1, max_length=4096)
    code_verifier: str | None = Field(default=None, min_length=16, max_length=2048)


class GoogleConnectResponse(BaseModel):
    provider: str
    provider_account_id: str
    user_id: str
    status: str
    scopes: list[str] = Field(default_factory=list)
    expires_at: str | None = None
    can_send: bool = False


class GoogleConnectionStatusResponse(BaseModel):
    provider: str = "google"
    connected: bool
    scopes: list[str] = Field(default_factory=list)
    can_send: bool = False
