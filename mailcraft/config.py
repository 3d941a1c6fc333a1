import os
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv(override=False)

DEFAULT_PREFLIGHT_URL = "https://openidconnect.googleapis.com/v1/userinfo"


def _as_int(raw: str | None, default: int) -> int:
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    supabase_url: str | None
    supabase_anon_key: str | None
    supabase_service_role_key: str | None
    grants_table: str
    send_records_table: str
    chats_table: str
    repository_timeout_seconds: int
    google_client_id: str | None
    google_client_secret: str | None
    google_redirect_uri: str | None
    google_oauth_timeout_seconds: int
    gmail_timeout_seconds: int
    gmail_preflight_url: str
    grant_token_encryption_key: str | None
    token_refresh_skew_seconds: int
    send_history_limit: int
    log_level: str


def load_settings() -> Settings:
    return Settings(
        supabase_url=(os.getenv("SUPABASE_URL") or None),
        supabase_anon_key=(os.getenv("SUPABASE_ANON_KEY") or None),
        supabase_service_role_key=(os.getenv("SUPABASE_SERVICE_ROLE_KEY") or None),
        grants_table=os.getenv("GRANTS_TABLE", "connected_accounts"),
        send_records_table=os.getenv("SEND_RECORDS_TABLE", "email_sends"),
        chats_table=os.getenv("CHATS_TABLE", "chats"),
        repository_timeout_seconds=_as_int(os.getenv("REPOSITORY_TIMEOUT_SECONDS"), 8),
        google_client_id=(os.getenv("GOOGLE_CLIENT_ID") or None),
        google_client_secret=(os.getenv("GOOGLE_CLIENT_SECRET") or None),
        google_redirect_uri=(os.getenv("GOOGLE_REDIRECT_URI") or None),
        google_oauth_timeout_seconds=_as_int(
            os.getenv("GOOGLE_OAUTH_TIMEOUT_SECONDS"), 8
        ),
        gmail_timeout_seconds=_as_int(os.getenv("GMAIL_TIMEOUT_SECONDS"), 10),
        gmail_preflight_url=(os.getenv("GMAIL_PREFLIGHT_URL") or DEFAULT_PREFLIGHT_URL),
        grant_token_encryption_key=(os.getenv("GRANT_TOKEN_ENCRYPTION_KEY") or None),
        token_refresh_skew_seconds=max(
            0,
            min(3600, _as_int(os.getenv("TOKEN_REFRESH_SKEW_SECONDS"), 300)),
        ),
        send_history_limit=max(1, min(200, _as_int(os.getenv("SEND_HISTORY_LIMIT"), 50))),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").strip().upper(),
    )


settings = load_settings()
