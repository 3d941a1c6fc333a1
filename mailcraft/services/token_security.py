"""Keeps Google credentials out of logs, audit rows and stored grants."""

from __future__ import annotations

import base64
import hashlib
import logging
import re

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

# Fields that carry credentials in Google token-endpoint bodies (JSON or form encoded).
SECRET_FIELDS = ("access_token", "refresh_token", "id_token", "client_secret", "code_verifier")

_FIELD_GROUP = "|".join(SECRET_FIELDS)
_JSON_FIELD = re.compile(rf'"({_FIELD_GROUP})"\s*:\s*"[^"]*"')
_FORM_FIELD = re.compile(rf"\b({_FIELD_GROUP})=[^&\s]*")
_BEARER = re.compile(r"(?i)\bbearer\s+[\w\-.~+/]+=*")
# Google access tokens start with "ya29." and refresh tokens with "1//".
_GOOGLE_TOKEN = re.compile(r"\b(?:ya29\.[\w\-.]+|1//[\w\-]+)")


def redact_sensitive_text(value: str | None) -> str:
    if not value:
        return ""
    out = _JSON_FIELD.sub(r'"\1": "[REDACTED]"', value)
    out = _FORM_FIELD.sub(r"\1=[REDACTED]", out)
    out = _BEARER.sub("Bearer [REDACTED]", out)
    return _GOOGLE_TOKEN.sub("[REDACTED]", out)


class TokenCipher:
    """Fernet encryption for the access and refresh tokens of a stored grant.

    Encrypted values carry the ``fernet:`` prefix. Values without it are
    returned unchanged, so rows written before a key was configured still
    load. Without a secret the cipher is a no-op.
    """

    PREFIX = "fernet:"

    def __init__(self, secret: str | None) -> None:
        secret = (secret or "").strip()
        # Any passphrase works; Fernet wants 32 url-safe base64 encoded bytes.
        self._fernet = (
            Fernet(base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest()))
            if secret
            else None
        )

    def enabled(self) -> bool:
        return self._fernet is not None

    def encrypt(self, value: str | None) -> str | None:
        if value is None or self._fernet is None:
            return value
        return self.PREFIX + self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, value: str | None) -> str | None:
        if value is None or self._fernet is None or not value.startswith(self.PREFIX):
            return value
        try:
            return self._fernet.decrypt(value[len(self.PREFIX) :]).decode("utf-8")
        except InvalidToken:
            logger.warning("Stored grant token could not be decrypted; treating it as missing")
            return None
