import unittest
from unittest.mock import patch

from mailcraft.config import load_settings
from mailcraft.services.token_security import TokenCipher, redact_sensitive_text


class RedactionTests(unittest.TestCase):
    def test_google_token_endpoint_json_body(self):
        body = (
            '{"error": "invalid_grant", "access_token": "ya29.a0AfB_live", '
            '"refresh_token":"1//0gRefresh", "expires_in": 3599}'
        )
        out = redact_sensitive_text(body)
        self.assertIn('"error": "invalid_grant"', out)
        self.assertIn('"access_token": "[REDACTED]"', out)
        self.assertIn('"refresh_token": "[REDACTED]"', out)
        self.assertIn('"expires_in": 3599', out)
        self.assertNotIn("ya29", out)
        self.assertNotIn("1//0gRefresh", out)

    def test_form_encoded_request_echo(self):
        out = redact_sensitive_text(
            "grant_type=refresh_token&refresh_token=1//abc&client_secret=s3cret&client_id=cid"
        )
        self.assertIn("grant_type=refresh_token", out)
        self.assertIn("refresh_token=[REDACTED]", out)
        self.assertIn("client_secret=[REDACTED]", out)
        self.assertIn("client_id=cid", out)

    def test_bearer_header_and_bare_google_tokens(self):
        out = redact_sensitive_text("sent Authorization: Bearer ya29.xyz then saw ya29.other")
        self.assertEqual(out, "sent Authorization: Bearer [REDACTED] then saw [REDACTED]")

    def test_gmail_error_message_is_untouched(self):
        message = "Gmail API failed (403): Request had insufficient authentication scopes."
        self.assertEqual(redact_sensitive_text(message), message)
        self.assertEqual(redact_sensitive_text(None), "")


class TokenCipherTests(unittest.TestCase):
    def test_round_trip_with_passphrase(self):
        cipher = TokenCipher("correct horse battery staple")
        stored = cipher.encrypt("refresh-1")
        self.assertTrue(stored.startswith(TokenCipher.PREFIX))
        self.assertNotIn("refresh-1", stored)
        self.assertEqual(cipher.decrypt(stored), "refresh-1")

    def test_wrong_key_or_corrupt_value_reads_as_missing(self):
        stored = TokenCipher("k1").encrypt("refresh-1")
        with self.assertLogs("mailcraft.services.token_security", level="WARNING"):
            self.assertIsNone(TokenCipher("k2").decrypt(stored))
        with self.assertLogs("mailcraft.services.token_security", level="WARNING"):
            self.assertIsNone(TokenCipher("k1").decrypt("fernet:not-a-token"))

    def test_disabled_cipher_passes_values_through(self):
        cipher = TokenCipher(None)
        self.assertFalse(cipher.enabled())
        self.assertEqual(cipher.encrypt("refresh-1"), "refresh-1")
        self.assertEqual(cipher.decrypt("fernet:whatever"), "fernet:whatever")


class SettingsTests(unittest.TestCase):
    def test_encryption_key_is_read_into_settings(self):
        with patch.dict("os.environ", {"GRANT_TOKEN_ENCRYPTION_KEY": "k1"}):
            self.assertEqual(load_settings().grant_token_encryption_key, "k1")
        with patch.dict("os.environ", {"GRANT_TOKEN_ENCRYPTION_KEY": ""}):
            self.assertIsNone(load_settings().grant_token_encryption_key)


if __name__ == "__main__":
    unittest.main()
