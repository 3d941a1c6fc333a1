import unittest
from unittest.mock import MagicMock, patch

import requests

from mailcraft.services.gmail_transport import GmailApiError, GmailTransportClient

REQUEST = "mailcraft.services.gmail_transport.requests.request"


def _response(status: int, payload=None, text: str = ""):
    response = MagicMock()
    response.ok = 200 <= status < 300
    response.status_code = status
    response.text = text
    if payload is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = payload
    return response


class GmailTransportClientTests(unittest.TestCase):
    def setUp(self):
        self.client = GmailTransportClient(timeout_seconds=10)

    def test_send_posts_raw_message_with_bearer_token(self):
        with patch(
            REQUEST,
            return_value=_response(200, {"id": "msg-1", "threadId": "thread-1", "labelIds": ["SENT"]}),
        ) as request_mock:
            sent = self.client.send_raw("token-1", "cmF3")

        self.assertEqual(sent.id, "msg-1")
        self.assertEqual(sent.thread_id, "thread-1")
        self.assertEqual(sent.label_ids, ["SENT"])
        args = request_mock.call_args
        self.assertEqual(args.args, ("POST", GmailTransportClient.SEND_URL))
        self.assertEqual(args.kwargs["json"], {"raw": "cmF3"})
        self.assertEqual(args.kwargs["headers"]["Authorization"], "Bearer token-1")
        self.assertEqual(args.kwargs["timeout"], 10)

    def test_client_holds_no_shared_http_session(self):
        self.assertFalse(
            any(isinstance(value, requests.Session) for value in vars(self.client).values())
        )

    def test_send_without_message_id_is_an_error(self):
        with patch(REQUEST, return_value=_response(200, {"threadId": "thread-1"})):
            with self.assertRaises(GmailApiError):
                self.client.send_raw("token-1", "cmF3")

    def test_verify_identity_reads_userinfo_or_profile_shapes(self):
        with patch(
            REQUEST,
            side_effect=[
                _response(200, {"sub": "google-sub-1", "email": "me@example.com"}),
                _response(200, {"emailAddress": "me@example.com", "messagesTotal": 3}),
            ],
        ) as request_mock:
            first = self.client.verify_identity("token-1")
            second = self.client.verify_identity("token-1")

        self.assertEqual(first.email, "me@example.com")
        self.assertEqual(first.subject, "google-sub-1")
        self.assertEqual(second.email, "me@example.com")
        self.assertIsNone(second.subject)
        self.assertEqual(request_mock.call_args.args[0], "GET")

    def test_api_error_carries_status_message_and_reason(self):
        body = {
            "error": {
                "code": 403,
                "message": "User-rate limit exceeded.",
                "errors": [{"reason": "userRateLimitExceeded"}],
            }
        }
        with patch(REQUEST, return_value=_response(403, body)):
            with self.assertRaises(GmailApiError) as ctx:
                self.client.send_raw("token-1", "cmF3")

        self.assertEqual(ctx.exception.status_code, 403)
        self.assertEqual(ctx.exception.reason, "userRateLimitExceeded")
        self.assertIn("User-rate limit exceeded.", str(ctx.exception))
        self.assertIn("[userRateLimitExceeded]", str(ctx.exception))

    def test_oauth_style_error_body(self):
        with patch(
            REQUEST,
            return_value=_response(
                401, {"error": "invalid_token", "error_description": "Invalid Credentials"}
            ),
        ):
            with self.assertRaises(GmailApiError) as ctx:
                self.client.verify_identity("token-1")
        self.assertEqual(ctx.exception.status_code, 401)
        self.assertIn("invalid_token: Invalid Credentials", str(ctx.exception))

    def test_non_json_error_body_is_redacted(self):
        with patch(REQUEST, return_value=_response(502, text="bad gateway for Bearer secret.token")):
            with self.assertRaises(GmailApiError) as ctx:
                self.client.send_raw("token-1", "cmF3")
        self.assertEqual(ctx.exception.status_code, 502)
        self.assertNotIn("secret.token", str(ctx.exception))

    def test_timeout_has_no_status(self):
        with patch(REQUEST, side_effect=requests.Timeout("read timed out")):
            with self.assertRaises(GmailApiError) as ctx:
                self.client.send_raw("token-1", "cmF3")
        self.assertIsNone(ctx.exception.status_code)
        self.assertIn("timed out after 10s", str(ctx.exception))

    def test_connection_error_has_no_status(self):
        with patch(REQUEST, side_effect=requests.ConnectionError("connection refused")):
            with self.assertRaises(GmailApiError) as ctx:
                self.client.verify_identity("token-1")
        self.assertIsNone(ctx.exception.status_code)


if __name__ == "__main__":
    unittest.main()
