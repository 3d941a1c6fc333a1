import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from fastapi import HTTPException
from fastapi.testclient import TestClient

from mailcraft import main
from mailcraft.errors import AuthExpired, ValidationError
from mailcraft.services.send_orchestrator import SendFailed, SendOrchestrator, SendSucceeded
from mailcraft.services.send_records_repo import Recipient, SendRecord, SendStatus
from mailcraft.services.supabase_auth import AuthenticatedUser

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
USER = AuthenticatedUser(id="user-1", email="me@example.com", name="Pat")


def _record(status: SendStatus = SendStatus.SENT) -> SendRecord:
    return SendRecord(
        id="send-1",
        owner_id="user-1",
        chat_id="chat-1",
        subject="Launch",
        sender_name="Pat",
        sender_email="me@example.com",
        recipients=[Recipient(email="a@b.com")],
        rendered_body="<p>hi</p>",
        attachments=[],
        status=status,
        sent_at=NOW if status is SendStatus.SENT else None,
        error_message="Gmail API failed (401): Invalid Credentials" if status is SendStatus.FAILED else None,
        metadata={"providerMessageId": "msg-1"} if status is SendStatus.SENT else {},
        created_at=NOW,
    )


def _repos(owned: bool = True):
    records = MagicMock()
    records.is_configured.return_value = True
    chats = MagicMock()
    chats.is_configured.return_value = True
    chats.is_owned_by.return_value = owned
    grants = MagicMock()
    grants.is_configured.return_value = True
    return records, chats, grants


PAYLOAD = {
    "chatId": "chat-1",
    "subject": "Launch",
    "template": "<p>hi</p>",
    "recipients": [{"email": "a@b.com"}, {"email": "nope"}],
    "senderName": "Marketing",
}


class SendApiTests(unittest.TestCase):
    def setUp(self):
        self.client = TestClient(main.app)

    def _patched(self, orchestrator, owned: bool = True):
        records, chats, grants = _repos(owned)
        return (
            patch.object(main, "_resolve_user", return_value=USER),
            patch.object(main, "send_records", records),
            patch.object(main, "chats", chats),
            patch.object(main, "grant_store", grants),
            patch.object(main, "orchestrator", orchestrator),
        )

    def test_successful_send_returns_provider_ids(self):
        orchestrator = MagicMock()
        orchestrator.send.return_value = SendSucceeded(
            record=_record(),
            provider_message_id="msg-1",
            provider_thread_id="thread-1",
            recipient_count=1,
            timestamp=NOW,
        )
        p1, p2, p3, p4, p5 = self._patched(orchestrator)
        with p1, p2, p3, p4, p5:
            response = self.client.post("/v1/email/send", json=PAYLOAD)

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["sendId"], "send-1")
        self.assertEqual(body["providerMessageId"], "msg-1")
        self.assertEqual(body["providerThreadId"], "thread-1")
        self.assertEqual(body["recipientCount"], 1)
        self.assertEqual(body["timestamp"], NOW.isoformat())

        sender, command = orchestrator.send.call_args.args
        self.assertEqual(sender.email, "me@example.com")
        self.assertEqual(command.chat_id, "chat-1")
        self.assertEqual(command.sender_name, "Marketing")
        self.assertEqual([row.email for row in command.recipients], ["a@b.com", "nope"])

    def test_failure_maps_to_status_and_code_without_raw_cause(self):
        orchestrator = MagicMock()
        orchestrator.send.return_value = SendFailed(
            error=AuthExpired("Gmail API failed (401): Invalid Credentials"),
            record=_record(SendStatus.FAILED),
        )
        p1, p2, p3, p4, p5 = self._patched(orchestrator)
        with p1, p2, p3, p4, p5:
            response = self.client.post("/v1/email/send", json=PAYLOAD)

        self.assertEqual(response.status_code, 401)
        body = response.json()
        self.assertFalse(body["success"])
        self.assertEqual(body["code"], "AUTH_EXPIRED")
        self.assertEqual(body["error"], "Authentication failed")
        self.assertNotIn("Invalid Credentials", response.text)

    def test_validation_failure_returns_400(self):
        orchestrator = MagicMock()
        orchestrator.send.return_value = SendFailed(
            error=ValidationError("No valid recipient emails provided.")
        )
        p1, p2, p3, p4, p5 = self._patched(orchestrator)
        with p1, p2, p3, p4, p5:
            response = self.client.post("/v1/email/send", json=PAYLOAD)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "VALIDATION_ERROR")

    def test_chat_owned_by_someone_else_is_not_found(self):
        orchestrator = MagicMock()
        p1, p2, p3, p4, p5 = self._patched(orchestrator, owned=False)
        with p1, p2, p3, p4, p5:
            response = self.client.post("/v1/email/send", json=PAYLOAD)
        self.assertEqual(response.status_code, 404)
        orchestrator.send.assert_not_called()

    def test_malformed_request_is_rejected_before_the_chat_lookup(self):
        records = MagicMock()
        orchestrator = SendOrchestrator(
            records=records, tokens=MagicMock(), transport=MagicMock(), renderer=MagicMock()
        )
        p1, p2, p3, p4, p5 = self._patched(orchestrator, owned=False)
        with p1, p2, p3, p4, p5:
            response = self.client.post("/v1/email/send", json={**PAYLOAD, "subject": "  "})
            main.chats.is_owned_by.assert_not_called()
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "VALIDATION_ERROR")
        records.create_pending.assert_not_called()

    def test_unexpected_orchestrator_crash_is_a_transport_error(self):
        orchestrator = MagicMock()
        orchestrator.send.side_effect = RuntimeError("Failed to insert send record: HTTP 500")
        p1, p2, p3, p4, p5 = self._patched(orchestrator)
        with p1, p2, p3, p4, p5, self.assertLogs("mailcraft.main", level="ERROR"):
            response = self.client.post("/v1/email/send", json=PAYLOAD)
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["code"], "TRANSPORT_ERROR")

    def test_missing_bearer_token_is_rejected(self):
        with patch.object(
            main, "_resolve_user", side_effect=HTTPException(status_code=401, detail="Bearer token required.")
        ):
            response = self.client.post("/v1/email/send", json=PAYLOAD)
        self.assertEqual(response.status_code, 401)

    def test_history_lists_records_without_error_text(self):
        records, chats, grants = _repos()
        records.list_for_owner.return_value = [_record(), _record(SendStatus.FAILED)]
        with patch.object(main, "_resolve_user", return_value=USER), patch.object(
            main, "send_records", records
        ), patch.object(main, "chats", chats), patch.object(main, "grant_store", grants):
            response = self.client.get("/v1/email/sends", params={"chatId": "chat-1"})

        self.assertEqual(response.status_code, 200)
        rows = response.json()["emailSends"]
        self.assertEqual([row["status"] for row in rows], ["SENT", "FAILED"])
        self.assertEqual(rows[0]["chatId"], "chat-1")
        self.assertNotIn("Invalid Credentials", response.text)
        self.assertEqual(records.list_for_owner.call_args.kwargs["chat_id"], "chat-1")
        self.assertEqual(records.list_for_owner.call_args.kwargs["owner_id"], "user-1")


class GoogleIntegrationApiTests(unittest.TestCase):
    def setUp(self):
        self.client = TestClient(main.app)

    def test_status_without_grant(self):
        grants = MagicMock()
        grants.is_configured.return_value = True
        grants.get_grant.return_value = None
        with patch.object(main, "_resolve_user", return_value=USER), patch.object(
            main, "grant_store", grants
        ):
            response = self.client.get("/v1/integrations/google/status")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["connected"], False)
        self.assertEqual(response.json()["can_send"], False)

    def test_health(self):
        self.assertEqual(self.client.get("/health").json(), {"status": "ok"})


if __name__ == "__main__":
    unittest.main()
