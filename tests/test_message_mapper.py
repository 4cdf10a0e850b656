"""
Tests for mapping fetched messages onto EmailMessage entities
"""

import unittest
from datetime import datetime, timezone

from mailsync.modules.email_data import (
    BodyPart,
    EmailAccount,
    EmailFolder,
    EmailProvider,
    RawMessage,
)
from mailsync.modules.message_mapper import conversation_id, to_entity


class TestToEntity(unittest.TestCase):

    def setUp(self):
        self.account = EmailAccount(
            email_address="me@example.com",
            provider=EmailProvider.GMAIL,
            user_id="user-1",
            id="acct-1",
        )

    def test_full_message(self):
        sent = datetime(2024, 3, 5, 9, 30, tzinfo=timezone.utc)
        raw = RawMessage(
            uid="1",
            message_id="<m1@example.com>",
            subject="Hello",
            from_address="alice@example.com",
            from_name="Alice",
            to=["me@example.com"],
            cc=["bob@example.com"],
            date=sent,
            body_parts=[BodyPart("text/html", "<b>hi</b>"), BodyPart("text/plain", "hi")],
            in_reply_to="<m0@example.com>",
        )
        entity = to_entity(raw, self.account, EmailFolder.SENT)

        self.assertEqual(entity.message_id, "<m1@example.com>")
        self.assertEqual(entity.subject, "Hello")
        self.assertEqual(entity.from_name, "Alice")
        self.assertEqual(entity.cc_recipients, ["bob@example.com"])
        self.assertEqual(entity.sent_at, sent)
        self.assertEqual(entity.received_at, sent)
        self.assertEqual(entity.body_text, "hi")
        self.assertEqual(entity.body_html, "<b>hi</b>")
        self.assertEqual(entity.account_id, "acct-1")
        self.assertEqual(entity.user_id, "user-1")
        self.assertIs(entity.folder, EmailFolder.SENT)
        self.assertEqual(entity.in_reply_to, "<m0@example.com>")

    def test_defaults_for_missing_fields(self):
        entity = to_entity(RawMessage(uid="9"), self.account, EmailFolder.INBOX)

        self.assertEqual(entity.subject, "")
        self.assertEqual(entity.from_address, "me@example.com")
        self.assertEqual(entity.to_recipients, ["me@example.com"])
        self.assertTrue(entity.message_id)
        self.assertEqual(entity.body_text, "")
        self.assertIsNone(entity.body_html)
        self.assertIsNotNone(entity.sent_at.tzinfo)

    def test_generated_message_ids_are_unique(self):
        first = to_entity(RawMessage(uid="1", message_id="  "), self.account, EmailFolder.INBOX)
        second = to_entity(RawMessage(uid="2"), self.account, EmailFolder.INBOX)
        self.assertNotEqual(first.message_id, second.message_id)

    def test_empty_subject_is_kept(self):
        entity = to_entity(RawMessage(uid="1", subject=""), self.account, EmailFolder.INBOX)
        self.assertEqual(entity.subject, "")


class TestConversationId(unittest.TestCase):

    def test_thread_index_wins(self):
        raw = RawMessage(uid="1", headers={"thread-index": "AQH"}, references=["<r@x>"])
        self.assertEqual(conversation_id(raw, "<m@x>"), "AQH")

    def test_thread_root_from_references(self):
        raw = RawMessage(uid="1", references=["<root@x>", "<parent@x>"])
        self.assertEqual(conversation_id(raw, "<m@x>"), "<root@x>")

    def test_falls_back_to_message_id(self):
        self.assertEqual(conversation_id(RawMessage(uid="1"), "<m@x>"), "<m@x>")


if __name__ == "__main__":
    unittest.main()
