from unittest.mock import patch
import uuid

from django.test import override_settings
from django.urls import reverse
from rest_framework.test import APIClient, APITestCase

from authentication.models import User
from chat.completion import CompletionUnavailable
from chat.models import Chat, Message, UNTITLED_TITLE
from chat.tests.fakes import FakeClient, FakeStream, parse_frames, sse


def login(client, user):
    session = client.session
    session["user_id"] = str(user.user_id)
    session["username"] = user.username
    session.save()


class ChatRoutesTests(APITestCase):
    def setUp(self):
        self.user = User.objects.create(username="ayu", email="ayu@example.com")
        self.other = User.objects.create(username="budi", email="budi@example.com")
        login(self.client, self.user)

    def test_requires_session(self):
        anon = APIClient()
        self.assertEqual(anon.get(reverse("chat:chats")).status_code, 401)
        self.assertEqual(anon.post(reverse("chat:chats"), {"databaseIds": ["db1"]}, format="json").status_code, 401)

    def test_create_requires_database_ids(self):
        r = self.client.post(reverse("chat:chats"), {"title": "x"}, format="json")
        self.assertEqual(r.status_code, 400)
        self.assertEqual(r.json()["error"], "At least one database ID is required")
        r = self.client.post(reverse("chat:chats"), {"databaseIds": []}, format="json")
        self.assertEqual(r.status_code, 400)

    def test_create_and_list(self):
        r = self.client.post(reverse("chat:chats"), {"databaseIds": ["db1", "db2"]}, format="json")
        self.assertEqual(r.status_code, 201)
        chat = r.json()["chat"]
        self.assertEqual(chat["title"], UNTITLED_TITLE)
        self.assertEqual(chat["databaseIds"], ["db1", "db2"])

        Chat.objects.create(user=self.other, database_ids=["db9"])
        listed = self.client.get(reverse("chat:chats")).json()["chats"]
        self.assertEqual([c["id"] for c in listed], [chat["id"]])
        self.assertEqual(listed[0]["messageCount"], 0)
        self.assertIsNone(listed[0]["lastMessage"])

    def test_detail_ownership(self):
        mine = Chat.objects.create(user=self.user, database_ids=["db1"])
        theirs = Chat.objects.create(user=self.other, database_ids=["db1"])
        self.assertEqual(self.client.get(reverse("chat:chat_detail", args=[mine.id])).status_code, 200)
        self.assertEqual(self.client.get(reverse("chat:chat_detail", args=[theirs.id])).status_code, 403)
        self.assertEqual(self.client.get(reverse("chat:chat_detail", args=[uuid.uuid4()])).status_code, 404)

    def test_rename_and_delete(self):
        chat = Chat.objects.create(user=self.user, database_ids=["db1"])
        url = reverse("chat:chat_detail", args=[chat.id])

        self.assertEqual(self.client.patch(url, {"title": "  "}, format="json").status_code, 400)
        r = self.client.patch(url, {"title": "Revenue"}, format="json")
        self.assertEqual(r.json()["chat"]["title"], "Revenue")

        Message.objects.create(chat=chat, user_message="hi")
        self.assertEqual(self.client.delete(url).json(), {"ok": True})
        self.assertFalse(Chat.objects.filter(pk=chat.id).exists())
        self.assertFalse(Message.objects.filter(chat_id=chat.id).exists())

    def test_database_ids_are_fixed(self):
        chat = Chat.objects.create(user=self.user, database_ids=["db1"])
        chat.database_ids = ["db2"]
        with self.assertRaises(ValueError):
            chat.save()


@patch("chat.views.CompletionClient")
class MessageRelayTests(APITestCase):
    def setUp(self):
        self.user = User.objects.create(username="citra", email="citra@example.com")
        login(self.client, self.user)
        self.chat = Chat.objects.create(user=self.user, database_ids=["sales"])
        self.url = reverse("chat:messages", args=[self.chat.id])

    def _post(self, text):
        return self.client.post(self.url, {"message": text}, format="json")

    def _body(self, resp):
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp["Content-Type"].startswith("text/event-stream"))
        self.assertEqual(resp["Cache-Control"], "no-cache")
        return parse_frames(b"".join(resp.streaming_content))

    def test_streams_chunks_and_persists_turn(self, client_cls):
        client_cls.return_value = FakeClient(reply=FakeStream([
            sse({"chunk": "Here"}),
            sse({"chunk": "are"}),
            sse({"chunk": "the"}),
            sse({"chunk": "results."}),
            sse({"is_complete": True, "sql_query": "SELECT TOP 5 * FROM Customers"}),
        ]))
        frames = self._body(self._post("top 5 customers"))

        self.assertEqual([f["chunk"] for f in frames[:-1]], ["Here", "are", "the", "results."])
        msg = Message.objects.get(chat=self.chat)
        self.assertEqual(frames[-1]["messageId"], str(msg.id))
        self.assertEqual(msg.user_message, "top 5 customers")
        self.assertEqual(msg.assistant_message, "Here are the results.")
        self.assertEqual(msg.sql_query, "SELECT TOP 5 * FROM Customers")

        self.chat.refresh_from_db()
        self.assertNotEqual(self.chat.title, UNTITLED_TITLE)

        history = self.client.get(self.url).json()["messages"]
        self.assertEqual(history[0]["assistantMessage"], "Here are the results.")
        self.assertEqual(history[0]["sqlQuery"], "SELECT TOP 5 * FROM Customers")

    def test_upstream_500_is_streamed_as_diagnostic(self, client_cls):
        client_cls.return_value = FakeClient(
            error=CompletionUnavailable("completion service returned 500: db unreachable")
        )
        frames = self._body(self._post("anything"))

        self.assertIn("db unreachable", frames[0]["chunk"])
        self.assertTrue(frames[-1]["is_complete"])
        msg = Message.objects.get(chat=self.chat)
        self.assertIn("db unreachable", msg.assistant_message)
        self.assertEqual(msg.sql_query, "")
        self.chat.refresh_from_db()
        self.assertIsNotNone(self.chat.last_message_at)

    def test_second_turn_keeps_title(self, client_cls):
        client_cls.side_effect = lambda: FakeClient(
            reply=FakeStream([sse({"chunk": "Answer."}), sse({"is_complete": True})])
        )
        self._body(self._post("first question"))
        self.chat.refresh_from_db()
        first_title = self.chat.title

        self._body(self._post("second question"))
        self.chat.refresh_from_db()
        self.assertEqual(self.chat.title, first_title)
        self.assertEqual(Message.objects.filter(chat=self.chat).count(), 2)

    def test_empty_message_rejected_without_write(self, client_cls):
        r = self._post("   ")
        self.assertEqual(r.status_code, 400)
        self.assertEqual(r.json()["error"], "Message is required")
        self.assertFalse(Message.objects.exists())
        client_cls.assert_not_called()

    def test_foreign_chat_rejected_without_write(self, client_cls):
        other = User.objects.create(username="dewi", email="dewi@example.com")
        theirs = Chat.objects.create(user=other, database_ids=["sales"])
        r = self.client.post(reverse("chat:messages", args=[theirs.id]), {"message": "hi"}, format="json")
        self.assertEqual(r.status_code, 403)
        self.assertFalse(Message.objects.exists())

    def test_unknown_chat(self, client_cls):
        r = self.client.post(reverse("chat:messages", args=[uuid.uuid4()]), {"message": "hi"}, format="json")
        self.assertEqual(r.status_code, 404)

    def test_anonymous_post(self, client_cls):
        r = APIClient().post(self.url, {"message": "hi"}, format="json")
        self.assertEqual(r.status_code, 401)
        self.assertFalse(Message.objects.exists())

    @patch("django_ratelimit.decorators.is_ratelimited", return_value=True)
    def test_rate_limited(self, _limited, client_cls):
        r = self._post("hi")
        self.assertEqual(r.status_code, 429)
        self.assertFalse(Message.objects.exists())


class MisconfiguredRelayTests(APITestCase):
    def setUp(self):
        self.user = User.objects.create(username="eka", email="eka@example.com")
        login(self.client, self.user)
        self.chat = Chat.objects.create(user=self.user, database_ids=["sales"])

    @override_settings(COMPLETION_PAYLOAD_STYLE="bogus")
    def test_bad_client_config_leaves_no_stub(self):
        r = self.client.post(reverse("chat:messages", args=[self.chat.id]), {"message": "hi"}, format="json")
        self.assertEqual(r.status_code, 503)
        self.assertEqual(r.json()["error"], "Completion service is not configured")
        self.assertFalse(Message.objects.exists())
