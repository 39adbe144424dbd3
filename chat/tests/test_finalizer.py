from django.test import SimpleTestCase, TestCase

from authentication.models import User
from chat.finalizer import TITLE_MAX_CHARS, TurnAlreadyFinalized, derive_title, finalize_turn
from chat.models import Chat, Message, UNTITLED_TITLE
from chat.normalize import TurnOutcome


class DeriveTitleTests(SimpleTestCase):
    def test_first_sentence_of_answer(self):
        self.assertEqual(derive_title("Here are the results. More text."), "Here are the results")

    def test_question_kept_whole(self):
        self.assertEqual(derive_title("top 5 customers by revenue?", first_sentence=False),
                         "top 5 customers by revenue?")

    def test_long_text_cut(self):
        title = derive_title("x" * 80, first_sentence=False)
        self.assertEqual(title, "x" * TITLE_MAX_CHARS + "...")

    def test_whitespace_collapsed(self):
        self.assertEqual(derive_title("a \n\t b", first_sentence=False), "a b")


class FinalizeTurnTests(TestCase):
    def setUp(self):
        self.user = User.objects.create(username="rina", email="rina@example.com")
        self.chat = Chat.objects.create(user=self.user, database_ids=["db1"])
        self.message = Message.objects.create(chat=self.chat, user_message="how many orders?")

    def test_commit_writes_outcome_and_activity(self):
        outcome = TurnOutcome(
            assistant_text="42 orders.",
            sql_query="SELECT COUNT(*) FROM orders",
            query_results=[{"status": "success"}],
            file_path="/tmp/orders.csv",
        )
        finalize_turn(self.message, outcome, title_source="how many orders?")

        msg = Message.objects.get(pk=self.message.pk)
        self.assertEqual(msg.assistant_message, "42 orders.")
        self.assertEqual(msg.sql_query, "SELECT COUNT(*) FROM orders")
        self.assertEqual(msg.query_results, [{"status": "success"}])
        self.assertEqual(msg.metadata["file_path"], "/tmp/orders.csv")
        self.assertIsNotNone(msg.finalized_at)

        self.chat.refresh_from_db()
        self.assertEqual(self.chat.title, "how many orders?")
        self.assertIsNotNone(self.chat.last_message_at)

    def test_second_commit_refused(self):
        finalize_turn(self.message, TurnOutcome(assistant_text="first"))
        stale = Message.objects.get(pk=self.message.pk)
        stale.finalized_at = None
        with self.assertRaises(TurnAlreadyFinalized):
            finalize_turn(stale, TurnOutcome(assistant_text="second"))
        self.assertEqual(Message.objects.get(pk=self.message.pk).assistant_message, "first")

    def test_titled_chat_keeps_its_title(self):
        Chat.objects.filter(pk=self.chat.pk).update(title="Orders review")
        finalize_turn(self.message, TurnOutcome(assistant_text="ok"), title_source="anything")
        self.chat.refresh_from_db()
        self.assertEqual(self.chat.title, "Orders review")
        self.assertIsNotNone(self.chat.last_message_at)

    def test_empty_title_source_falls_back_to_question(self):
        finalize_turn(self.message, TurnOutcome(assistant_text=""), title_source="", title_from_answer=True)
        self.chat.refresh_from_db()
        self.assertEqual(self.chat.title, "how many orders?")

    def test_failure_recorded_in_metadata(self):
        finalize_turn(self.message, TurnOutcome(assistant_text="Sorry"), failed=True, error="boom")
        msg = Message.objects.get(pk=self.message.pk)
        self.assertTrue(msg.metadata["failed"])
        self.assertEqual(msg.metadata["error"], "boom")
        self.assertNotEqual(Chat.objects.get(pk=self.chat.pk).title, UNTITLED_TITLE)
