from django.db import models
import uuid

from authentication.models import User

UNTITLED_TITLE = "New Chat"


class Chat(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name="chats")
    # ids of the databases the completion service may query for this chat
    database_ids = models.JSONField(default=list)
    title = models.CharField(max_length=200, default=UNTITLED_TITLE)
    last_message_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-last_message_at", "-created_at"]
        indexes = [
            models.Index(fields=["user", "-created_at"], name="chat_user_created_idx"),
            models.Index(fields=["user", "-last_message_at"], name="chat_user_activity_idx"),
        ]

    def __str__(self):
        return f"{self.title} ({self.id})"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            stored = (
                Chat.objects.filter(pk=self.pk)
                .values_list("database_ids", flat=True)
                .first()
            )
            if stored is not None and list(stored) != list(self.database_ids):
                raise ValueError("database_ids cannot change after a chat is created")
        super().save(*args, **kwargs)


class Message(models.Model):
    """One turn: the user's question and, once finalized, the assistant answer."""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    chat = models.ForeignKey(Chat, on_delete=models.CASCADE, related_name="messages")
    user_message = models.TextField()
    assistant_message = models.TextField(blank=True, default="")
    sql_query = models.TextField(blank=True, default="")
    query_results = models.JSONField(default=list, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    # NULL while the message is a stub
    finalized_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["created_at"]
        indexes = [models.Index(fields=["chat", "created_at"], name="message_chat_created_idx")]

    def __str__(self):
        return f"Message {self.id} in chat {self.chat_id}"

    def as_dict(self) -> dict:
        return {
            "id": str(self.id),
            "chatId": str(self.chat_id),
            "userMessage": self.user_message,
            "assistantMessage": self.assistant_message,
            "sqlQuery": self.sql_query,
            "queryResults": self.query_results or [],
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
