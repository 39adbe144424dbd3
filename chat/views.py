# chat/views.py
from django.conf import settings
from django.db.models import Count
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from django_ratelimit.decorators import ratelimit
import logging

from authentication.models import User
from .models import Chat, Message, UNTITLED_TITLE
from .completion import CompletionClient, CompletionConfigError
from .relay import TurnRelay

log = logging.getLogger(__name__)

MESSAGE_HISTORY_LIMIT = 100
TITLE_MAX_LENGTH = 200
RELAY_RATE = getattr(settings, "RELAY_RATE_LIMIT", "30/m")


def _error(message: str, status: int) -> Response:
    return Response({"error": message}, status=status)


def _current_user(request):
    user = getattr(request, "user", None)
    if isinstance(user, User) and user.is_authenticated:
        return user
    return None


def _payload(request) -> dict:
    """
    Be liberal in what we accept: JSON object or form data.
    Form fields collapse to their first value, except the databaseIds list.
    """
    data = getattr(request, "data", None)
    if not data:
        return {}
    if hasattr(data, "lists"):
        return {k: (v if k == "databaseIds" else v[0]) for k, v in data.lists()}
    if isinstance(data, dict):
        return dict(data)
    return {}


def _owned_chat(request, chat_id):
    """Return (user, chat, error_response); exactly one of chat/error is set."""
    user = _current_user(request)
    if user is None:
        return None, None, _error("Unauthorized", 401)

    chat = Chat.objects.filter(pk=chat_id).first()
    if chat is None:
        return user, None, _error("Chat not found", 404)
    if chat.user_id != user.user_id:
        log.warning("chat access denied chat=%s user=%s", chat_id, user.user_id)
        return user, None, _error("Unauthorized", 403)
    return user, chat, None


def _chat_to_dict(chat: Chat) -> dict:
    return {
        "id": str(chat.id),
        "title": chat.title,
        "databaseIds": list(chat.database_ids or []),
        "lastMessageAt": chat.last_message_at.isoformat() if chat.last_message_at else None,
        "createdAt": chat.created_at.isoformat(),
        "updatedAt": chat.updated_at.isoformat(),
    }


def _last_message_preview(chat: Chat):
    last = chat.messages.order_by("-created_at").first()
    if last is None:
        return None
    return {
        "message": last.assistant_message or last.user_message,
        "role": "assistant" if last.assistant_message else "user",
        "createdAt": last.created_at.isoformat(),
    }


def _clean_database_ids(raw):
    if not isinstance(raw, list) or not raw:
        return None
    ids = []
    for x in raw:
        if not isinstance(x, str) or not x.strip():
            return None
        ids.append(x.strip())
    return ids


@api_view(["GET", "POST"])
@permission_classes([AllowAny])
def chats(request):
    """GET: the caller's chats, most recently active first.
       POST: create a chat over one or more databases.
    """
    user = _current_user(request)
    if user is None:
        return _error("Unauthorized", 401)

    if request.method == "GET":
        qs = (
            Chat.objects.filter(user=user)
            .annotate(message_count=Count("messages"))
            .order_by("-last_message_at", "-created_at")
        )
        data = []
        for c in qs:
            item = _chat_to_dict(c)
            item["messageCount"] = c.message_count
            item["lastMessage"] = _last_message_preview(c)
            data.append(item)
        return Response({"chats": data}, status=200)

    payload = _payload(request)
    database_ids = _clean_database_ids(payload.get("databaseIds"))
    if database_ids is None:
        return _error("At least one database ID is required", 400)

    title = str(payload.get("title") or "").strip()[:TITLE_MAX_LENGTH] or UNTITLED_TITLE
    chat = Chat.objects.create(user=user, database_ids=database_ids, title=title)
    log.info("chat created chat=%s user=%s databases=%d", chat.id, user.user_id, len(database_ids))

    item = _chat_to_dict(chat)
    item["messageCount"] = 0
    item["lastMessage"] = None
    return Response({"chat": item}, status=201)


@api_view(["GET", "PUT", "PATCH", "DELETE"])
@permission_classes([AllowAny])
def chat_detail(request, chat_id):
    _, chat, err = _owned_chat(request, chat_id)
    if err is not None:
        return err

    if request.method == "GET":
        return Response({"chat": _chat_to_dict(chat)}, status=200)

    if request.method in ("PUT", "PATCH"):
        title = str(_payload(request).get("title") or "").strip()
        if not title:
            return _error("Title is required", 400)
        chat.title = title[:TITLE_MAX_LENGTH]
        chat.save(update_fields=["title", "updated_at"])
        return Response({"chat": _chat_to_dict(chat)}, status=200)

    # DELETE (messages go with it)
    chat.delete()
    return Response({"ok": True}, status=200)


@api_view(["GET", "POST"])
@permission_classes([AllowAny])
@ratelimit(key="ip", rate=RELAY_RATE, method="POST", block=False)
def chat_messages(request, chat_id):
    """
    GET: up to MESSAGE_HISTORY_LIMIT messages, oldest first.
    POST: start a turn. Validation and ownership are checked before anything
    is written; after that the answer streams back as text/event-stream.
    """
    if request.method == "GET":
        _, chat, err = _owned_chat(request, chat_id)
        if err is not None:
            return err
        msgs = chat.messages.order_by("created_at")[:MESSAGE_HISTORY_LIMIT]
        return Response({"messages": [m.as_dict() for m in msgs]}, status=200)

    if _current_user(request) is None:
        return _error("Unauthorized", 401)

    if getattr(request, "limited", False):
        log.warning("relay rate limit exceeded for IP: %s", request.META.get("REMOTE_ADDR"))
        return _error("Too many messages. Please try again later.", 429)

    data = _payload(request)
    text = str(data.get("message") or data.get("content") or data.get("text") or "").strip()
    if not text:
        return _error("Message is required", 400)

    _, chat, err = _owned_chat(request, chat_id)
    if err is not None:
        return err

    try:
        client = CompletionClient()
    except CompletionConfigError as e:
        log.error("completion client misconfigured: %s", e)
        return _error("Completion service is not configured", 503)

    message = Message.objects.create(chat=chat, user_message=text)
    relay = TurnRelay(chat, message, client=client)
    return relay.streaming_response()
