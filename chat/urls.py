from django.urls import path
from . import views

app_name = "chat"

urlpatterns = [
    # Chats
    path("", views.chats, name="chats"),
    path("<uuid:chat_id>/", views.chat_detail, name="chat_detail"),

    # Messages (POST relays the turn to the completion service)
    path("<uuid:chat_id>/messages/", views.chat_messages, name="messages"),
]
