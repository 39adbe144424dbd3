from django.urls import path, include
from django.http import JsonResponse


def health(request):
    return JsonResponse({"status": "ok"}, status=200)


urlpatterns = [
    path("health/", health, name="health"),
    path("api/chats/", include("chat.urls")),
    path("", include("django_prometheus.urls")),
]
