from django.db import models
import uuid


class User(models.Model):
    """
    Caller identity for chat ownership.

    Accounts are provisioned by the external user-management service; this
    model only mirrors what the chat routes need to decide who owns what.
    """
    ROLE_CHOICES = [("user", "user"), ("admin", "admin")]

    user_id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False
    )
    username = models.CharField(
        max_length=150,
        unique=True
    )
    display_name = models.CharField(
        max_length=150,
        blank=True,
        default=""
    )
    email = models.EmailField(
        unique=True
    )
    role = models.CharField(max_length=10, choices=ROLE_CHOICES, default="user")
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    USERNAME_FIELD = 'username'
    REQUIRED_FIELDS = ['email']

    def __str__(self):
        return self.username

    @property
    def is_authenticated(self):
        """An existing, active account counts as authenticated."""
        if not getattr(self, 'user_id', None):
            return False
        return bool(self.is_active)

    @property
    def is_anonymous(self):
        return False
