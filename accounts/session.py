"""Explicit reader session passed to balance-affecting services.

A session is opened when a user logs in (or per API request for the
authenticated user), refreshed after every operation that touches the coin
balance and closed on logout.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from django.contrib.auth.models import User
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from .models import Profile


class SessionClosedError(Exception):
    """Raised when a closed reader session is used for an operation."""

    def __init__(self, message: str | None = None):
        default_message = _("Your session has ended. Please sign in again.")
        super().__init__(message or default_message)


@dataclass
class ReaderSession:
    user: User
    profile: Profile
    coins: int
    is_admin: bool
    opened_at: datetime = field(default_factory=timezone.now)
    closed_at: datetime | None = None

    @classmethod
    def open(cls, user: User) -> "ReaderSession":
        if not user.is_authenticated:
            raise ValueError("A reader session requires an authenticated user")
        profile, _created = Profile.objects.get_or_create(user=user)
        return cls(
            user=user,
            profile=profile,
            coins=profile.coins,
            is_admin=profile.has_admin_access,
        )

    @property
    def is_active(self) -> bool:
        return self.closed_at is None

    def ensure_active(self) -> None:
        if not self.is_active:
            raise SessionClosedError()

    def refresh(self) -> None:
        self.ensure_active()
        self.profile.refresh_from_db(fields=["coins", "is_admin"])
        self.coins = self.profile.coins
        self.is_admin = self.profile.has_admin_access

    def close(self) -> None:
        if self.closed_at is None:
            self.closed_at = timezone.now()
