from __future__ import annotations

from django.contrib.auth import get_user_model
from django.core import signing
from django.core.signing import BadSignature, SignatureExpired
from django.db import DatabaseError
from django.db.models import F
from rest_framework import exceptions
from rest_framework.authentication import TokenAuthentication
from rest_framework.authtoken.models import Token

from accounts.models import Profile

_READER_TOKEN_SALT = "reader-auth-fallback"
_READER_TOKEN_MAX_AGE_SECONDS = 60 * 60 * 24 * 30


def _token_version(user_id) -> int | None:
    return (
        Profile.objects.filter(user_id=user_id)
        .values_list("token_version", flat=True)
        .first()
    )


def issue_reader_token(user) -> str:
    """Return DB token when available, otherwise signed fallback token.

    Signed tokens carry the profile's token version, so bumping the version
    revokes every signed token issued before.
    """

    try:
        token, _ = Token.objects.get_or_create(user=user)
        return token.key
    except DatabaseError:
        payload = {"uid": user.pk, "ver": user.profile.token_version}
        return signing.dumps(payload, salt=_READER_TOKEN_SALT)


def revoke_reader_tokens(user) -> int:
    """Invalidate the user's DB token and every signed token issued so far."""

    deleted, _details = Token.objects.filter(user=user).delete()
    Profile.objects.filter(user=user).update(token_version=F("token_version") + 1)
    return deleted


class ReaderTokenAuthentication(TokenAuthentication):
    """Supports DRF Token model and a signed fallback token for degraded DB states."""

    def authenticate_credentials(self, key):
        try:
            return super().authenticate_credentials(key)
        except exceptions.AuthenticationFailed:
            user = self._authenticate_signed_token(key)
            if not user:
                raise
            return (user, key)

    def _authenticate_signed_token(self, key):
        try:
            payload = signing.loads(
                key,
                salt=_READER_TOKEN_SALT,
                max_age=_READER_TOKEN_MAX_AGE_SECONDS,
            )
        except (BadSignature, SignatureExpired):
            return None

        user_id = payload.get("uid")
        if not user_id:
            return None
        version = _token_version(user_id)
        if version is None or payload.get("ver") != version:
            return None

        user_model = get_user_model()
        try:
            user = user_model.objects.get(pk=user_id)
        except user_model.DoesNotExist:
            return None
        if not user.is_active:
            return None
        return user
