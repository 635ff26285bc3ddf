from __future__ import annotations

from decimal import Decimal

from django.conf import settings
from django.contrib.auth.models import User
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models, transaction
from django.db.models import F
from django.utils.translation import gettext_lazy as _


class InsufficientCoinsError(Exception):
    """Raised when a profile does not have enough coins to cover a debit."""

    def __init__(self, message: str | None = None):
        default_message = _("Not enough coins to complete this action.")
        super().__init__(message or default_message)


def validate_avatar_size(file) -> None:
    limit_mb = getattr(settings, "MAX_AVATAR_UPLOAD_MB", 5)
    if file.size > limit_mb * 1024 * 1024:
        raise ValidationError(
            _("Avatar must be smaller than %(limit)s MB."),
            params={"limit": limit_mb},
            code="avatar_too_large",
        )


class Profile(models.Model):
    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name="profile")
    display_name = models.CharField(max_length=150, blank=True)
    avatar = models.ImageField(
        upload_to="avatars/",
        blank=True,
        null=True,
        validators=[validate_avatar_size],
    )
    bio = models.TextField(blank=True)
    coins = models.PositiveIntegerField(default=0)
    is_admin = models.BooleanField(default=False)
    token_version = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"Profile({self.user.username})"

    @property
    def public_name(self) -> str:
        return self.display_name or self.user.username

    @property
    def has_admin_access(self) -> bool:
        return self.is_admin or self.user.is_superuser

    def credit_coins(
        self,
        amount: int,
        *,
        transaction_type: "CoinTransaction.Type",
        description: str = "",
        reference_id: str | None = None,
    ) -> "CoinTransaction":
        if amount <= 0:
            raise ValueError("Coin credit amount must be positive")

        with transaction.atomic():
            Profile.objects.filter(pk=self.pk).update(coins=F("coins") + amount)
            self.refresh_from_db(fields=["coins"])
            return CoinTransaction.objects.create(
                profile=self,
                amount=amount,
                transaction_type=transaction_type,
                reference_id=reference_id,
                balance_after=self.coins,
                description=description,
            )

    def spend_coins(
        self,
        amount: int,
        *,
        transaction_type: "CoinTransaction.Type",
        description: str = "",
        reference_id: str | None = None,
    ) -> "CoinTransaction":
        if amount <= 0:
            raise ValueError("Coin spending amount must be positive")

        with transaction.atomic():
            updated = (
                Profile.objects.filter(pk=self.pk, coins__gte=amount)
                .update(coins=F("coins") - amount)
            )
            if not updated:
                raise InsufficientCoinsError()
            self.refresh_from_db(fields=["coins"])
            return CoinTransaction.objects.create(
                profile=self,
                amount=-amount,
                transaction_type=transaction_type,
                reference_id=reference_id,
                balance_after=self.coins,
                description=description,
            )


class CoinTransaction(models.Model):
    class Type(models.TextChoices):
        PURCHASE = ("purchase", _("Chapter purchase"))
        SALE = ("sale", _("Chapter sale earnings"))
        ADMIN_ADD = ("admin_add", _("Added by administrator"))
        ADMIN_DEDUCT = ("admin_deduct", _("Deducted by administrator"))
        COIN_PACKAGE = ("coin_package", _("Coin package purchase"))

    profile = models.ForeignKey(
        Profile,
        on_delete=models.CASCADE,
        related_name="coin_transactions",
    )
    amount = models.IntegerField()
    transaction_type = models.CharField(max_length=40, choices=Type.choices)
    reference_id = models.CharField(max_length=64, blank=True, null=True)
    description = models.CharField(max_length=255, blank=True)
    balance_after = models.PositiveIntegerField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("-created_at", "-id")
        indexes = [
            models.Index(fields=["profile", "transaction_type"], name="coin_tx_profile_type_idx"),
        ]

    def __str__(self) -> str:
        return (
            f"CoinTransaction({self.profile.user.username}, {self.transaction_type}, {self.amount})"
        )


class CoinPackage(models.Model):
    name = models.CharField(max_length=100)
    description = models.TextField(blank=True)
    coin_amount = models.PositiveIntegerField(validators=[MinValueValidator(1)])
    price = models.DecimalField(
        max_digits=9,
        decimal_places=2,
        validators=[MinValueValidator(Decimal("0.00"))],
    )
    currency = models.CharField(max_length=3, default="USD")
    is_featured = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("coin_amount", "id")

    def __str__(self) -> str:
        return f"CoinPackage({self.name}, {self.coin_amount})"


class PaymentProvider(models.Model):
    class Code(models.TextChoices):
        STRIPE = ("stripe", "Stripe")
        PAYPAL = ("paypal", "PayPal")
        MANUAL = ("manual", _("Manual / demo"))

    provider = models.CharField(max_length=20, choices=Code.choices, unique=True)
    is_enabled = models.BooleanField(default=False)
    config = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("provider",)

    def __str__(self) -> str:
        state = "on" if self.is_enabled else "off"
        return f"PaymentProvider({self.provider}, {state})"
