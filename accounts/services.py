from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from django.core.exceptions import PermissionDenied
from django.db.models import Count, Sum
from django.db.models.functions import Abs
from django.utils.translation import gettext_lazy as _

from .models import (
    CoinPackage,
    CoinTransaction,
    InsufficientCoinsError,
    PaymentProvider,
    Profile,
)
from .session import ReaderSession

__all__ = [
    "MAX_ADJUSTMENT_AMOUNT",
    "CoinAdjustmentResult",
    "InsufficientCoinsError",
    "PaymentProviderUnavailable",
    "adjust_coins",
    "get_coin_summary",
    "purchase_coin_package",
]

# Largest value the integer balance and ledger columns hold.
MAX_ADJUSTMENT_AMOUNT = 2_147_483_647


class PaymentProviderUnavailable(Exception):
    """Raised when a coin package is bought through a disabled provider."""

    def __init__(self, message: str | None = None):
        default_message = _("This payment method is currently unavailable.")
        super().__init__(message or default_message)


@dataclass(frozen=True)
class CoinAdjustmentResult:
    profile: Profile
    transaction: CoinTransaction
    amount: int


def adjust_coins(
    session: ReaderSession,
    profile: Profile,
    amount: int,
    *,
    reason: str = "",
) -> CoinAdjustmentResult:
    """Credit or debit a user's balance on behalf of an administrator.

    A positive ``amount`` adds coins, a negative one deducts them. The balance
    update and the ledger entry are written in one database transaction and a
    deduction never takes the balance below zero: when the profile does not
    hold enough coins :class:`InsufficientCoinsError` is raised and nothing is
    written.
    """

    session.ensure_active()
    if not session.is_admin:
        raise PermissionDenied(_("Only administrators can adjust coin balances."))
    if amount == 0:
        raise ValueError("Adjustment amount must not be zero")
    if abs(amount) > MAX_ADJUSTMENT_AMOUNT:
        raise ValueError(f"Adjustment amount must not exceed {MAX_ADJUSTMENT_AMOUNT}")

    if amount > 0:
        profile.refresh_from_db(fields=["coins"])
        if profile.coins + amount > MAX_ADJUSTMENT_AMOUNT:
            raise ValueError("Adjustment would exceed the maximum coin balance")
        tx = profile.credit_coins(
            amount,
            transaction_type=CoinTransaction.Type.ADMIN_ADD,
            description=reason or "Admin added coins",
        )
    else:
        tx = profile.spend_coins(
            -amount,
            transaction_type=CoinTransaction.Type.ADMIN_DEDUCT,
            description=reason or "Admin deducted coins",
        )

    if profile.pk == session.profile.pk:
        session.refresh()
    return CoinAdjustmentResult(profile=profile, transaction=tx, amount=amount)


def purchase_coin_package(
    session: ReaderSession,
    package: CoinPackage,
    *,
    provider: str = PaymentProvider.Code.MANUAL,
) -> CoinTransaction:
    """Top up the session owner's balance with a coin package."""

    session.ensure_active()
    if not package.is_active:
        raise ValueError("Coin package is not available")

    is_enabled = PaymentProvider.objects.filter(
        provider=provider, is_enabled=True
    ).exists()
    if not is_enabled:
        raise PaymentProviderUnavailable()

    tx = session.profile.credit_coins(
        package.coin_amount,
        transaction_type=CoinTransaction.Type.COIN_PACKAGE,
        reference_id=str(package.pk),
        description=f"Purchased {package.name} package",
    )
    session.refresh()
    return tx


def get_coin_summary(profile: Profile) -> dict[str, Any]:
    """Build an API-friendly summary of a profile's balance and ledger.

    Parameters
    ----------
    profile:
        The profile whose ledger is summarised.
    """

    rows = (
        profile.coin_transactions.order_by()
        .values("transaction_type")
        .annotate(count=Count("id"), total=Sum(Abs("amount")))
    )
    by_type = {row["transaction_type"]: row for row in rows}

    totals: dict[str, int] = {}
    counts: dict[str, int] = {}
    for code in CoinTransaction.Type.values:
        row = by_type.get(code) or {}
        totals[code] = row.get("total") or 0
        counts[code] = row.get("count") or 0

    return {
        "balance": profile.coins,
        "totals": totals,
        "transaction_counts": counts,
    }
