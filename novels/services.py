"""Reading and premium-chapter purchase workflows."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_FLOOR, Decimal
from enum import Enum

from django.conf import settings
from django.db import DatabaseError, IntegrityError, OperationalError, transaction
from django.db.models import F, Max
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from accounts.models import CoinTransaction, InsufficientCoinsError, Profile
from accounts.session import ReaderSession

from .models import (
    Bookmark,
    Chapter,
    Novel,
    NovelRating,
    PendingAuthorCredit,
    Purchase,
    ReadingHistory,
)

__all__ = [
    "AuthorCreditError",
    "AuthorCreditResult",
    "ChapterAccess",
    "ChapterUnlockError",
    "ChapterUnlockResult",
    "InsufficientCoinsError",
    "LibraryEntry",
    "calculate_author_share",
    "chapter_neighbours",
    "create_chapter",
    "credit_author_share",
    "get_chapter_access",
    "next_chapter_number",
    "rate_novel",
    "ranked_novels",
    "reading_library",
    "record_chapter_read",
    "retry_pending_author_credits",
    "toggle_bookmark",
    "uncredited_purchases",
    "unlock_chapter",
]

logger = logging.getLogger(__name__)

DEFAULT_AUTHOR_REVENUE_SHARE = Decimal("0.70")
DEFAULT_UNLOCK_MAX_ATTEMPTS = 3
DEFAULT_AUTHOR_CREDIT_GRACE_SECONDS = 300
MIN_RATING = 1
MAX_RATING = 5


class ChapterAccess(Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"


class ChapterUnlockError(Exception):
    """Raised when the purchase could not be persisted. Nothing was charged."""

    def __init__(self, message: str | None = None):
        default_message = _("We could not process your purchase. Please try again.")
        super().__init__(message or default_message)


class AuthorCreditError(Exception):
    """Raised when the author's share of a sale could not be credited."""


@dataclass(frozen=True)
class AuthorCreditResult:
    purchase: Purchase
    amount: int
    transaction: CoinTransaction | None
    queued: bool = False


@dataclass(frozen=True)
class ChapterUnlockResult:
    chapter: Chapter
    access: ChapterAccess
    purchase: Purchase | None
    charged: bool
    balance_after: int
    buyer_transaction: CoinTransaction | None = None
    author_credit: AuthorCreditResult | None = None


def calculate_author_share(coin_cost: int) -> int:
    """Return the author's cut of a chapter sale, rounded down to whole coins."""

    if coin_cost < 0:
        raise ValueError("Coin cost must not be negative")
    ratio = Decimal(str(getattr(settings, "AUTHOR_REVENUE_SHARE", DEFAULT_AUTHOR_REVENUE_SHARE)))
    share = (Decimal(coin_cost) * ratio).to_integral_value(rounding=ROUND_FLOOR)
    return int(share)


def _find_purchase(user_id, chapter: Chapter) -> Purchase | None:
    return Purchase.objects.filter(user_id=user_id, chapter=chapter).first()


def get_chapter_access(user, chapter: Chapter) -> ChapterAccess:
    if not chapter.is_premium:
        return ChapterAccess.UNLOCKED
    if user is None or not user.is_authenticated:
        return ChapterAccess.LOCKED
    if chapter.novel.author_id == user.pk:
        return ChapterAccess.UNLOCKED
    if _find_purchase(user.pk, chapter) is not None:
        return ChapterAccess.UNLOCKED
    return ChapterAccess.LOCKED


def chapter_neighbours(chapter: Chapter) -> tuple[Chapter | None, Chapter | None]:
    siblings = Chapter.objects.filter(novel_id=chapter.novel_id).defer("content")
    previous = (
        siblings.filter(chapter_number__lt=chapter.chapter_number)
        .order_by("-chapter_number")
        .first()
    )
    following = (
        siblings.filter(chapter_number__gt=chapter.chapter_number)
        .order_by("chapter_number")
        .first()
    )
    return previous, following


def record_chapter_read(user, chapter: Chapter) -> None:
    """Bump the chapter view counter and log the read. Never raises."""

    try:
        with transaction.atomic():
            Chapter.objects.filter(pk=chapter.pk).update(views=F("views") + 1)
    except DatabaseError:
        logger.exception("Could not update views of chapter %s", chapter.pk)

    if user is None or not user.is_authenticated:
        return

    try:
        with transaction.atomic():
            ReadingHistory.objects.create(
                user=user,
                novel_id=chapter.novel_id,
                chapter=chapter,
            )
    except DatabaseError:
        logger.exception(
            "Could not record reading history for user %s, chapter %s",
            user.pk,
            chapter.pk,
        )


def _charge_buyer(profile: Profile, chapter: Chapter) -> tuple[Purchase, CoinTransaction | None, bool]:
    """Record the purchase and debit the buyer as one unit of work.

    Returns ``(purchase, buyer_transaction, created)``. When the chapter has
    already been bought the existing purchase is returned and nothing is
    written.
    """

    novel = chapter.novel
    with transaction.atomic():
        buyer = Profile.objects.select_for_update().get(pk=profile.pk)

        existing = _find_purchase(buyer.user_id, chapter)
        if existing is not None:
            return existing, None, False

        if buyer.coins < chapter.coin_cost:
            raise InsufficientCoinsError(
                _("You need %(cost)s coins to unlock this chapter, you have %(balance)s.")
                % {"cost": chapter.coin_cost, "balance": buyer.coins}
            )

        try:
            with transaction.atomic():
                purchase = Purchase.objects.create(
                    user_id=buyer.user_id,
                    chapter=chapter,
                    coin_amount=chapter.coin_cost,
                )
        except IntegrityError:
            # A concurrent request for the same chapter committed first.
            return Purchase.objects.get(user_id=buyer.user_id, chapter=chapter), None, False

        buyer_tx = None
        if chapter.coin_cost > 0:
            buyer_tx = buyer.spend_coins(
                chapter.coin_cost,
                transaction_type=CoinTransaction.Type.PURCHASE,
                reference_id=str(chapter.pk),
                description=f'Purchased chapter {chapter.chapter_number} of "{novel.title}"',
            )
        return purchase, buyer_tx, True


def credit_author_share(purchase: Purchase) -> AuthorCreditResult:
    """Credit the novel's author with their share of ``purchase``.

    Safe to call more than once: a purchase whose author share has already
    been credited is left untouched. A matching entry in the retry queue is
    removed on success. Any failure is raised as :class:`AuthorCreditError`.
    """

    chapter = purchase.chapter
    novel = chapter.novel
    amount = calculate_author_share(purchase.coin_amount)

    try:
        with transaction.atomic():
            locked = Purchase.objects.select_for_update().get(pk=purchase.pk)
            if locked.author_credited_at is not None:
                PendingAuthorCredit.objects.filter(purchase=locked).delete()
                return AuthorCreditResult(purchase=locked, amount=amount, transaction=None)

            tx = None
            if amount > 0:
                author_profile = Profile.objects.get(user_id=novel.author_id)
                tx = author_profile.credit_coins(
                    amount,
                    transaction_type=CoinTransaction.Type.SALE,
                    reference_id=str(chapter.pk),
                    description=f'Earnings from chapter {chapter.chapter_number} of "{novel.title}"',
                )
            locked.author_credited_at = timezone.now()
            locked.save(update_fields=["author_credited_at"])
            PendingAuthorCredit.objects.filter(purchase=locked).delete()
    except (DatabaseError, Profile.DoesNotExist) as exc:
        raise AuthorCreditError(f"Author credit for purchase {purchase.pk} failed: {exc}") from exc

    purchase.author_credited_at = locked.author_credited_at
    return AuthorCreditResult(purchase=locked, amount=amount, transaction=tx)


def _enqueue_author_credit(purchase: Purchase, error: Exception) -> bool:
    amount = calculate_author_share(purchase.coin_amount)
    try:
        with transaction.atomic():
            pending, created = PendingAuthorCredit.objects.get_or_create(
                purchase=purchase,
                defaults={
                    "author_id": purchase.chapter.novel.author_id,
                    "amount": amount,
                    "attempts": 1,
                    "last_error": str(error),
                },
            )
            if not created:
                PendingAuthorCredit.objects.filter(pk=pending.pk).update(
                    attempts=F("attempts") + 1,
                    last_error=str(error),
                )
    except DatabaseError:
        logger.exception("Could not queue author credit for purchase %s", purchase.pk)
        return False
    return True


def _settle_author_share(purchase: Purchase) -> AuthorCreditResult:
    try:
        return credit_author_share(purchase)
    except AuthorCreditError as exc:
        logger.exception("Author credit failed for purchase %s, queueing for retry", purchase.pk)
        queued = _enqueue_author_credit(purchase, exc)
        return AuthorCreditResult(
            purchase=purchase,
            amount=calculate_author_share(purchase.coin_amount),
            transaction=None,
            queued=queued,
        )


def unlock_chapter(session: ReaderSession, chapter: Chapter) -> ChapterUnlockResult:
    """Unlock a premium chapter for the session owner.

    The purchase record, the buyer's debit and the buyer's ledger entry are
    written in a single database transaction: either the chapter becomes
    unlocked and the coins are gone, or nothing changes. Crediting the author
    happens afterwards in its own transaction; when it fails the buyer keeps
    the chapter and the credit is queued for
    :func:`retry_pending_author_credits`.

    Repeated calls for an already unlocked chapter are no-ops.

    Raises:
        InsufficientCoinsError: the current balance does not cover the cost.
        ChapterUnlockError: the purchase could not be stored.
        accounts.session.SessionClosedError: the session was closed.
    """

    session.ensure_active()

    if get_chapter_access(session.user, chapter) is ChapterAccess.UNLOCKED:
        session.refresh()
        return ChapterUnlockResult(
            chapter=chapter,
            access=ChapterAccess.UNLOCKED,
            purchase=_find_purchase(session.user.pk, chapter),
            charged=False,
            balance_after=session.coins,
        )

    max_attempts = max(1, int(getattr(settings, "CHAPTER_UNLOCK_MAX_ATTEMPTS", DEFAULT_UNLOCK_MAX_ATTEMPTS)))
    attempt = 0
    while True:
        attempt += 1
        try:
            purchase, buyer_tx, created = _charge_buyer(session.profile, chapter)
            break
        except OperationalError as exc:
            if attempt >= max_attempts:
                logger.error(
                    "Giving up unlocking chapter %s for user %s after %s attempts: %s",
                    chapter.pk,
                    session.user.pk,
                    attempt,
                    exc,
                )
                raise ChapterUnlockError() from exc
            logger.warning(
                "Transient error unlocking chapter %s for user %s (attempt %s/%s): %s",
                chapter.pk,
                session.user.pk,
                attempt,
                max_attempts,
                exc,
            )
        except DatabaseError as exc:
            logger.exception("Could not unlock chapter %s for user %s", chapter.pk, session.user.pk)
            raise ChapterUnlockError() from exc

    author_credit = None
    if created:
        logger.info(
            "User %s unlocked chapter %s for %s coins",
            session.user.pk,
            chapter.pk,
            purchase.coin_amount,
        )
        author_credit = _settle_author_share(purchase)
        record_chapter_read(session.user, chapter)

    session.refresh()
    return ChapterUnlockResult(
        chapter=chapter,
        access=ChapterAccess.UNLOCKED,
        purchase=purchase,
        charged=created,
        balance_after=session.coins,
        buyer_transaction=buyer_tx,
        author_credit=author_credit,
    )


def uncredited_purchases(grace_seconds: int | None = None):
    """Purchases whose author share was never credited nor queued.

    Purchases younger than the grace period are skipped: their unlock may
    still be crediting the author.
    """

    if grace_seconds is None:
        grace_seconds = int(
            getattr(settings, "AUTHOR_CREDIT_GRACE_SECONDS", DEFAULT_AUTHOR_CREDIT_GRACE_SECONDS)
        )
    cutoff = timezone.now() - timedelta(seconds=grace_seconds)
    return (
        Purchase.objects.filter(
            author_credited_at__isnull=True,
            pending_author_credit__isnull=True,
            created_at__lte=cutoff,
        )
        .select_related("chapter", "chapter__novel")
        .order_by("created_at", "id")
    )


def retry_pending_author_credits(
    limit: int | None = None,
    queryset=None,
) -> tuple[int, int]:
    """Retry queued author credits. Returns ``(credited, failed)``.

    Without an explicit ``queryset`` the sweep also picks up purchases that
    were never credited and never made it into the queue. Those that fail
    again are queued.
    """

    sweep_uncredited = queryset is None
    if queryset is None:
        queryset = PendingAuthorCredit.objects.all()
    queryset = queryset.select_related(
        "purchase", "purchase__chapter", "purchase__chapter__novel"
    ).order_by("created_at", "id")
    if limit:
        queryset = queryset[:limit]

    credited = failed = 0
    for pending in list(queryset):
        try:
            credit_author_share(pending.purchase)
        except AuthorCreditError as exc:
            failed += 1
            logger.warning("Author credit retry failed for purchase %s: %s", pending.purchase_id, exc)
            PendingAuthorCredit.objects.filter(pk=pending.pk).update(
                attempts=F("attempts") + 1,
                last_error=str(exc),
            )
        else:
            credited += 1

    if not sweep_uncredited:
        return credited, failed

    orphans = uncredited_purchases()
    if limit:
        remaining = limit - credited - failed
        if remaining <= 0:
            return credited, failed
        orphans = orphans[:remaining]

    for purchase in list(orphans):
        try:
            credit_author_share(purchase)
        except AuthorCreditError as exc:
            failed += 1
            logger.warning("Author credit for unqueued purchase %s failed: %s", purchase.pk, exc)
            _enqueue_author_credit(purchase, exc)
        else:
            credited += 1
            logger.info("Credited author for unqueued purchase %s", purchase.pk)
    return credited, failed


def toggle_bookmark(user, novel: Novel) -> bool:
    """Add or remove ``novel`` from the user's library. Returns the new state."""

    with transaction.atomic():
        deleted, _details = Bookmark.objects.filter(user=user, novel=novel).delete()
        if deleted:
            Novel.objects.filter(pk=novel.pk, bookmarks__gt=0).update(bookmarks=F("bookmarks") - 1)
            bookmarked = False
        else:
            Bookmark.objects.create(user=user, novel=novel)
            Novel.objects.filter(pk=novel.pk).update(bookmarks=F("bookmarks") + 1)
            bookmarked = True
    novel.refresh_from_db(fields=["bookmarks"])
    return bookmarked


def rate_novel(user, novel: Novel, rating: int, comment: str = "") -> NovelRating:
    if isinstance(rating, bool) or not isinstance(rating, int):
        raise ValueError("Rating must be an integer")
    if not MIN_RATING <= rating <= MAX_RATING:
        raise ValueError(f"Rating must be between {MIN_RATING} and {MAX_RATING}")

    with transaction.atomic():
        novel_rating, _created = NovelRating.objects.update_or_create(
            user=user,
            novel=novel,
            defaults={"rating": rating, "comment": comment},
        )
        novel.refresh_rating()
    return novel_rating


RANKING_ORDERINGS = {
    "views": ("-views", "-id"),
    "rating": ("-rating", "-id"),
    "bookmarks": ("-bookmarks", "-id"),
}
DEFAULT_RANKING = "views"
RANKING_LIMIT = 20


def ranked_novels(sort_by: str | None = None, queryset=None):
    """Top novels by views, rating or bookmarks. Unknown keys rank by views."""

    ordering = RANKING_ORDERINGS.get(sort_by or DEFAULT_RANKING, RANKING_ORDERINGS[DEFAULT_RANKING])
    if queryset is None:
        queryset = Novel.objects.all()
    return queryset.order_by(*ordering)[:RANKING_LIMIT]


def next_chapter_number(novel: Novel) -> int:
    highest = novel.chapters.aggregate(value=Max("chapter_number"))["value"]
    return (highest or 0) + 1


def create_chapter(
    novel: Novel,
    *,
    title: str,
    content: str,
    is_premium: bool = False,
    coin_cost: int = 0,
    chapter_number: int | None = None,
) -> Chapter:
    """Add a chapter to ``novel``, numbered after the last one by default.

    Raises ``ValueError`` when the chapter number is already taken.
    """

    try:
        with transaction.atomic():
            if chapter_number is None:
                chapter_number = next_chapter_number(novel)
            chapter = Chapter.objects.create(
                novel=novel,
                chapter_number=chapter_number,
                title=title,
                content=content,
                is_premium=is_premium,
                coin_cost=coin_cost,
            )
    except IntegrityError as exc:
        raise ValueError(f"Chapter {chapter_number} already exists in this novel") from exc

    Novel.objects.filter(pk=novel.pk).update(updated_at=timezone.now())
    logger.info("Chapter %s added to novel %s", chapter.chapter_number, novel.pk)
    return chapter


@dataclass(frozen=True)
class LibraryEntry:
    novel: Novel
    last_read_chapter: Chapter | None = None
    last_read_at: datetime | None = None
    bookmarked_at: datetime | None = None


def reading_library(user) -> dict[str, list[LibraryEntry]]:
    """The user's bookmarked novels and reading history, newest first.

    History holds one entry per novel: the most recently read chapter.
    """

    bookmarks = [
        LibraryEntry(novel=bookmark.novel, bookmarked_at=bookmark.created_at)
        for bookmark in Bookmark.objects.filter(user=user)
        .select_related("novel")
        .order_by("-created_at", "-id")
    ]

    history: list[LibraryEntry] = []
    seen: set[int] = set()
    entries = (
        ReadingHistory.objects.filter(user=user)
        .select_related("novel", "chapter")
        .order_by("-read_at", "-id")
    )
    for entry in entries:
        if entry.novel_id in seen:
            continue
        seen.add(entry.novel_id)
        history.append(
            LibraryEntry(
                novel=entry.novel,
                last_read_chapter=entry.chapter,
                last_read_at=entry.read_at,
            )
        )

    return {"bookmarks": bookmarks, "history": history}
