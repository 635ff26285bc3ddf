from decimal import Decimal
from io import StringIO
from unittest import mock

from django.contrib.auth import get_user_model
from django.contrib.auth.models import AnonymousUser
from django.core.management import call_command
from django.db import DatabaseError, OperationalError
from django.test import TestCase, override_settings

from accounts.models import CoinTransaction, InsufficientCoinsError, Profile
from accounts.session import ReaderSession, SessionClosedError
from novels import services
from novels.models import (
    Bookmark,
    Chapter,
    Novel,
    PendingAuthorCredit,
    Purchase,
    ReadingHistory,
)
from novels.services import (
    ChapterAccess,
    ChapterUnlockError,
    calculate_author_share,
    chapter_neighbours,
    create_chapter,
    credit_author_share,
    get_chapter_access,
    next_chapter_number,
    ranked_novels,
    rate_novel,
    reading_library,
    record_chapter_read,
    retry_pending_author_credits,
    toggle_bookmark,
    uncredited_purchases,
    unlock_chapter,
)


class AuthorShareTests(TestCase):
    def test_share_is_rounded_down(self):
        self.assertEqual(calculate_author_share(10), 7)
        self.assertEqual(calculate_author_share(15), 10)
        self.assertEqual(calculate_author_share(30), 21)
        self.assertEqual(calculate_author_share(70), 49)
        self.assertEqual(calculate_author_share(1), 0)
        self.assertEqual(calculate_author_share(0), 0)

    def test_negative_cost_rejected(self):
        with self.assertRaises(ValueError):
            calculate_author_share(-1)

    @override_settings(AUTHOR_REVENUE_SHARE=Decimal("0.5"))
    def test_share_follows_setting(self):
        self.assertEqual(calculate_author_share(15), 7)


class NovelFixtureMixin:
    def setUp(self):
        user_model = get_user_model()
        self.author = user_model.objects.create_user(username="author", password="password123")
        self.reader = user_model.objects.create_user(username="reader", password="password123")
        Profile.objects.filter(user=self.reader).update(coins=100)

        self.novel = Novel.objects.create(title="Glass Harbor", author=self.author)
        self.free_chapter = Chapter.objects.create(
            novel=self.novel, chapter_number=1, title="Arrival", content="Free"
        )
        self.chapter = Chapter.objects.create(
            novel=self.novel,
            chapter_number=2,
            title="Undertow",
            content="Premium",
            is_premium=True,
            coin_cost=30,
        )

    def balance(self, user) -> int:
        return Profile.objects.get(user=user).coins


class ChapterAccessTests(NovelFixtureMixin, TestCase):
    def test_free_chapter_is_unlocked_for_everyone(self):
        self.assertIs(get_chapter_access(AnonymousUser(), self.free_chapter), ChapterAccess.UNLOCKED)
        self.assertIs(get_chapter_access(self.reader, self.free_chapter), ChapterAccess.UNLOCKED)

    def test_premium_chapter_locked_until_purchased(self):
        self.assertIs(get_chapter_access(AnonymousUser(), self.chapter), ChapterAccess.LOCKED)
        self.assertIs(get_chapter_access(None, self.chapter), ChapterAccess.LOCKED)
        self.assertIs(get_chapter_access(self.reader, self.chapter), ChapterAccess.LOCKED)

        Purchase.objects.create(user=self.reader, chapter=self.chapter, coin_amount=30)

        self.assertIs(get_chapter_access(self.reader, self.chapter), ChapterAccess.UNLOCKED)

    def test_author_reads_own_premium_chapter(self):
        self.assertIs(get_chapter_access(self.author, self.chapter), ChapterAccess.UNLOCKED)

    def test_neighbours(self):
        third = Chapter.objects.create(novel=self.novel, chapter_number=5, title="Reef", content="x")

        self.assertEqual(chapter_neighbours(self.free_chapter), (None, self.chapter))
        self.assertEqual(chapter_neighbours(self.chapter), (self.free_chapter, third))
        self.assertEqual(chapter_neighbours(third), (self.chapter, None))


class UnlockChapterTests(NovelFixtureMixin, TestCase):
    def test_unlock_charges_buyer_and_credits_author(self):
        session = ReaderSession.open(self.reader)

        result = unlock_chapter(session, self.chapter)

        self.assertIs(result.access, ChapterAccess.UNLOCKED)
        self.assertTrue(result.charged)
        self.assertEqual(result.balance_after, 70)
        self.assertEqual(session.coins, 70)
        self.assertEqual(self.balance(self.reader), 70)
        self.assertEqual(self.balance(self.author), 21)

        purchase = Purchase.objects.get()
        self.assertEqual(purchase.user, self.reader)
        self.assertEqual(purchase.coin_amount, 30)
        self.assertIsNotNone(purchase.author_credited_at)

        buyer_tx = CoinTransaction.objects.get(transaction_type=CoinTransaction.Type.PURCHASE)
        self.assertEqual(buyer_tx.amount, -30)
        self.assertEqual(buyer_tx.balance_after, 70)
        self.assertEqual(buyer_tx.reference_id, str(self.chapter.pk))
        self.assertEqual(buyer_tx.description, 'Purchased chapter 2 of "Glass Harbor"')

        author_tx = CoinTransaction.objects.get(transaction_type=CoinTransaction.Type.SALE)
        self.assertEqual(author_tx.amount, 21)
        self.assertEqual(author_tx.profile.user, self.author)
        self.assertEqual(author_tx.description, 'Earnings from chapter 2 of "Glass Harbor"')
        self.assertEqual(result.author_credit.transaction, author_tx)
        self.assertFalse(result.author_credit.queued)

    def test_unlock_records_reading_history(self):
        unlock_chapter(ReaderSession.open(self.reader), self.chapter)

        self.assertTrue(
            ReadingHistory.objects.filter(user=self.reader, chapter=self.chapter).exists()
        )
        self.chapter.refresh_from_db()
        self.assertEqual(self.chapter.views, 1)

    def test_insufficient_coins_leaves_everything_untouched(self):
        Profile.objects.filter(user=self.reader).update(coins=10)
        session = ReaderSession.open(self.reader)

        with self.assertRaises(InsufficientCoinsError):
            unlock_chapter(session, self.chapter)

        self.assertEqual(self.balance(self.reader), 10)
        self.assertEqual(self.balance(self.author), 0)
        self.assertFalse(Purchase.objects.exists())
        self.assertFalse(CoinTransaction.objects.exists())
        self.assertIs(get_chapter_access(self.reader, self.chapter), ChapterAccess.LOCKED)

    def test_exact_balance_is_enough(self):
        Profile.objects.filter(user=self.reader).update(coins=30)

        result = unlock_chapter(ReaderSession.open(self.reader), self.chapter)

        self.assertTrue(result.charged)
        self.assertEqual(result.balance_after, 0)

    def test_repeated_unlock_is_a_no_op(self):
        session = ReaderSession.open(self.reader)
        unlock_chapter(session, self.chapter)

        again = unlock_chapter(session, self.chapter)

        self.assertFalse(again.charged)
        self.assertIs(again.access, ChapterAccess.UNLOCKED)
        self.assertEqual(again.purchase, Purchase.objects.get())
        self.assertEqual(self.balance(self.reader), 70)
        self.assertEqual(self.balance(self.author), 21)
        self.assertEqual(Purchase.objects.count(), 1)
        self.assertEqual(CoinTransaction.objects.count(), 2)

    def test_concurrent_duplicate_purchase_charges_once(self):
        # Another request committed a purchase after this one checked access.
        existing = Purchase.objects.create(user=self.reader, chapter=self.chapter, coin_amount=30)
        session = ReaderSession.open(self.reader)

        with mock.patch.object(
            services, "get_chapter_access", return_value=ChapterAccess.LOCKED
        ), mock.patch.object(services, "_find_purchase", return_value=None):
            result = unlock_chapter(session, self.chapter)

        self.assertFalse(result.charged)
        self.assertEqual(result.purchase, existing)
        self.assertEqual(self.balance(self.reader), 100)
        self.assertEqual(Purchase.objects.count(), 1)
        self.assertFalse(CoinTransaction.objects.exists())

    def test_repeated_unlock_reports_current_balance(self):
        session = ReaderSession.open(self.reader)
        unlock_chapter(session, self.chapter)
        # Balance changed elsewhere, e.g. a top-up in another request.
        Profile.objects.filter(user=self.reader).update(coins=55)

        again = unlock_chapter(session, self.chapter)

        self.assertFalse(again.charged)
        self.assertEqual(again.balance_after, 55)
        self.assertEqual(session.coins, 55)

    def test_free_chapter_unlock_reports_current_balance(self):
        session = ReaderSession.open(self.reader)
        Profile.objects.filter(user=self.reader).update(coins=12)

        result = unlock_chapter(session, self.free_chapter)

        self.assertEqual(result.balance_after, 12)

    def test_debit_refused_inside_transaction_discards_purchase(self):
        # Balance check passed, but the conditional debit lost a race.
        session = ReaderSession.open(self.reader)

        with mock.patch.object(Profile, "spend_coins", side_effect=InsufficientCoinsError()):
            with self.assertRaises(InsufficientCoinsError):
                unlock_chapter(session, self.chapter)

        self.assertEqual(self.balance(self.reader), 100)
        self.assertFalse(Purchase.objects.exists())
        self.assertFalse(CoinTransaction.objects.exists())
        self.assertIs(get_chapter_access(self.reader, self.chapter), ChapterAccess.LOCKED)

    def test_author_unlock_is_free(self):
        session = ReaderSession.open(self.author)

        result = unlock_chapter(session, self.chapter)

        self.assertFalse(result.charged)
        self.assertIsNone(result.purchase)
        self.assertFalse(Purchase.objects.exists())

    def test_free_chapter_unlock_is_free(self):
        result = unlock_chapter(ReaderSession.open(self.reader), self.free_chapter)

        self.assertFalse(result.charged)
        self.assertEqual(result.balance_after, 100)

    def test_single_coin_chapter_credits_nothing(self):
        self.chapter.coin_cost = 1
        self.chapter.save()

        result = unlock_chapter(ReaderSession.open(self.reader), self.chapter)

        self.assertEqual(result.balance_after, 99)
        self.assertEqual(result.author_credit.amount, 0)
        self.assertIsNone(result.author_credit.transaction)
        self.assertEqual(self.balance(self.author), 0)
        self.assertIsNotNone(Purchase.objects.get().author_credited_at)
        self.assertFalse(PendingAuthorCredit.objects.exists())

    def test_closed_session_is_rejected(self):
        session = ReaderSession.open(self.reader)
        session.close()

        with self.assertRaises(SessionClosedError):
            unlock_chapter(session, self.chapter)

        self.assertEqual(self.balance(self.reader), 100)
        self.assertFalse(Purchase.objects.exists())

    def test_buyer_write_failure_rolls_back(self):
        session = ReaderSession.open(self.reader)

        with mock.patch.object(
            Profile, "spend_coins", side_effect=DatabaseError("disk full")
        ), self.assertLogs("novels.services", level="ERROR"):
            with self.assertRaises(ChapterUnlockError):
                unlock_chapter(session, self.chapter)

        self.assertEqual(self.balance(self.reader), 100)
        self.assertFalse(Purchase.objects.exists())
        self.assertFalse(CoinTransaction.objects.exists())
        self.assertIs(get_chapter_access(self.reader, self.chapter), ChapterAccess.LOCKED)

    def test_transient_error_is_retried(self):
        real_charge = services._charge_buyer
        calls = []

        def flaky_charge(profile, chapter):
            calls.append(chapter.pk)
            if len(calls) == 1:
                raise OperationalError("database is locked")
            return real_charge(profile, chapter)

        with mock.patch.object(services, "_charge_buyer", side_effect=flaky_charge):
            result = unlock_chapter(ReaderSession.open(self.reader), self.chapter)

        self.assertEqual(len(calls), 2)
        self.assertTrue(result.charged)
        self.assertEqual(self.balance(self.reader), 70)

    @override_settings(CHAPTER_UNLOCK_MAX_ATTEMPTS=2)
    def test_gives_up_after_max_attempts(self):
        with mock.patch.object(
            services, "_charge_buyer", side_effect=OperationalError("database is locked")
        ) as charge:
            with self.assertRaises(ChapterUnlockError):
                unlock_chapter(ReaderSession.open(self.reader), self.chapter)

        self.assertEqual(charge.call_count, 2)
        self.assertEqual(self.balance(self.reader), 100)


class AuthorCreditQueueTests(NovelFixtureMixin, TestCase):
    def unlock_with_failing_author_credit(self):
        with mock.patch.object(
            Profile, "credit_coins", side_effect=DatabaseError("connection reset")
        ), self.assertLogs("novels.services", level="ERROR"):
            return unlock_chapter(ReaderSession.open(self.reader), self.chapter)

    def test_author_failure_keeps_purchase_and_queues_credit(self):
        result = self.unlock_with_failing_author_credit()

        self.assertTrue(result.charged)
        self.assertTrue(result.author_credit.queued)
        self.assertEqual(self.balance(self.reader), 70)
        self.assertEqual(self.balance(self.author), 0)
        self.assertIs(get_chapter_access(self.reader, self.chapter), ChapterAccess.UNLOCKED)

        pending = PendingAuthorCredit.objects.get()
        self.assertEqual(pending.author, self.author)
        self.assertEqual(pending.amount, 21)
        self.assertEqual(pending.attempts, 1)
        self.assertIn("connection reset", pending.last_error)
        self.assertIsNone(Purchase.objects.get().author_credited_at)

    def test_missing_author_profile_is_queued(self):
        Profile.objects.filter(user=self.author).delete()

        with self.assertLogs("novels.services", level="ERROR"):
            result = unlock_chapter(ReaderSession.open(self.reader), self.chapter)

        self.assertTrue(result.author_credit.queued)
        self.assertEqual(PendingAuthorCredit.objects.get().amount, 21)

    def test_retry_credits_author_and_clears_queue(self):
        self.unlock_with_failing_author_credit()

        credited, failed = retry_pending_author_credits()

        self.assertEqual((credited, failed), (1, 0))
        self.assertEqual(self.balance(self.author), 21)
        self.assertFalse(PendingAuthorCredit.objects.exists())
        self.assertIsNotNone(Purchase.objects.get().author_credited_at)

    def test_failed_retry_stays_queued(self):
        self.unlock_with_failing_author_credit()

        with mock.patch.object(Profile, "credit_coins", side_effect=DatabaseError("still down")):
            credited, failed = retry_pending_author_credits()

        self.assertEqual((credited, failed), (0, 1))
        pending = PendingAuthorCredit.objects.get()
        self.assertEqual(pending.attempts, 2)
        self.assertIn("still down", pending.last_error)

    def test_credit_is_idempotent(self):
        unlock_chapter(ReaderSession.open(self.reader), self.chapter)
        purchase = Purchase.objects.get()

        result = credit_author_share(purchase)

        self.assertIsNone(result.transaction)
        self.assertEqual(self.balance(self.author), 21)
        self.assertEqual(
            CoinTransaction.objects.filter(transaction_type=CoinTransaction.Type.SALE).count(), 1
        )

    def test_management_command_drains_queue(self):
        self.unlock_with_failing_author_credit()
        out = StringIO()

        call_command("retry_author_credits", stdout=out)

        self.assertIn("Credited 1 of 1 pending author credits.", out.getvalue())
        self.assertEqual(self.balance(self.author), 21)

    def test_management_command_with_empty_queue(self):
        out = StringIO()

        call_command("retry_author_credits", stdout=out)

        self.assertIn("No pending author credits.", out.getvalue())

    def test_management_command_reports_processed_credits(self):
        self.unlock_with_failing_author_credit()
        second = Chapter.objects.create(
            novel=self.novel,
            chapter_number=3,
            title="Low Tide",
            content="Premium",
            is_premium=True,
            coin_cost=10,
        )
        with mock.patch.object(
            Profile, "credit_coins", side_effect=DatabaseError("connection reset")
        ), self.assertLogs("novels.services", level="ERROR"):
            unlock_chapter(ReaderSession.open(self.reader), second)
        out = StringIO()

        call_command("retry_author_credits", limit=1, stdout=out)

        self.assertIn("Credited 1 of 1 pending author credits.", out.getvalue())
        self.assertEqual(PendingAuthorCredit.objects.count(), 1)

    def unlock_with_lost_author_credit(self):
        """Author credit fails and so does writing it to the queue."""

        with mock.patch.object(
            Profile, "credit_coins", side_effect=DatabaseError("connection reset")
        ), mock.patch.object(
            PendingAuthorCredit.objects, "get_or_create", side_effect=DatabaseError("queue down")
        ), self.assertLogs("novels.services", level="ERROR"):
            return unlock_chapter(ReaderSession.open(self.reader), self.chapter)

    def test_lost_queue_entry_is_reported(self):
        result = self.unlock_with_lost_author_credit()

        self.assertTrue(result.charged)
        self.assertFalse(result.author_credit.queued)
        self.assertFalse(PendingAuthorCredit.objects.exists())
        self.assertIsNone(Purchase.objects.get().author_credited_at)

    @override_settings(AUTHOR_CREDIT_GRACE_SECONDS=0)
    def test_retry_sweeps_purchases_missing_from_queue(self):
        self.unlock_with_lost_author_credit()
        self.assertEqual(list(uncredited_purchases()), [Purchase.objects.get()])

        credited, failed = retry_pending_author_credits()

        self.assertEqual((credited, failed), (1, 0))
        self.assertEqual(self.balance(self.author), 21)
        self.assertIsNotNone(Purchase.objects.get().author_credited_at)
        self.assertFalse(uncredited_purchases().exists())

    @override_settings(AUTHOR_CREDIT_GRACE_SECONDS=0)
    def test_failed_sweep_queues_the_credit(self):
        self.unlock_with_lost_author_credit()

        with mock.patch.object(
            Profile, "credit_coins", side_effect=DatabaseError("still down")
        ), self.assertLogs("novels.services", level="WARNING"):
            credited, failed = retry_pending_author_credits()

        self.assertEqual((credited, failed), (0, 1))
        pending = PendingAuthorCredit.objects.get()
        self.assertEqual(pending.amount, 21)
        self.assertIn("still down", pending.last_error)

    def test_sweep_skips_recent_purchases(self):
        self.unlock_with_lost_author_credit()

        self.assertEqual(retry_pending_author_credits(), (0, 0))
        self.assertEqual(self.balance(self.author), 0)

    def test_explicit_queryset_does_not_sweep(self):
        self.unlock_with_lost_author_credit()

        with override_settings(AUTHOR_CREDIT_GRACE_SECONDS=0):
            result = retry_pending_author_credits(queryset=PendingAuthorCredit.objects.all())

        self.assertEqual(result, (0, 0))
        self.assertEqual(self.balance(self.author), 0)


class ReadingActivityTests(NovelFixtureMixin, TestCase):
    def test_record_chapter_read(self):
        record_chapter_read(self.reader, self.free_chapter)

        self.free_chapter.refresh_from_db()
        self.assertEqual(self.free_chapter.views, 1)
        history = ReadingHistory.objects.get()
        self.assertEqual(history.novel, self.novel)
        self.assertEqual(history.chapter, self.free_chapter)

    def test_anonymous_read_only_counts_view(self):
        record_chapter_read(AnonymousUser(), self.free_chapter)

        self.free_chapter.refresh_from_db()
        self.assertEqual(self.free_chapter.views, 1)
        self.assertFalse(ReadingHistory.objects.exists())

    def test_toggle_bookmark(self):
        self.assertTrue(toggle_bookmark(self.reader, self.novel))
        self.assertEqual(self.novel.bookmarks, 1)
        self.assertTrue(Bookmark.objects.filter(user=self.reader, novel=self.novel).exists())

        self.assertFalse(toggle_bookmark(self.reader, self.novel))
        self.assertEqual(self.novel.bookmarks, 0)
        self.assertFalse(Bookmark.objects.exists())

    def test_rate_novel_updates_average(self):
        rate_novel(self.reader, self.novel, 5)
        rate_novel(self.author, self.novel, 2, "Too slow")

        self.novel.refresh_from_db()
        self.assertEqual(self.novel.rating, Decimal("3.50"))

        rate_novel(self.reader, self.novel, 4)
        self.novel.refresh_from_db()
        self.assertEqual(self.novel.rating, Decimal("3.00"))
        self.assertEqual(self.novel.ratings.count(), 2)

    def test_rate_novel_validates_value(self):
        for value in (0, 6, "5", True, 4.5):
            with self.subTest(value=value):
                with self.assertRaises(ValueError):
                    rate_novel(self.reader, self.novel, value)
        self.assertFalse(self.novel.ratings.exists())


class ChapterAuthoringTests(NovelFixtureMixin, TestCase):
    def test_next_chapter_number_follows_highest(self):
        self.assertEqual(next_chapter_number(self.novel), 3)

        Chapter.objects.create(novel=self.novel, chapter_number=7, title="Gap", content="...")

        self.assertEqual(next_chapter_number(self.novel), 8)

    def test_next_chapter_number_for_empty_novel(self):
        empty = Novel.objects.create(title="Blank Pages", author=self.author)

        self.assertEqual(next_chapter_number(empty), 1)

    def test_create_chapter_appends(self):
        with self.assertLogs("novels.services", level="INFO"):
            chapter = create_chapter(
                self.novel, title="Riptide", content="Premium", is_premium=True, coin_cost=15
            )

        self.assertEqual(chapter.chapter_number, 3)
        self.assertTrue(chapter.is_premium)
        self.assertEqual(chapter.coin_cost, 15)
        self.assertEqual(self.novel.chapters.count(), 3)

    def test_create_chapter_rejects_taken_number(self):
        with self.assertRaisesMessage(ValueError, "Chapter 2 already exists"):
            create_chapter(self.novel, title="Again", content="...", chapter_number=2)

        self.assertEqual(self.novel.chapters.count(), 2)


class RankingTests(NovelFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.second = Novel.objects.create(title="Iron Choir", author=self.author)
        Novel.objects.filter(pk=self.novel.pk).update(views=10, rating=Decimal("4.50"), bookmarks=1)
        Novel.objects.filter(pk=self.second.pk).update(views=50, rating=Decimal("3.00"), bookmarks=9)

    def titles(self, sort_by):
        return [novel.title for novel in ranked_novels(sort_by)]

    def test_rank_by_views(self):
        self.assertEqual(self.titles("views"), ["Iron Choir", "Glass Harbor"])

    def test_rank_by_rating(self):
        self.assertEqual(self.titles("rating"), ["Glass Harbor", "Iron Choir"])

    def test_rank_by_bookmarks(self):
        self.assertEqual(self.titles("bookmarks"), ["Iron Choir", "Glass Harbor"])

    def test_unknown_sort_ranks_by_views(self):
        self.assertEqual(self.titles("newest"), self.titles("views"))
        self.assertEqual(self.titles(None), self.titles("views"))

    def test_ranking_is_limited(self):
        for index in range(services.RANKING_LIMIT + 5):
            Novel.objects.create(title=f"Filler {index}", author=self.author)

        self.assertEqual(len(ranked_novels("views")), services.RANKING_LIMIT)


class ReadingLibraryTests(NovelFixtureMixin, TestCase):
    def test_empty_library(self):
        self.assertEqual(reading_library(self.reader), {"bookmarks": [], "history": []})

    def test_bookmarks_newest_first(self):
        other = Novel.objects.create(title="Iron Choir", author=self.author)
        toggle_bookmark(self.reader, self.novel)
        toggle_bookmark(self.reader, other)

        bookmarks = reading_library(self.reader)["bookmarks"]

        self.assertEqual([entry.novel for entry in bookmarks], [other, self.novel])
        self.assertIsNotNone(bookmarks[0].bookmarked_at)
        self.assertIsNone(bookmarks[0].last_read_chapter)

    def test_history_keeps_latest_chapter_per_novel(self):
        other = Novel.objects.create(title="Iron Choir", author=self.author)
        other_chapter = Chapter.objects.create(novel=other, chapter_number=1, title="Hymn", content="...")
        record_chapter_read(self.reader, self.free_chapter)
        record_chapter_read(self.reader, other_chapter)
        unlock_chapter(ReaderSession.open(self.reader), self.chapter)

        history = reading_library(self.reader)["history"]

        self.assertEqual([entry.novel for entry in history], [self.novel, other])
        self.assertEqual(history[0].last_read_chapter, self.chapter)
        self.assertEqual(history[1].last_read_chapter, other_chapter)
        self.assertIsNotNone(history[0].last_read_at)

    def test_library_is_per_user(self):
        toggle_bookmark(self.author, self.novel)
        record_chapter_read(self.author, self.free_chapter)

        self.assertEqual(reading_library(self.reader), {"bookmarks": [], "history": []})
