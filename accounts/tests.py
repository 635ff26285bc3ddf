from django.contrib.auth import get_user_model
from django.core.exceptions import PermissionDenied, ValidationError
from django.core.files.uploadedfile import SimpleUploadedFile
from django.test import TestCase, override_settings
from django.urls import reverse

from accounts.models import (
    CoinPackage,
    CoinTransaction,
    InsufficientCoinsError,
    PaymentProvider,
    Profile,
    validate_avatar_size,
)
from accounts.services import (
    MAX_ADJUSTMENT_AMOUNT,
    PaymentProviderUnavailable,
    adjust_coins,
    get_coin_summary,
    purchase_coin_package,
)
from accounts.session import ReaderSession, SessionClosedError


class ProfileSignalTests(TestCase):
    def test_profile_created_for_new_user(self):
        user = get_user_model().objects.create_user(username="fresh", password="password123")

        self.assertTrue(Profile.objects.filter(user=user).exists())
        self.assertEqual(user.profile.coins, 0)
        self.assertFalse(user.profile.is_admin)
        self.assertEqual(user.profile.public_name, "fresh")

    def test_superuser_profile_has_admin_access(self):
        user = get_user_model().objects.create_superuser(
            username="boss", email="boss@example.com", password="password123"
        )

        self.assertTrue(user.profile.is_admin)
        self.assertTrue(user.profile.has_admin_access)


class CoinEconomyTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(
            username="coins_user",
            email="coins@example.com",
            password="CoinsPass123!",
        )
        self.profile = self.user.profile
        self.initial_balance = self.profile.coins

    def test_credit_coins_records_transaction(self):
        tx = self.profile.credit_coins(
            15,
            transaction_type=CoinTransaction.Type.ADMIN_ADD,
            description="Top-up",
        )

        self.profile.refresh_from_db()
        self.assertEqual(self.profile.coins, self.initial_balance + 15)
        self.assertEqual(tx.balance_after, self.initial_balance + 15)
        self.assertEqual(tx.amount, 15)
        self.assertEqual(tx.description, "Top-up")

    def test_spend_coins_decreases_balance(self):
        self.profile.credit_coins(
            20,
            transaction_type=CoinTransaction.Type.ADMIN_ADD,
        )

        tx = self.profile.spend_coins(
            5,
            transaction_type=CoinTransaction.Type.PURCHASE,
            description="Chapter",
        )

        self.profile.refresh_from_db()
        self.assertEqual(self.profile.coins, self.initial_balance + 15)
        self.assertEqual(tx.amount, -5)
        self.assertEqual(tx.balance_after, self.initial_balance + 15)

    def test_spend_coins_raises_when_insufficient(self):
        Profile.objects.filter(pk=self.profile.pk).update(coins=0)
        self.profile.refresh_from_db()
        with self.assertRaisesMessage(InsufficientCoinsError, "Not enough coins"):
            self.profile.spend_coins(
                1,
                transaction_type=CoinTransaction.Type.PURCHASE,
            )
        self.assertFalse(self.profile.coin_transactions.exists())

    def test_non_positive_amounts_rejected(self):
        with self.assertRaises(ValueError):
            self.profile.credit_coins(0, transaction_type=CoinTransaction.Type.ADMIN_ADD)
        with self.assertRaises(ValueError):
            self.profile.spend_coins(-3, transaction_type=CoinTransaction.Type.PURCHASE)


class ReaderSessionTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(username="reader", password="password123")

    def test_open_snapshots_balance(self):
        Profile.objects.filter(user=self.user).update(coins=40)

        session = ReaderSession.open(self.user)

        self.assertTrue(session.is_active)
        self.assertEqual(session.coins, 40)
        self.assertFalse(session.is_admin)

    def test_refresh_picks_up_new_balance(self):
        session = ReaderSession.open(self.user)
        Profile.objects.filter(user=self.user).update(coins=12)

        session.refresh()

        self.assertEqual(session.coins, 12)

    def test_closed_session_cannot_be_used(self):
        session = ReaderSession.open(self.user)
        session.close()

        self.assertFalse(session.is_active)
        with self.assertRaises(SessionClosedError):
            session.ensure_active()
        with self.assertRaises(SessionClosedError):
            session.refresh()

    def test_open_requires_authenticated_user(self):
        from django.contrib.auth.models import AnonymousUser

        with self.assertRaises(ValueError):
            ReaderSession.open(AnonymousUser())


class AdjustCoinsTests(TestCase):
    def setUp(self):
        user_model = get_user_model()
        self.admin = user_model.objects.create_user(username="moderator", password="password123")
        Profile.objects.filter(user=self.admin).update(is_admin=True)
        self.reader = user_model.objects.create_user(username="reader", password="password123")
        Profile.objects.filter(user=self.reader).update(coins=50)
        self.reader_profile = Profile.objects.get(user=self.reader)

    def test_admin_can_add_coins(self):
        session = ReaderSession.open(self.admin)

        result = adjust_coins(session, self.reader_profile, 25)

        self.reader_profile.refresh_from_db()
        self.assertEqual(self.reader_profile.coins, 75)
        self.assertEqual(result.transaction.transaction_type, CoinTransaction.Type.ADMIN_ADD)
        self.assertEqual(result.transaction.description, "Admin added coins")
        self.assertEqual(result.transaction.balance_after, 75)

    def test_admin_can_deduct_coins_with_reason(self):
        session = ReaderSession.open(self.admin)

        result = adjust_coins(session, self.reader_profile, -20, reason="Refund reversal")

        self.reader_profile.refresh_from_db()
        self.assertEqual(self.reader_profile.coins, 30)
        self.assertEqual(result.transaction.amount, -20)
        self.assertEqual(result.transaction.transaction_type, CoinTransaction.Type.ADMIN_DEDUCT)
        self.assertEqual(result.transaction.description, "Refund reversal")

    def test_deduction_never_goes_below_zero(self):
        session = ReaderSession.open(self.admin)

        with self.assertRaises(InsufficientCoinsError):
            adjust_coins(session, self.reader_profile, -51)

        self.reader_profile.refresh_from_db()
        self.assertEqual(self.reader_profile.coins, 50)
        self.assertFalse(self.reader_profile.coin_transactions.exists())

    def test_non_admin_is_rejected(self):
        session = ReaderSession.open(self.reader)

        with self.assertRaises(PermissionDenied):
            adjust_coins(session, self.reader_profile, 10)

        self.reader_profile.refresh_from_db()
        self.assertEqual(self.reader_profile.coins, 50)

    def test_zero_adjustment_rejected(self):
        session = ReaderSession.open(self.admin)

        with self.assertRaises(ValueError):
            adjust_coins(session, self.reader_profile, 0)

    def test_adjustment_beyond_column_range_rejected(self):
        session = ReaderSession.open(self.admin)

        with self.assertRaises(ValueError):
            adjust_coins(session, self.reader_profile, MAX_ADJUSTMENT_AMOUNT + 1)
        with self.assertRaises(ValueError):
            adjust_coins(session, self.reader_profile, MAX_ADJUSTMENT_AMOUNT)

        self.reader_profile.refresh_from_db()
        self.assertEqual(self.reader_profile.coins, 50)
        self.assertFalse(self.reader_profile.coin_transactions.exists())

    def test_own_adjustment_refreshes_session(self):
        session = ReaderSession.open(self.admin)

        adjust_coins(session, session.profile, 5)

        self.assertEqual(session.coins, 5)


class CoinPackageTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(username="buyer", password="password123")
        self.package = CoinPackage.objects.create(name="Chest", coin_amount=500, price="3.99")

    def test_purchase_requires_enabled_provider(self):
        session = ReaderSession.open(self.user)
        PaymentProvider.objects.create(provider=PaymentProvider.Code.STRIPE, is_enabled=False)

        with self.assertRaises(PaymentProviderUnavailable):
            purchase_coin_package(session, self.package, provider=PaymentProvider.Code.STRIPE)

        self.assertEqual(session.coins, 0)

    def test_purchase_credits_balance(self):
        PaymentProvider.objects.create(provider=PaymentProvider.Code.MANUAL, is_enabled=True)
        session = ReaderSession.open(self.user)

        tx = purchase_coin_package(session, self.package)

        self.assertEqual(session.coins, 500)
        self.assertEqual(tx.transaction_type, CoinTransaction.Type.COIN_PACKAGE)
        self.assertEqual(tx.reference_id, str(self.package.pk))
        self.assertEqual(tx.description, "Purchased Chest package")

    def test_inactive_package_rejected(self):
        PaymentProvider.objects.create(provider=PaymentProvider.Code.MANUAL, is_enabled=True)
        self.package.is_active = False
        self.package.save()

        with self.assertRaises(ValueError):
            purchase_coin_package(ReaderSession.open(self.user), self.package)


class CoinSummaryTests(TestCase):
    def test_summary_groups_ledger_by_type(self):
        user = get_user_model().objects.create_user(username="ledger", password="password123")
        profile = user.profile
        profile.credit_coins(100, transaction_type=CoinTransaction.Type.ADMIN_ADD)
        profile.spend_coins(30, transaction_type=CoinTransaction.Type.PURCHASE)
        profile.spend_coins(10, transaction_type=CoinTransaction.Type.PURCHASE)

        summary = get_coin_summary(profile)

        self.assertEqual(summary["balance"], 60)
        self.assertEqual(summary["totals"]["purchase"], 40)
        self.assertEqual(summary["totals"]["admin_add"], 100)
        self.assertEqual(summary["totals"]["sale"], 0)
        self.assertEqual(summary["transaction_counts"]["purchase"], 2)
        self.assertEqual(set(summary["totals"]), set(CoinTransaction.Type.values))


@override_settings(
    SECURE_SSL_REDIRECT=False,
    SESSION_COOKIE_SECURE=False,
    CSRF_COOKIE_SECURE=False,
)
class AdminCoinAdjustmentViewTests(TestCase):
    def setUp(self):
        user_model = get_user_model()
        self.superuser = user_model.objects.create_superuser(
            username="root", email="root@example.com", password="password123"
        )
        self.reader = user_model.objects.create_user(username="reader", password="password123")
        self.client.force_login(self.superuser)
        self.url = reverse("admin:accounts_profile_adjust_coins", args=[self.reader.profile.pk])

    def test_form_renders(self):
        response = self.client.get(self.url)

        self.assertEqual(response.status_code, 200)
        self.assertContains(response, "Adjust coins")

    def test_add_coins_redirects_to_profile(self):
        response = self.client.post(
            self.url,
            {"adjustment_type": "add", "amount": 40, "reason": "Contest prize"},
        )

        self.assertRedirects(
            response,
            reverse("admin:accounts_profile_change", args=[self.reader.profile.pk]),
        )
        profile = Profile.objects.get(user=self.reader)
        self.assertEqual(profile.coins, 40)
        tx = profile.coin_transactions.get()
        self.assertEqual(tx.description, "Contest prize")

    def test_deduct_more_than_balance_shows_error(self):
        response = self.client.post(
            self.url,
            {"adjustment_type": "deduct", "amount": 5, "reason": ""},
        )

        self.assertEqual(response.status_code, 200)
        self.assertContains(response, "Not enough coins")
        self.assertEqual(Profile.objects.get(user=self.reader).coins, 0)


class AvatarSizeValidationTests(TestCase):
    @override_settings(MAX_AVATAR_UPLOAD_MB=1)
    def test_large_avatar_rejected(self):
        upload = SimpleUploadedFile("avatar.png", b"0" * (1024 * 1024 + 1))

        with self.assertRaises(ValidationError):
            validate_avatar_size(upload)

    @override_settings(MAX_AVATAR_UPLOAD_MB=1)
    def test_small_avatar_accepted(self):
        validate_avatar_size(SimpleUploadedFile("avatar.png", b"0" * 1024))


@override_settings(
    SECURE_SSL_REDIRECT=False,
    SESSION_COOKIE_SECURE=False,
    CSRF_COOKIE_SECURE=False,
)
class CoinTransactionAdminTests(TestCase):
    def setUp(self):
        self.superuser = get_user_model().objects.create_superuser(
            username="root", email="root@example.com", password="password123"
        )
        self.client.force_login(self.superuser)

    def test_ledger_entries_cannot_be_added_by_hand(self):
        response = self.client.post(
            reverse("admin:accounts_cointransaction_add"),
            {
                "profile": self.superuser.profile.pk,
                "amount": 1000,
                "transaction_type": CoinTransaction.Type.ADMIN_ADD,
                "balance_after": 1000,
            },
        )

        self.assertEqual(response.status_code, 403)
        self.assertFalse(CoinTransaction.objects.exists())
        self.assertEqual(Profile.objects.get(user=self.superuser).coins, 0)

    def test_ledger_changelist_has_no_add_link(self):
        response = self.client.get(reverse("admin:accounts_cointransaction_changelist"))

        self.assertEqual(response.status_code, 200)
        self.assertNotContains(response, reverse("admin:accounts_cointransaction_add"))
