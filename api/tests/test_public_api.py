from unittest import mock

from django.contrib.auth import get_user_model
from django.core import signing
from django.db import DatabaseError
from django.urls import reverse
from rest_framework import status
from rest_framework.authtoken.models import Token
from rest_framework.test import APITestCase

from accounts.models import CoinPackage, CoinTransaction, PaymentProvider, Profile
from api.authentication import issue_reader_token
from novels.models import Chapter, Genre, Novel, Purchase


class PublicApiTests(APITestCase):
    @classmethod
    def setUpTestData(cls):
        cls.author = get_user_model().objects.create_user(
            username="author", password="password123"
        )
        cls.genre = Genre.objects.create(name="Fantasy")
        cls.novel = Novel.objects.create(
            title="The Lantern Road",
            description="A courier carries light across a dark empire.",
            author=cls.author,
        )
        cls.novel.genres.add(cls.genre)
        Chapter.objects.create(novel=cls.novel, chapter_number=1, title="Ember", content="Free text")
        Chapter.objects.create(
            novel=cls.novel,
            chapter_number=2,
            title="Ash",
            content="Premium text",
            is_premium=True,
            coin_cost=30,
        )

    def test_health_endpoint_available(self):
        response = self.client.get(reverse("v1:health"), secure=True)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json().get("status"), "ok")

    def test_novels_list_returns_paginated_payload(self):
        response = self.client.get(
            reverse("v1:novels-list"), {"page_size": 1}, secure=True
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        payload = response.json()
        self.assertIn("results", payload)
        self.assertEqual(payload["count"], 1)
        self.assertEqual(payload["results"][0]["chapter_count"], 2)

    def test_novels_list_search_by_genre(self):
        response = self.client.get(reverse("v1:novels-list"), {"q": "fanta"}, secure=True)
        self.assertEqual(response.json()["count"], 1)

        response = self.client.get(reverse("v1:novels-list"), {"q": "romance"}, secure=True)
        self.assertEqual(response.json()["count"], 0)

    def test_novel_detail_lists_chapters_without_content(self):
        response = self.client.get(
            reverse("v1:novels-detail", args=[self.novel.pk]), secure=True
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        chapters = response.json()["chapters"]
        self.assertEqual([c["chapter_number"] for c in chapters], [1, 2])
        self.assertNotIn("content", chapters[0])

    def test_anonymous_reader_sees_free_chapter(self):
        response = self.client.get(
            reverse("v1:chapter-read", args=[self.novel.pk, 1]), secure=True
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        payload = response.json()
        self.assertEqual(payload["access"], "unlocked")
        self.assertEqual(payload["content"], "Free text")
        self.assertIsNone(payload["previous_chapter"])
        self.assertEqual(payload["next_chapter"]["chapter_number"], 2)

    def test_anonymous_reader_gets_locked_premium_chapter(self):
        response = self.client.get(
            reverse("v1:chapter-read", args=[self.novel.pk, 2]), secure=True
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        payload = response.json()
        self.assertEqual(payload["access"], "locked")
        self.assertIsNone(payload["content"])
        self.assertEqual(payload["coin_cost"], 30)

    def test_missing_chapter_returns_404(self):
        response = self.client.get(
            reverse("v1:chapter-read", args=[self.novel.pk, 99]), secure=True
        )
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_unlock_requires_authentication(self):
        response = self.client.post(
            reverse("v1:chapter-unlock", args=[self.novel.pk, 2]), secure=True
        )
        self.assertIn(
            response.status_code,
            (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN),
        )

    def test_coin_packages_list_only_active(self):
        CoinPackage.objects.create(name="Starter", coin_amount=100, price="0.99")
        CoinPackage.objects.create(name="Retired", coin_amount=50, price="0.49", is_active=False)

        response = self.client.get(reverse("v1:coin-packages"), secure=True)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([p["name"] for p in response.json()], ["Starter"])

    def test_token_login_and_logout(self):
        response = self.client.post(
            reverse("v1:auth-token"),
            {"username": "author", "password": "password123"},
            secure=True,
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        payload = response.json()
        self.assertTrue(payload["token"])
        self.assertEqual(payload["coins"], 0)

        self.client.credentials(HTTP_AUTHORIZATION=f"Token {payload['token']}")
        response = self.client.post(reverse("v1:auth-logout"), secure=True)
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)

        response = self.client.get(reverse("v1:coin-summary"), secure=True)
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_token_login_rejects_bad_password(self):
        response = self.client.post(
            reverse("v1:auth-token"),
            {"username": "author", "password": "wrong"},
            secure=True,
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def signed_fallback_token(self) -> str:
        with mock.patch.object(Token.objects, "get_or_create", side_effect=DatabaseError("down")):
            return issue_reader_token(self.author)

    def test_signed_fallback_token_authenticates(self):
        key = self.signed_fallback_token()
        self.assertFalse(Token.objects.filter(key=key).exists())
        self.client.credentials(HTTP_AUTHORIZATION=f"Token {key}")

        response = self.client.get(reverse("v1:coin-summary"), secure=True)

        self.assertEqual(response.status_code, status.HTTP_200_OK)

    def test_logout_revokes_signed_fallback_token(self):
        key = self.signed_fallback_token()
        self.client.credentials(HTTP_AUTHORIZATION=f"Token {key}")

        response = self.client.post(reverse("v1:auth-logout"), secure=True)
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)

        response = self.client.get(reverse("v1:coin-summary"), secure=True)
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_signed_token_without_version_is_rejected(self):
        key = signing.dumps({"uid": self.author.pk}, salt="reader-auth-fallback")
        self.client.credentials(HTTP_AUTHORIZATION=f"Token {key}")

        response = self.client.get(reverse("v1:coin-summary"), secure=True)

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_logout_ends_django_session(self):
        self.client.force_login(self.author)

        response = self.client.post(reverse("v1:auth-logout"), secure=True)
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)

        response = self.client.get(reverse("v1:coin-summary"), secure=True)
        self.assertIn(
            response.status_code,
            (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN),
        )

    def test_genres_list_counts_novels(self):
        Genre.objects.create(name="Romance")

        response = self.client.get(reverse("v1:genres-list"), secure=True)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        payload = {genre["slug"]: genre["novel_count"] for genre in response.json()}
        self.assertEqual(payload, {"fantasy": 1, "romance": 0})

    def test_novels_list_filters_by_genre(self):
        Novel.objects.create(title="Quiet Orchard", author=self.author)

        response = self.client.get(reverse("v1:novels-list"), {"genre": "fantasy"}, secure=True)
        self.assertEqual(response.json()["count"], 1)
        self.assertEqual(response.json()["results"][0]["title"], "The Lantern Road")

        response = self.client.get(reverse("v1:novels-list"), {"genre": self.genre.pk}, secure=True)
        self.assertEqual(response.json()["count"], 1)

        response = self.client.get(reverse("v1:novels-list"), {"genre": "romance"}, secure=True)
        self.assertEqual(response.json()["count"], 0)

    def test_rankings(self):
        popular = Novel.objects.create(title="Quiet Orchard", author=self.author)
        Novel.objects.filter(pk=popular.pk).update(views=500, bookmarks=0)
        Novel.objects.filter(pk=self.novel.pk).update(views=5, bookmarks=3)
        url = reverse("v1:novels-rankings")

        response = self.client.get(url, secure=True)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["sort"], "views")
        titles = [novel["title"] for novel in response.json()["results"]]
        self.assertEqual(titles, ["Quiet Orchard", "The Lantern Road"])

        response = self.client.get(url, {"sort": "bookmarks"}, secure=True)
        titles = [novel["title"] for novel in response.json()["results"]]
        self.assertEqual(titles, ["The Lantern Road", "Quiet Orchard"])

        response = self.client.get(url, {"sort": "bogus"}, secure=True)
        self.assertEqual(response.json()["sort"], "views")


class ReaderCoinApiTests(APITestCase):
    def setUp(self):
        user_model = get_user_model()
        self.author = user_model.objects.create_user(username="writer", password="password123")
        self.reader = user_model.objects.create_user(username="reader", password="password123")
        self.novel = Novel.objects.create(title="Salt and Iron", author=self.author)
        self.chapter = Chapter.objects.create(
            novel=self.novel,
            chapter_number=1,
            title="Tide",
            content="Premium text",
            is_premium=True,
            coin_cost=30,
        )
        Profile.objects.filter(pk=self.reader.profile.pk).update(coins=100)
        self.client.force_authenticate(self.reader)

    def test_unlock_charges_reader_and_credits_author(self):
        response = self.client.post(
            reverse("v1:chapter-unlock", args=[self.novel.pk, 1]), secure=True
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        payload = response.json()
        self.assertTrue(payload["charged"])
        self.assertEqual(payload["balance"], 70)
        self.assertEqual(payload["chapter"]["access"], "unlocked")
        self.assertEqual(payload["chapter"]["content"], "Premium text")

        self.author.profile.refresh_from_db()
        self.assertEqual(self.author.profile.coins, 21)

    def test_second_unlock_is_not_charged(self):
        url = reverse("v1:chapter-unlock", args=[self.novel.pk, 1])
        self.client.post(url, secure=True)

        response = self.client.post(url, secure=True)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(response.json()["charged"])
        self.assertEqual(response.json()["balance"], 70)

    def test_unlock_with_insufficient_coins_returns_402(self):
        Profile.objects.filter(pk=self.reader.profile.pk).update(coins=10)

        response = self.client.post(
            reverse("v1:chapter-unlock", args=[self.novel.pk, 1]), secure=True
        )

        self.assertEqual(response.status_code, status.HTTP_402_PAYMENT_REQUIRED)
        self.assertEqual(response.json()["code"], "insufficient_coins")

    def test_coin_summary_and_ledger(self):
        self.client.post(reverse("v1:chapter-unlock", args=[self.novel.pk, 1]), secure=True)

        summary = self.client.get(reverse("v1:coin-summary"), secure=True).json()
        self.assertEqual(summary["balance"], 70)
        self.assertEqual(summary["totals"]["purchase"], 30)
        self.assertEqual(summary["transaction_counts"]["purchase"], 1)

        ledger = self.client.get(
            reverse("v1:coin-transactions"), {"type": "purchase"}, secure=True
        ).json()
        self.assertEqual(ledger["count"], 1)
        self.assertEqual(ledger["results"][0]["amount"], -30)
        self.assertEqual(ledger["results"][0]["balance_after"], 70)

    def test_ledger_rejects_unknown_type(self):
        response = self.client.get(
            reverse("v1:coin-transactions"), {"type": "bogus"}, secure=True
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_bookmark_toggle(self):
        url = reverse("v1:novel-bookmark", args=[self.novel.pk])

        first = self.client.post(url, secure=True).json()
        second = self.client.post(url, secure=True).json()

        self.assertEqual(first, {"bookmarked": True, "bookmarks": 1})
        self.assertEqual(second, {"bookmarked": False, "bookmarks": 0})

    def test_rating_validates_range(self):
        url = reverse("v1:novel-rating", args=[self.novel.pk])

        response = self.client.post(url, {"rating": 6}, secure=True)
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.post(url, {"rating": 4, "comment": "Good"}, secure=True)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(float(response.json()["average_rating"]), 4.0)

    def test_coin_package_purchase_through_enabled_provider(self):
        package = CoinPackage.objects.create(name="Pouch", coin_amount=250, price="1.99")
        url = reverse("v1:coin-package-purchase", args=[package.pk])

        response = self.client.post(url, secure=True)
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.json()["code"], "provider_unavailable")

        PaymentProvider.objects.create(provider=PaymentProvider.Code.MANUAL, is_enabled=True)
        response = self.client.post(url, secure=True)
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.json()["balance"], 350)

    def test_admin_adjustment_forbidden_for_reader(self):
        response = self.client.post(
            reverse("v1:admin-coin-adjust", args=[self.author.profile.pk]),
            {"amount": 50},
            secure=True,
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_admin_adjustment(self):
        admin_user = get_user_model().objects.create_superuser(
            username="root", password="password123", email="root@example.com"
        )
        self.client.force_authenticate(admin_user)
        url = reverse("v1:admin-coin-adjust", args=[self.reader.profile.pk])

        response = self.client.post(url, {"amount": -40, "reason": "Chargeback"}, secure=True)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["balance"], 60)
        self.assertEqual(response.json()["transaction"]["transaction_type"], "admin_deduct")

        response = self.client.post(url, {"amount": -500}, secure=True)
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

        response = self.client.post(url, {"amount": 0}, secure=True)
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_admin_adjustment_amount_is_bounded(self):
        admin_user = get_user_model().objects.create_superuser(
            username="root", password="password123", email="root@example.com"
        )
        self.client.force_authenticate(admin_user)
        url = reverse("v1:admin-coin-adjust", args=[self.reader.profile.pk])

        for amount in (2_147_483_648, -2_147_483_648):
            with self.subTest(amount=amount):
                response = self.client.post(url, {"amount": amount}, secure=True)
                self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.post(url, {"amount": 2_147_483_647}, secure=True)
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.json()["code"], "invalid_amount")
        self.assertEqual(Profile.objects.get(user=self.reader).coins, 100)
        self.assertFalse(CoinTransaction.objects.exists())

    def test_library_lists_bookmarks_and_history(self):
        self.client.post(reverse("v1:novel-bookmark", args=[self.novel.pk]), secure=True)
        self.client.post(reverse("v1:chapter-unlock", args=[self.novel.pk, 1]), secure=True)

        response = self.client.get(reverse("v1:library"), secure=True)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        payload = response.json()
        self.assertEqual([entry["novel"]["title"] for entry in payload["bookmarks"]], ["Salt and Iron"])
        self.assertIsNotNone(payload["bookmarks"][0]["bookmarked_at"])
        self.assertEqual(len(payload["history"]), 1)
        self.assertEqual(
            payload["history"][0]["last_read_chapter"],
            {"chapter_number": 1, "title": "Tide"},
        )

    def test_library_requires_authentication(self):
        self.client.force_authenticate(None)

        response = self.client.get(reverse("v1:library"), secure=True)

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)


class AuthorApiTests(APITestCase):
    def setUp(self):
        user_model = get_user_model()
        self.author = user_model.objects.create_user(username="writer", password="password123")
        self.stranger = user_model.objects.create_user(username="stranger", password="password123")
        self.genre = Genre.objects.create(name="Mystery")
        self.novel = Novel.objects.create(title="Salt and Iron", author=self.author)
        Chapter.objects.create(novel=self.novel, chapter_number=1, title="Tide", content="Free text")
        self.client.force_authenticate(self.author)

    def test_author_lists_only_own_novels(self):
        Novel.objects.create(title="Somebody Else", author=self.stranger)

        response = self.client.get(reverse("v1:author-novels"), secure=True)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([novel["title"] for novel in response.json()["results"]], ["Salt and Iron"])

    def test_author_creates_novel(self):
        response = self.client.post(
            reverse("v1:author-novels"),
            {"title": "Paper Lanterns", "description": "Festival nights.", "genre_ids": [self.genre.pk]},
            format="json",
            secure=True,
        )

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        novel = Novel.objects.get(title="Paper Lanterns")
        self.assertEqual(novel.author, self.author)
        self.assertEqual(list(novel.genres.all()), [self.genre])
        self.assertEqual(response.json()["genres"][0]["slug"], "mystery")
        self.assertEqual(response.json()["chapters"], [])

    def test_author_novel_requires_title(self):
        response = self.client.post(reverse("v1:author-novels"), {"description": "x"}, secure=True)

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_author_updates_novel(self):
        response = self.client.patch(
            reverse("v1:author-novel-detail", args=[self.novel.pk]),
            {"status": "completed", "genre_ids": [self.genre.pk]},
            format="json",
            secure=True,
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["status"], "completed")
        self.novel.refresh_from_db()
        self.assertEqual(self.novel.status, Novel.Status.COMPLETED)
        self.assertEqual(list(self.novel.genres.all()), [self.genre])

    def test_other_users_novel_is_hidden(self):
        self.client.force_authenticate(self.stranger)
        detail = reverse("v1:author-novel-detail", args=[self.novel.pk])

        self.assertEqual(self.client.get(detail, secure=True).status_code, status.HTTP_404_NOT_FOUND)
        response = self.client.patch(detail, {"title": "Stolen"}, secure=True)
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        response = self.client.post(
            reverse("v1:author-chapters", args=[self.novel.pk]),
            {"title": "Intruder", "content": "..."},
            secure=True,
        )
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.novel.refresh_from_db()
        self.assertEqual(self.novel.title, "Salt and Iron")

    def test_author_endpoints_require_authentication(self):
        self.client.force_authenticate(None)

        response = self.client.get(reverse("v1:author-novels"), secure=True)

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_chapter_list_reports_next_number(self):
        response = self.client.get(reverse("v1:author-chapters", args=[self.novel.pk]), secure=True)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["next_chapter_number"], 2)
        self.assertEqual(response.json()["results"][0]["content"], "Free text")

    def test_author_adds_chapter_with_next_number(self):
        response = self.client.post(
            reverse("v1:author-chapters", args=[self.novel.pk]),
            {"title": "Rust", "content": "Premium text", "is_premium": True, "coin_cost": 25},
            format="json",
            secure=True,
        )

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.json()["chapter_number"], 2)
        chapter = self.novel.chapters.get(chapter_number=2)
        self.assertTrue(chapter.is_premium)
        self.assertEqual(chapter.coin_cost, 25)

    def test_premium_chapter_needs_a_price(self):
        response = self.client.post(
            reverse("v1:author-chapters", args=[self.novel.pk]),
            {"title": "Rust", "content": "Premium text", "is_premium": True},
            format="json",
            secure=True,
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("coin_cost", response.json())
        self.assertEqual(self.novel.chapters.count(), 1)

    def test_duplicate_chapter_number_rejected(self):
        response = self.client.post(
            reverse("v1:author-chapters", args=[self.novel.pk]),
            {"title": "Again", "content": "...", "chapter_number": 1},
            format="json",
            secure=True,
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("chapter_number", response.json())

    def test_author_edits_chapter(self):
        url = reverse("v1:author-chapter-detail", args=[self.novel.pk, 1])

        response = self.client.patch(
            url, {"title": "High Tide", "is_premium": True, "coin_cost": 10}, format="json", secure=True
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        chapter = self.novel.chapters.get(chapter_number=1)
        self.assertEqual(chapter.title, "High Tide")
        self.assertEqual(chapter.coin_cost, 10)

        response = self.client.patch(url, {"is_premium": True, "coin_cost": 0}, format="json", secure=True)
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_delete_chapter(self):
        url = reverse("v1:author-chapter-detail", args=[self.novel.pk, 1])

        response = self.client.delete(url, secure=True)

        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.assertFalse(self.novel.chapters.exists())

    def test_bought_chapter_cannot_be_deleted(self):
        chapter = self.novel.chapters.get()
        Purchase.objects.create(user=self.stranger, chapter=chapter, coin_amount=10)

        response = self.client.delete(
            reverse("v1:author-chapter-detail", args=[self.novel.pk, 1]), secure=True
        )

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.json()["code"], "chapter_has_purchases")
        self.assertTrue(self.novel.chapters.exists())
