from __future__ import annotations

from decimal import Decimal

from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Avg
from django.utils.text import slugify


class Genre(models.Model):
    name = models.CharField(max_length=100, unique=True)
    slug = models.SlugField(max_length=120, unique=True, blank=True)

    class Meta:
        ordering = ("name",)

    def save(self, *args, **kwargs):
        if not self.slug:
            self.slug = slugify(self.name)
        super().save(*args, **kwargs)

    def __str__(self):
        return self.name


class Novel(models.Model):
    class Status(models.TextChoices):
        ONGOING = ("ongoing", "Ongoing")
        COMPLETED = ("completed", "Completed")
        HIATUS = ("hiatus", "Hiatus")

    title = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    cover_image = models.ImageField(upload_to="novel_covers/", blank=True, null=True)
    author = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="novels",
    )
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.ONGOING)
    genres = models.ManyToManyField(Genre, related_name="novels", blank=True)
    views = models.PositiveIntegerField(default=0)
    rating = models.DecimalField(max_digits=3, decimal_places=2, default=Decimal("0.00"))
    bookmarks = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-updated_at", "-id")

    def __str__(self):
        return self.title

    def get_cover_url(self) -> str:
        if self.cover_image:
            return self.cover_image.url
        return ""

    def refresh_rating(self, save: bool = True) -> Decimal:
        """Recalculate the average of all user ratings for the novel."""

        average = self.ratings.aggregate(value=Avg("rating"))["value"]
        self.rating = Decimal(str(average or 0)).quantize(Decimal("0.01"))
        if save:
            self.save(update_fields=["rating", "updated_at"])
        return self.rating


class Chapter(models.Model):
    novel = models.ForeignKey(Novel, on_delete=models.CASCADE, related_name="chapters")
    chapter_number = models.PositiveIntegerField()
    title = models.CharField(max_length=255)
    content = models.TextField()
    is_premium = models.BooleanField(default=False)
    coin_cost = models.PositiveIntegerField(default=0)
    views = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("novel", "chapter_number")
        constraints = [
            models.UniqueConstraint(
                fields=["novel", "chapter_number"],
                name="unique_chapter_number_per_novel",
            ),
        ]

    def __str__(self):
        return f"{self.novel.title}: {self.chapter_number}. {self.title}"


class Purchase(models.Model):
    """Proof that a user has unlocked a premium chapter."""

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="chapter_purchases",
    )
    chapter = models.ForeignKey(Chapter, on_delete=models.CASCADE, related_name="purchases")
    coin_amount = models.PositiveIntegerField()
    author_credited_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("-created_at",)
        constraints = [
            models.UniqueConstraint(
                fields=["user", "chapter"],
                name="unique_purchase_per_user_chapter",
            ),
        ]

    def __str__(self):
        return f"Purchase({self.user_id}, chapter={self.chapter_id}, {self.coin_amount})"


class PendingAuthorCredit(models.Model):
    """Author earnings that could not be credited at purchase time."""

    purchase = models.OneToOneField(
        Purchase,
        on_delete=models.CASCADE,
        related_name="pending_author_credit",
    )
    author = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="pending_author_credits",
    )
    amount = models.PositiveIntegerField()
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("created_at", "id")

    def __str__(self):
        return f"PendingAuthorCredit({self.author_id}, {self.amount}, attempts={self.attempts})"


class ReadingHistory(models.Model):
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="reading_history",
    )
    novel = models.ForeignKey(Novel, on_delete=models.CASCADE, related_name="reading_history")
    chapter = models.ForeignKey(Chapter, on_delete=models.CASCADE, related_name="reading_history")
    last_position = models.PositiveIntegerField(blank=True, null=True)
    read_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("-read_at", "-id")
        verbose_name_plural = "reading history"


class Bookmark(models.Model):
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="bookmarks",
    )
    novel = models.ForeignKey(Novel, on_delete=models.CASCADE, related_name="bookmark_entries")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("-created_at",)
        constraints = [
            models.UniqueConstraint(fields=["user", "novel"], name="unique_bookmark_per_user_novel"),
        ]


class NovelRating(models.Model):
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="novel_ratings",
    )
    novel = models.ForeignKey(Novel, on_delete=models.CASCADE, related_name="ratings")
    rating = models.PositiveSmallIntegerField(
        validators=[MinValueValidator(1), MaxValueValidator(5)],
    )
    comment = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-updated_at",)
        constraints = [
            models.UniqueConstraint(fields=["user", "novel"], name="unique_rating_per_user_novel"),
        ]

    def __str__(self):
        return f"NovelRating({self.user_id}, {self.novel_id}, {self.rating})"
