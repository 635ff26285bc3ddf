from django.contrib import admin

from .models import (
    Bookmark,
    Chapter,
    Genre,
    Novel,
    NovelRating,
    PendingAuthorCredit,
    Purchase,
    ReadingHistory,
)
from .services import retry_pending_author_credits


@admin.register(Genre)
class GenreAdmin(admin.ModelAdmin):
    list_display = ("name", "slug")
    search_fields = ("name",)
    prepopulated_fields = {"slug": ("name",)}


class ChapterInline(admin.TabularInline):
    model = Chapter
    extra = 0
    fields = ("chapter_number", "title", "is_premium", "coin_cost", "views")
    readonly_fields = ("views",)
    show_change_link = True


@admin.register(Novel)
class NovelAdmin(admin.ModelAdmin):
    list_display = ("title", "author", "status", "views", "rating", "bookmarks", "updated_at")
    list_filter = ("status", "genres")
    search_fields = ("title", "description", "author__username")
    autocomplete_fields = ("author",)
    filter_horizontal = ("genres",)
    readonly_fields = ("views", "rating", "bookmarks", "created_at", "updated_at")
    inlines = [ChapterInline]


@admin.register(Chapter)
class ChapterAdmin(admin.ModelAdmin):
    list_display = ("novel", "chapter_number", "title", "is_premium", "coin_cost", "views")
    list_filter = ("is_premium",)
    search_fields = ("title", "novel__title")
    list_select_related = ("novel",)
    autocomplete_fields = ("novel",)
    readonly_fields = ("views", "created_at", "updated_at")


@admin.register(Purchase)
class PurchaseAdmin(admin.ModelAdmin):
    list_display = ("user", "chapter", "coin_amount", "author_credited_at", "created_at")
    list_filter = ("author_credited_at",)
    search_fields = ("user__username", "chapter__title", "chapter__novel__title")
    list_select_related = ("user", "chapter", "chapter__novel")
    readonly_fields = ("user", "chapter", "coin_amount", "author_credited_at", "created_at")

    def has_add_permission(self, request):
        return False


@admin.register(PendingAuthorCredit)
class PendingAuthorCreditAdmin(admin.ModelAdmin):
    list_display = ("purchase", "author", "amount", "attempts", "updated_at")
    search_fields = ("author__username",)
    readonly_fields = ("purchase", "author", "amount", "attempts", "last_error", "created_at", "updated_at")
    actions = ("retry_now",)

    @admin.action(description="Retry crediting the selected authors")
    def retry_now(self, request, queryset):
        credited, failed = retry_pending_author_credits(queryset=queryset)
        self.message_user(request, f"Credited {credited}, still failing {failed}.")


@admin.register(ReadingHistory)
class ReadingHistoryAdmin(admin.ModelAdmin):
    list_display = ("user", "novel", "chapter", "read_at")
    search_fields = ("user__username", "novel__title")
    list_select_related = ("user", "novel", "chapter")


@admin.register(Bookmark)
class BookmarkAdmin(admin.ModelAdmin):
    list_display = ("user", "novel", "created_at")
    search_fields = ("user__username", "novel__title")


@admin.register(NovelRating)
class NovelRatingAdmin(admin.ModelAdmin):
    list_display = ("user", "novel", "rating", "updated_at")
    list_filter = ("rating",)
    search_fields = ("user__username", "novel__title")
