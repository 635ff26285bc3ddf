from django.contrib.auth import get_user_model
from rest_framework import serializers

from accounts.models import CoinPackage, CoinTransaction, PaymentProvider
from accounts.services import MAX_ADJUSTMENT_AMOUNT
from novels.models import Chapter, Genre, Novel
from novels.services import MAX_RATING, MIN_RATING, ChapterAccess


class GenreSerializer(serializers.ModelSerializer):
    class Meta:
        model = Genre
        fields = ["id", "name", "slug"]


class AuthorSerializer(serializers.ModelSerializer):
    display_name = serializers.SerializerMethodField()

    class Meta:
        model = get_user_model()
        fields = ["id", "username", "display_name"]

    def get_display_name(self, obj) -> str:
        profile = getattr(obj, "profile", None)
        if profile is None:
            return obj.username
        return profile.public_name


class NovelListSerializer(serializers.ModelSerializer):
    author = AuthorSerializer(read_only=True)
    genres = GenreSerializer(many=True, read_only=True)
    cover_url = serializers.SerializerMethodField()
    chapter_count = serializers.SerializerMethodField()

    class Meta:
        model = Novel
        fields = [
            "id",
            "title",
            "description",
            "status",
            "cover_url",
            "views",
            "rating",
            "bookmarks",
            "chapter_count",
            "author",
            "genres",
            "updated_at",
        ]

    def get_cover_url(self, obj: Novel) -> str:
        return obj.get_cover_url()

    def get_chapter_count(self, obj: Novel) -> int:
        annotated_value = getattr(obj, "chapter_count", None)
        if annotated_value is not None:
            return annotated_value
        return obj.chapters.count()


class ChapterSummarySerializer(serializers.ModelSerializer):
    class Meta:
        model = Chapter
        fields = [
            "id",
            "chapter_number",
            "title",
            "is_premium",
            "coin_cost",
            "views",
            "created_at",
        ]


class NovelDetailSerializer(NovelListSerializer):
    chapters = serializers.SerializerMethodField()

    class Meta(NovelListSerializer.Meta):
        fields = NovelListSerializer.Meta.fields + ["chapters", "created_at"]

    def get_chapters(self, obj: Novel):
        chapters = obj.chapters.defer("content").order_by("chapter_number")
        return ChapterSummarySerializer(chapters, many=True).data


class ChapterReaderSerializer(ChapterSummarySerializer):
    """Chapter payload for the reader. Content is withheld while locked.

    Expects ``access`` (a :class:`ChapterAccess`) in the serializer context,
    and optionally ``previous`` / ``next`` neighbouring chapters.
    """

    novel_id = serializers.IntegerField(read_only=True)
    access = serializers.SerializerMethodField()
    content = serializers.SerializerMethodField()
    previous_chapter = serializers.SerializerMethodField()
    next_chapter = serializers.SerializerMethodField()

    class Meta(ChapterSummarySerializer.Meta):
        fields = ChapterSummarySerializer.Meta.fields + [
            "novel_id",
            "access",
            "content",
            "previous_chapter",
            "next_chapter",
        ]

    def _access(self) -> ChapterAccess:
        return self.context.get("access", ChapterAccess.LOCKED)

    def get_access(self, obj: Chapter) -> str:
        return self._access().value

    def get_content(self, obj: Chapter):
        if self._access() is ChapterAccess.UNLOCKED:
            return obj.content
        return None

    def _neighbour(self, key: str):
        chapter = self.context.get(key)
        if chapter is None:
            return None
        return {"chapter_number": chapter.chapter_number, "title": chapter.title}

    def get_previous_chapter(self, obj: Chapter):
        return self._neighbour("previous")

    def get_next_chapter(self, obj: Chapter):
        return self._neighbour("next")


class CoinTransactionSerializer(serializers.ModelSerializer):
    type_display = serializers.CharField(source="get_transaction_type_display", read_only=True)

    class Meta:
        model = CoinTransaction
        fields = [
            "id",
            "amount",
            "transaction_type",
            "type_display",
            "reference_id",
            "description",
            "balance_after",
            "created_at",
        ]


class CoinPackageSerializer(serializers.ModelSerializer):
    class Meta:
        model = CoinPackage
        fields = [
            "id",
            "name",
            "description",
            "coin_amount",
            "price",
            "currency",
            "is_featured",
        ]


class CoinPackagePurchaseSerializer(serializers.Serializer):
    provider = serializers.ChoiceField(
        choices=PaymentProvider.Code.choices,
        default=PaymentProvider.Code.MANUAL,
    )


class CoinAdjustmentSerializer(serializers.Serializer):
    amount = serializers.IntegerField(
        min_value=-MAX_ADJUSTMENT_AMOUNT,
        max_value=MAX_ADJUSTMENT_AMOUNT,
    )
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")

    def validate_amount(self, value: int) -> int:
        if value == 0:
            raise serializers.ValidationError("Amount must not be zero.")
        return value


class NovelRatingSerializer(serializers.Serializer):
    rating = serializers.IntegerField(min_value=MIN_RATING, max_value=MAX_RATING)
    comment = serializers.CharField(required=False, allow_blank=True, default="")


class GenreWithCountSerializer(GenreSerializer):
    novel_count = serializers.IntegerField(read_only=True)

    class Meta(GenreSerializer.Meta):
        fields = GenreSerializer.Meta.fields + ["novel_count"]


class LibraryEntrySerializer(serializers.Serializer):
    novel = NovelListSerializer(read_only=True)
    last_read_chapter = serializers.SerializerMethodField()
    last_read_at = serializers.DateTimeField(read_only=True, allow_null=True)
    bookmarked_at = serializers.DateTimeField(read_only=True, allow_null=True)

    def get_last_read_chapter(self, obj):
        chapter = obj.last_read_chapter
        if chapter is None:
            return None
        return {"chapter_number": chapter.chapter_number, "title": chapter.title}


class AuthorNovelSerializer(serializers.ModelSerializer):
    """Novel fields an author may set. The author is taken from the request."""

    genre_ids = serializers.PrimaryKeyRelatedField(
        many=True,
        queryset=Genre.objects.all(),
        source="genres",
        required=False,
    )

    class Meta:
        model = Novel
        fields = ["id", "title", "description", "status", "cover_image", "genre_ids"]
        extra_kwargs = {"cover_image": {"required": False}}


class AuthorChapterSerializer(serializers.ModelSerializer):
    """Chapter editing for the novel's author.

    Expects the parent ``novel`` in the serializer context. The chapter
    number is optional on create and defaults to the next free number.
    """

    chapter_number = serializers.IntegerField(min_value=1, required=False)

    class Meta:
        model = Chapter
        fields = [
            "id",
            "chapter_number",
            "title",
            "content",
            "is_premium",
            "coin_cost",
            "views",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["views", "created_at", "updated_at"]

    def validate_chapter_number(self, value: int) -> int:
        novel = self.context["novel"]
        taken = Chapter.objects.filter(novel=novel, chapter_number=value)
        if self.instance is not None:
            taken = taken.exclude(pk=self.instance.pk)
        if taken.exists():
            raise serializers.ValidationError(f"Chapter {value} already exists in this novel.")
        return value

    def validate(self, attrs):
        is_premium = attrs.get("is_premium", getattr(self.instance, "is_premium", False))
        coin_cost = attrs.get("coin_cost", getattr(self.instance, "coin_cost", 0))
        if is_premium and coin_cost < 1:
            raise serializers.ValidationError(
                {"coin_cost": "Premium chapters must cost at least one coin."}
            )
        return attrs
