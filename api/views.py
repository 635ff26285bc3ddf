import logging

from django.contrib.auth import logout as auth_logout
from django.core.exceptions import PermissionDenied
from django.db.models import Count, Q
from django.shortcuts import get_object_or_404
from django.utils import timezone
from rest_framework import generics, permissions, status
from rest_framework.authtoken.serializers import AuthTokenSerializer
from rest_framework.exceptions import ValidationError
from rest_framework.response import Response
from rest_framework.views import APIView

from accounts.models import CoinPackage, CoinTransaction, Profile
from accounts.services import (
    InsufficientCoinsError,
    PaymentProviderUnavailable,
    adjust_coins,
    get_coin_summary,
    purchase_coin_package,
)
from accounts.session import ReaderSession
from novels.models import Chapter, Genre, Novel
from novels.services import (
    DEFAULT_RANKING,
    RANKING_ORDERINGS,
    ChapterAccess,
    ChapterUnlockError,
    chapter_neighbours,
    create_chapter,
    get_chapter_access,
    next_chapter_number,
    ranked_novels,
    rate_novel,
    reading_library,
    record_chapter_read,
    toggle_bookmark,
    unlock_chapter,
)

from .authentication import issue_reader_token, revoke_reader_tokens
from .pagination import StandardResultsSetPagination
from .serializers import (
    AuthorChapterSerializer,
    AuthorNovelSerializer,
    ChapterReaderSerializer,
    CoinAdjustmentSerializer,
    CoinPackagePurchaseSerializer,
    CoinPackageSerializer,
    CoinTransactionSerializer,
    GenreWithCountSerializer,
    LibraryEntrySerializer,
    NovelDetailSerializer,
    NovelListSerializer,
    NovelRatingSerializer,
)

logger = logging.getLogger(__name__)


def error_response(code: str, detail, http_status: int) -> Response:
    return Response({"code": code, "detail": str(detail)}, status=http_status)


def _novel_queryset():
    return (
        Novel.objects.select_related("author", "author__profile")
        .prefetch_related("genres")
        .annotate(chapter_count=Count("chapters", distinct=True))
    )


def _get_chapter(novel_id: int, number: int) -> Chapter:
    return get_object_or_404(
        Chapter.objects.select_related("novel"),
        novel_id=novel_id,
        chapter_number=number,
    )


class HealthView(APIView):
    """Basic liveness check."""

    def get(self, request, *args, **kwargs):
        return Response(
            {
                "status": "ok",
                "service": "novels-api",
                "timestamp": timezone.now(),
            }
        )


class ObtainTokenView(APIView):
    """Exchange username/password for an API token and open a reader session."""

    def post(self, request, *args, **kwargs):
        serializer = AuthTokenSerializer(data=request.data, context={"request": request})
        serializer.is_valid(raise_exception=True)
        user = serializer.validated_data["user"]

        session = ReaderSession.open(user)
        logger.info("User %s signed in via the API", user.pk)
        return Response(
            {
                "token": issue_reader_token(user),
                "user": {
                    "id": user.pk,
                    "username": user.username,
                    "display_name": session.profile.public_name,
                },
                "coins": session.coins,
                "is_admin": session.is_admin,
            }
        )


class LogoutView(APIView):
    """Revoke every API token of the user and end the browser session.

    Reader sessions are opened per request from the authenticated user, so
    once the credentials are revoked no further session can be opened.
    """

    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, *args, **kwargs):
        user = request.user
        revoke_reader_tokens(user)
        auth_logout(request._request)
        logger.info("User %s signed out via the API", user.pk)
        return Response(status=status.HTTP_204_NO_CONTENT)


class NovelListView(generics.ListAPIView):
    """Catalogue of novels with optional text search and genre filter."""

    serializer_class = NovelListSerializer
    pagination_class = StandardResultsSetPagination

    def get_queryset(self):
        queryset = _novel_queryset().order_by("-updated_at", "-id")

        query = (
            self.request.query_params.get("q")
            or self.request.query_params.get("search")
        )
        if query:
            cleaned = query.strip()
            if cleaned:
                queryset = queryset.filter(
                    Q(title__icontains=cleaned)
                    | Q(description__icontains=cleaned)
                    | Q(genres__name__icontains=cleaned)
                ).distinct()

        genre = self.request.query_params.get("genre")
        if genre:
            genre_filter = Q(genres__slug=genre.strip())
            if genre.strip().isdigit():
                genre_filter |= Q(genres__pk=int(genre))
            queryset = queryset.filter(genre_filter).distinct()

        return queryset


class NovelDetailView(generics.RetrieveAPIView):
    serializer_class = NovelDetailSerializer

    def get_queryset(self):
        return _novel_queryset()


class ChapterReaderView(APIView):
    """Reader payload for a single chapter. Content is only sent when unlocked."""

    def get(self, request, novel_id: int, number: int, *args, **kwargs):
        chapter = _get_chapter(novel_id, number)
        access = get_chapter_access(request.user, chapter)
        if access is ChapterAccess.UNLOCKED:
            record_chapter_read(request.user, chapter)

        previous, following = chapter_neighbours(chapter)
        serializer = ChapterReaderSerializer(
            chapter,
            context={"request": request, "access": access, "previous": previous, "next": following},
        )
        return Response(serializer.data)


class ChapterUnlockView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, novel_id: int, number: int, *args, **kwargs):
        chapter = _get_chapter(novel_id, number)
        session = ReaderSession.open(request.user)
        try:
            result = unlock_chapter(session, chapter)
        except InsufficientCoinsError as exc:
            return error_response("insufficient_coins", exc, status.HTTP_402_PAYMENT_REQUIRED)
        except ChapterUnlockError as exc:
            return error_response("write_failure", exc, status.HTTP_503_SERVICE_UNAVAILABLE)

        previous, following = chapter_neighbours(chapter)
        serializer = ChapterReaderSerializer(
            chapter,
            context={
                "request": request,
                "access": result.access,
                "previous": previous,
                "next": following,
            },
        )
        return Response(
            {
                "charged": result.charged,
                "balance": result.balance_after,
                "chapter": serializer.data,
            }
        )


class BookmarkToggleView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, pk: int, *args, **kwargs):
        novel = get_object_or_404(Novel, pk=pk)
        bookmarked = toggle_bookmark(request.user, novel)
        return Response({"bookmarked": bookmarked, "bookmarks": novel.bookmarks})


class NovelRatingView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, pk: int, *args, **kwargs):
        novel = get_object_or_404(Novel, pk=pk)
        serializer = NovelRatingSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        rating = rate_novel(
            request.user,
            novel,
            serializer.validated_data["rating"],
            serializer.validated_data["comment"],
        )
        return Response(
            {
                "rating": rating.rating,
                "comment": rating.comment,
                "average_rating": novel.rating,
            }
        )


class CoinSummaryView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request, *args, **kwargs):
        session = ReaderSession.open(request.user)
        return Response(get_coin_summary(session.profile))


class CoinTransactionListView(generics.ListAPIView):
    permission_classes = [permissions.IsAuthenticated]
    serializer_class = CoinTransactionSerializer
    pagination_class = StandardResultsSetPagination

    def get_queryset(self):
        profile, _created = Profile.objects.get_or_create(user=self.request.user)
        queryset = profile.coin_transactions.all()

        transaction_type = self.request.query_params.get("type")
        if transaction_type:
            if transaction_type not in CoinTransaction.Type.values:
                raise ValidationError({"type": f"Unknown transaction type: {transaction_type}"})
            queryset = queryset.filter(transaction_type=transaction_type)
        return queryset


class CoinPackageListView(generics.ListAPIView):
    serializer_class = CoinPackageSerializer
    pagination_class = None
    queryset = CoinPackage.objects.filter(is_active=True).order_by("coin_amount", "id")


class CoinPackagePurchaseView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, pk: int, *args, **kwargs):
        package = get_object_or_404(CoinPackage, pk=pk, is_active=True)
        serializer = CoinPackagePurchaseSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        session = ReaderSession.open(request.user)
        try:
            tx = purchase_coin_package(
                session,
                package,
                provider=serializer.validated_data["provider"],
            )
        except PaymentProviderUnavailable as exc:
            return error_response("provider_unavailable", exc, status.HTTP_409_CONFLICT)

        return Response(
            {
                "balance": session.coins,
                "transaction": CoinTransactionSerializer(tx).data,
            },
            status=status.HTTP_201_CREATED,
        )


class AdminCoinAdjustmentView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, pk: int, *args, **kwargs):
        session = ReaderSession.open(request.user)
        if not session.is_admin:
            return error_response(
                "forbidden",
                "Only administrators can adjust coin balances.",
                status.HTTP_403_FORBIDDEN,
            )

        profile = get_object_or_404(Profile.objects.select_related("user"), pk=pk)
        serializer = CoinAdjustmentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            result = adjust_coins(
                session,
                profile,
                serializer.validated_data["amount"],
                reason=serializer.validated_data["reason"],
            )
        except PermissionDenied as exc:
            return error_response("forbidden", exc, status.HTTP_403_FORBIDDEN)
        except InsufficientCoinsError as exc:
            return error_response("insufficient_coins", exc, status.HTTP_409_CONFLICT)
        except ValueError as exc:
            return error_response("invalid_amount", exc, status.HTTP_400_BAD_REQUEST)

        logger.info(
            "Admin %s adjusted coins of profile %s by %s",
            request.user.pk,
            profile.pk,
            result.amount,
        )
        return Response(
            {
                "profile_id": profile.pk,
                "balance": result.transaction.balance_after,
                "transaction": CoinTransactionSerializer(result.transaction).data,
            }
        )


class GenreListView(generics.ListAPIView):
    serializer_class = GenreWithCountSerializer
    pagination_class = None

    def get_queryset(self):
        return Genre.objects.annotate(novel_count=Count("novels", distinct=True)).order_by("name")


class NovelRankingView(APIView):
    """Top novels ordered by views, rating or bookmarks."""

    def get(self, request, *args, **kwargs):
        sort_by = request.query_params.get("sort", DEFAULT_RANKING)
        if sort_by not in RANKING_ORDERINGS:
            sort_by = DEFAULT_RANKING
        novels = ranked_novels(sort_by, queryset=_novel_queryset())
        return Response(
            {
                "sort": sort_by,
                "results": NovelListSerializer(novels, many=True).data,
            }
        )


class LibraryView(APIView):
    """Bookmarked novels and reading history of the current user."""

    permission_classes = [permissions.IsAuthenticated]

    def get(self, request, *args, **kwargs):
        library = reading_library(request.user)
        return Response(
            {
                "bookmarks": LibraryEntrySerializer(library["bookmarks"], many=True).data,
                "history": LibraryEntrySerializer(library["history"], many=True).data,
            }
        )


class AuthorNovelListCreateView(generics.ListCreateAPIView):
    """Novels written by the current user. POST creates a new one."""

    permission_classes = [permissions.IsAuthenticated]
    pagination_class = StandardResultsSetPagination

    def get_serializer_class(self):
        if self.request.method == "POST":
            return AuthorNovelSerializer
        return NovelListSerializer

    def get_queryset(self):
        return _novel_queryset().filter(author=self.request.user).order_by("-updated_at", "-id")

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        novel = serializer.save(author=request.user)
        logger.info("User %s created novel %s", request.user.pk, novel.pk)
        detail = NovelDetailSerializer(_novel_queryset().get(pk=novel.pk), context={"request": request})
        headers = self.get_success_headers(detail.data)
        return Response(detail.data, status=status.HTTP_201_CREATED, headers=headers)


class AuthorNovelDetailView(generics.RetrieveUpdateAPIView):
    permission_classes = [permissions.IsAuthenticated]

    def get_serializer_class(self):
        if self.request.method in ("PUT", "PATCH"):
            return AuthorNovelSerializer
        return NovelDetailSerializer

    def get_queryset(self):
        return _novel_queryset().filter(author=self.request.user)

    def update(self, request, *args, **kwargs):
        partial = kwargs.pop("partial", False)
        novel = self.get_object()
        serializer = self.get_serializer(novel, data=request.data, partial=partial)
        serializer.is_valid(raise_exception=True)
        serializer.save()
        detail = NovelDetailSerializer(_novel_queryset().get(pk=novel.pk), context={"request": request})
        return Response(detail.data)


def _get_own_novel(request, novel_id: int) -> Novel:
    return get_object_or_404(Novel, pk=novel_id, author=request.user)


class AuthorChapterListCreateView(APIView):
    """Chapters of one of the current user's novels, in reading order."""

    permission_classes = [permissions.IsAuthenticated]

    def get(self, request, novel_id: int, *args, **kwargs):
        novel = _get_own_novel(request, novel_id)
        chapters = novel.chapters.order_by("chapter_number")
        serializer = AuthorChapterSerializer(chapters, many=True, context={"novel": novel})
        return Response(
            {
                "next_chapter_number": next_chapter_number(novel),
                "results": serializer.data,
            }
        )

    def post(self, request, novel_id: int, *args, **kwargs):
        novel = _get_own_novel(request, novel_id)
        serializer = AuthorChapterSerializer(data=request.data, context={"novel": novel})
        serializer.is_valid(raise_exception=True)
        try:
            chapter = create_chapter(novel, **serializer.validated_data)
        except ValueError as exc:
            raise ValidationError({"chapter_number": [str(exc)]}) from exc
        return Response(
            AuthorChapterSerializer(chapter, context={"novel": novel}).data,
            status=status.HTTP_201_CREATED,
        )


class AuthorChapterDetailView(generics.RetrieveUpdateDestroyAPIView):
    permission_classes = [permissions.IsAuthenticated]
    serializer_class = AuthorChapterSerializer
    lookup_field = "chapter_number"
    lookup_url_kwarg = "number"

    def get_novel(self) -> Novel:
        if not hasattr(self, "_novel"):
            self._novel = _get_own_novel(self.request, self.kwargs["novel_id"])
        return self._novel

    def get_queryset(self):
        return Chapter.objects.filter(novel=self.get_novel())

    def get_serializer_context(self):
        context = super().get_serializer_context()
        context["novel"] = self.get_novel()
        return context

    def destroy(self, request, *args, **kwargs):
        chapter = self.get_object()
        if chapter.purchases.exists():
            return error_response(
                "chapter_has_purchases",
                "Chapters that readers have bought cannot be deleted.",
                status.HTTP_409_CONFLICT,
            )
        chapter.delete()
        return Response(status=status.HTTP_204_NO_CONTENT)
