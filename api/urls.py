from django.urls import path

from . import views


app_name = "api"


urlpatterns = [
    path("health/", views.HealthView.as_view(), name="health"),
    path("auth/token/", views.ObtainTokenView.as_view(), name="auth-token"),
    path("auth/logout/", views.LogoutView.as_view(), name="auth-logout"),
    path("genres/", views.GenreListView.as_view(), name="genres-list"),
    path("novels/", views.NovelListView.as_view(), name="novels-list"),
    path("novels/rankings/", views.NovelRankingView.as_view(), name="novels-rankings"),
    path("novels/<int:pk>/", views.NovelDetailView.as_view(), name="novels-detail"),
    path(
        "novels/<int:novel_id>/chapters/<int:number>/",
        views.ChapterReaderView.as_view(),
        name="chapter-read",
    ),
    path(
        "novels/<int:novel_id>/chapters/<int:number>/unlock/",
        views.ChapterUnlockView.as_view(),
        name="chapter-unlock",
    ),
    path("novels/<int:pk>/bookmark/", views.BookmarkToggleView.as_view(), name="novel-bookmark"),
    path("novels/<int:pk>/rating/", views.NovelRatingView.as_view(), name="novel-rating"),
    path("me/library/", views.LibraryView.as_view(), name="library"),
    path("me/coins/", views.CoinSummaryView.as_view(), name="coin-summary"),
    path(
        "me/coins/transactions/",
        views.CoinTransactionListView.as_view(),
        name="coin-transactions",
    ),
    path("coin-packages/", views.CoinPackageListView.as_view(), name="coin-packages"),
    path(
        "coin-packages/<int:pk>/purchase/",
        views.CoinPackagePurchaseView.as_view(),
        name="coin-package-purchase",
    ),
    path(
        "admin/profiles/<int:pk>/coins/",
        views.AdminCoinAdjustmentView.as_view(),
        name="admin-coin-adjust",
    ),
    path("author/novels/", views.AuthorNovelListCreateView.as_view(), name="author-novels"),
    path(
        "author/novels/<int:pk>/",
        views.AuthorNovelDetailView.as_view(),
        name="author-novel-detail",
    ),
    path(
        "author/novels/<int:novel_id>/chapters/",
        views.AuthorChapterListCreateView.as_view(),
        name="author-chapters",
    ),
    path(
        "author/novels/<int:novel_id>/chapters/<int:number>/",
        views.AuthorChapterDetailView.as_view(),
        name="author-chapter-detail",
    ),
]
