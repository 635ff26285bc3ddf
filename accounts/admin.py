from django import forms
from django.contrib import admin, messages
from django.core.exceptions import PermissionDenied
from django.shortcuts import get_object_or_404, redirect, render
from django.urls import path, reverse

from .models import CoinPackage, CoinTransaction, PaymentProvider, Profile
from .services import MAX_ADJUSTMENT_AMOUNT, InsufficientCoinsError, adjust_coins
from .session import ReaderSession


class CoinAdjustmentForm(forms.Form):
    ADD = "add"
    DEDUCT = "deduct"

    adjustment_type = forms.ChoiceField(
        choices=((ADD, "Add coins"), (DEDUCT, "Deduct coins")),
        initial=ADD,
    )
    amount = forms.IntegerField(min_value=1, max_value=MAX_ADJUSTMENT_AMOUNT)
    reason = forms.CharField(max_length=255, required=False)

    def signed_amount(self) -> int:
        amount = self.cleaned_data["amount"]
        if self.cleaned_data["adjustment_type"] == self.DEDUCT:
            return -amount
        return amount


@admin.register(Profile)
class ProfileAdmin(admin.ModelAdmin):
    list_display = (
        "user",
        "display_name",
        "is_admin",
        "coins",
        "created_at",
    )
    list_filter = ("is_admin",)
    search_fields = ("user__username", "user__email", "display_name")
    list_select_related = ("user",)
    readonly_fields = ("coins", "created_at", "updated_at")

    def get_urls(self):
        custom = [
            path(
                "<int:profile_id>/adjust-coins/",
                self.admin_site.admin_view(self.adjust_coins_view),
                name="accounts_profile_adjust_coins",
            ),
        ]
        return custom + super().get_urls()

    def adjust_coins_view(self, request, profile_id):
        profile = get_object_or_404(Profile.objects.select_related("user"), pk=profile_id)
        form = CoinAdjustmentForm(request.POST or None)

        if request.method == "POST" and form.is_valid():
            session = ReaderSession.open(request.user)
            try:
                result = adjust_coins(
                    session,
                    profile,
                    form.signed_amount(),
                    reason=form.cleaned_data["reason"],
                )
            except PermissionDenied as exc:
                self.message_user(request, str(exc), level=messages.ERROR)
            except (InsufficientCoinsError, ValueError) as exc:
                form.add_error("amount", str(exc))
            else:
                self.message_user(
                    request,
                    f"Balance of {profile.user.username} is now {result.transaction.balance_after} coins.",
                )
                return redirect(reverse("admin:accounts_profile_change", args=[profile.pk]))

        context = {
            **self.admin_site.each_context(request),
            "opts": self.model._meta,
            "original": profile,
            "title": f"Adjust coins: {profile.user.username}",
            "form": form,
        }
        return render(request, "admin/accounts/profile/adjust_coins.html", context)


@admin.register(CoinTransaction)
class CoinTransactionAdmin(admin.ModelAdmin):
    list_display = (
        "profile",
        "transaction_type",
        "amount",
        "balance_after",
        "reference_id",
        "created_at",
    )
    list_filter = ("transaction_type",)
    search_fields = (
        "profile__user__username",
        "profile__user__email",
        "description",
        "reference_id",
    )
    autocomplete_fields = ("profile",)
    readonly_fields = ("created_at",)

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(CoinPackage)
class CoinPackageAdmin(admin.ModelAdmin):
    list_display = ("name", "coin_amount", "price", "currency", "is_featured", "is_active")
    list_filter = ("is_active", "is_featured", "currency")
    search_fields = ("name",)
    list_editable = ("is_featured", "is_active")


@admin.register(PaymentProvider)
class PaymentProviderAdmin(admin.ModelAdmin):
    list_display = ("provider", "is_enabled", "updated_at")
    list_filter = ("is_enabled",)
    readonly_fields = ("created_at", "updated_at")
