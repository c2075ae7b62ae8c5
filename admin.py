"""Tallyman admin: read-only ledger views and incident resolution."""

from django.contrib import admin, messages
from django.utils.html import format_html

from tallyman.exceptions import TallymanError
from tallyman.models import ActivityLogEntry, LedgerIncident, PrincipalBalance
from tallyman.services import reconciliation


class ReadOnlyAdminMixin:
    """Ledger rows change only through LedgerService."""

    def has_add_permission(self, request, obj=None):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


class ActivityLogEntryInline(ReadOnlyAdminMixin, admin.TabularInline):
    model = ActivityLogEntry
    fk_name = "account"
    extra = 0
    fields = ["created_at", "reason", "delta", "requested_delta", "resulting_balance", "resulting_tier"]
    readonly_fields = fields
    ordering = ["-created_at", "-id"]


@admin.register(PrincipalBalance)
class PrincipalBalanceAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ["principal_id", "points_balance", "tier_badge", "updated_at"]
    list_filter = ["tier"]
    search_fields = ["principal_id"]
    readonly_fields = ["principal_id", "points_balance", "tier", "created_at", "updated_at"]
    inlines = [ActivityLogEntryInline]

    def tier_badge(self, obj):
        colors = {
            "BRONZE": "#cd7f32",
            "SILVER": "#c0c0c0",
            "GOLD": "#ffd700",
            "PLATINUM": "#e5e4e2",
            "DIAMOND": "#b9f2ff",
        }
        return format_html(
            '<span style="background:{}; color:#000; padding:2px 8px; '
            'border-radius:3px; font-size:11px;">{} ({}%)</span>',
            colors.get(obj.tier, "#6c757d"),
            obj.get_tier_display(),
            obj.discount_percent,
        )

    tier_badge.short_description = "Tier"


@admin.register(ActivityLogEntry)
class ActivityLogEntryAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ["created_at", "principal", "reason", "delta_display", "resulting_balance", "resulting_tier"]
    list_filter = ["reason", "resulting_tier"]
    search_fields = ["account__principal_id", "reason"]
    date_hierarchy = "created_at"

    def principal(self, obj):
        return obj.account.principal_id

    def delta_display(self, obj):
        color = "green" if obj.delta > 0 else "red"
        sign = "+" if obj.delta > 0 else ""
        if obj.was_floored:
            return format_html(
                '<span style="color:{}">{}{}</span> <small>(requested {})</small>',
                color,
                sign,
                obj.delta,
                obj.requested_delta,
            )
        return format_html('<span style="color:{}">{}{}</span>', color, sign, obj.delta)

    delta_display.short_description = "Delta"


@admin.register(LedgerIncident)
class LedgerIncidentAdmin(admin.ModelAdmin):
    list_display = ["id", "principal_id", "original_delta", "original_reason", "status", "created_at"]
    list_filter = ["status"]
    search_fields = ["principal_id"]
    readonly_fields = [
        "principal_id",
        "original_delta",
        "requested_delta",
        "original_reason",
        "original_entry",
        "mirror_error",
        "compensation_error",
        "context",
        "created_at",
        "resolved_at",
        "resolved_by",
    ]
    actions = ["resolve_and_resync"]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    @admin.action(description="Resolve and resync mirror from ledger")
    def resolve_and_resync(self, request, queryset):
        resolved = 0
        for incident in queryset.filter(status=LedgerIncident.Status.OPEN):
            try:
                reconciliation.resolve_incident(
                    incident.pk,
                    resolved_by=request.user.get_username(),
                    note="Resolved from admin",
                )
            except TallymanError as exc:
                self.message_user(request, f"#{incident.pk}: {exc.message}", messages.ERROR)
                continue
            resolved += 1
        self.message_user(request, f"{resolved} incident(s) resolved.", messages.SUCCESS)
