from django.contrib import admin, messages
from django.utils.html import format_html

from activities.models import Activity, ActivityMaterial
from activities.wizard import cancel_activity
from material.models import Loan


class ActivityMaterialInline(admin.TabularInline):
    model = ActivityMaterial
    extra = 0
    fields = ("material", "quantity")
    readonly_fields = ("material", "quantity")
    can_delete = False


class LoanInline(admin.TabularInline):
    model = Loan
    extra = 0
    fields = ("material", "user", "quantity", "active", "expected_return", "returned_at")
    readonly_fields = fields
    can_delete = False
    show_change_link = True

    def has_add_permission(self, request, obj=None):
        return False


class ActivityAdmin(admin.ModelAdmin):
    list_display = (
        "name",
        "place",
        "start_date",
        "end_date",
        "state_display",
        "responsible_material",
        "needs_material_display",
        "loan_count",
    )
    list_filter = ("cancelled", "difficulty", "start_date")
    search_fields = ("name", "place", "description")
    ordering = ("-start_date",)
    readonly_fields = ("version", "created_at", "updated_at")
    autocomplete_fields = ("creator", "responsible_activity", "responsible_material")
    filter_horizontal = ("participants",)
    inlines = [ActivityMaterialInline, LoanInline]
    actions = ["cancel"]

    def state_display(self, obj):
        return obj.get_state_display()

    state_display.short_description = "State"

    def needs_material_display(self, obj):
        return obj.needs_material

    needs_material_display.boolean = True
    needs_material_display.short_description = "Needs material"

    def loan_count(self, obj):
        count = obj.loans.active().count()
        return format_html(
            '<a href="/admin/material/loan/?activity__id__exact={}&active__exact=1">{} loan{}</a>',
            obj.id,
            count,
            "s" if count != 1 else "",
        )

    loan_count.short_description = "Active loans"

    @admin.action(description="Cancel selected activities and release their material")
    def cancel(self, request, queryset):
        count = 0
        for activity in queryset.filter(cancelled=False):
            cancel_activity(activity)
            count += 1
        self.message_user(request, f"{count} activity(ies) cancelled.", messages.SUCCESS)

    # activities are cancelled, never deleted
    def has_delete_permission(self, request, obj=None):
        return False


admin.site.register(Activity, ActivityAdmin)
