from admin_extra_buttons.api import ExtraButtonsMixin, button
from django.contrib import admin, messages
from django.shortcuts import redirect

from .models import Loan, Material
from .services import LoanLedger


class MaterialAdmin(admin.ModelAdmin):
    list_display = [
        "name",
        "code",
        "type",
        "state",
        "total_quantity",
        "available_quantity",
        "active_loans",
        "created_at",
    ]
    list_filter = ["type", "state", "created_at"]
    search_fields = ["name", "code", "description"]
    readonly_fields = ["available_quantity", "created_at", "updated_at"]
    actions = ["retire", "recalculate_availability"]

    def active_loans(self, obj):
        return Loan.objects.active().for_material(obj).count()

    active_loans.short_description = "Active loans"

    @admin.action(description="Retire selected materials")
    def retire(self, request, queryset):
        count = 0
        for material in queryset.exclude(state=Material.State.UNAVAILABLE):
            material.retire()
            count += 1
        self.message_user(request, f"{count} material(s) retired.", messages.SUCCESS)

    @admin.action(description="Recalculate availability from active loans")
    def recalculate_availability(self, request, queryset):
        for material in queryset:
            material.refresh_availability()
        self.message_user(request, f"{queryset.count()} material(s) recalculated.")

    def save_model(self, request, obj, form, change):
        obj.available_quantity = obj.compute_availability()
        super().save_model(request, obj, form, change)

    # materials are retired, never deleted
    def has_delete_permission(self, request, obj=None):
        return False


class LoanAdmin(ExtraButtonsMixin, admin.ModelAdmin):
    list_display = [
        "user",
        "material",
        "activity",
        "quantity",
        "active",
        "expected_return",
        "borrowed_at",
        "returned_at",
        "return_note",
    ]
    list_filter = ["active", "created_at"]
    search_fields = ["user__username", "material__name", "activity__name"]
    date_hierarchy = "borrowed_at"
    readonly_fields = ["borrowed_at", "created_at", "updated_at"]

    @button(
        label="Checkout Items",
        change_list=True,
        html_attrs={"style": "background-color: green; color: white;"},
    )
    def checkout_button(self, request):
        return redirect("checkout")

    @button(
        label="Loan Overview",
        change_list=True,
        html_attrs={"style": "background-color: orange; color: white;"},
    )
    def overview_button(self, request):
        return redirect("loan_overview")

    @button(label="Return Item", change_form=True, css_class="deletelink")
    def return_item(self, request, pk):
        obj = self.get_object(request, pk)
        if not obj.active:
            messages.warning(request, f"Loan {obj} was already returned.")
            return
        LoanLedger().return_loans([obj], note=f"Returned from admin by {request.user}")
        self.message_user(request, f"Loan {obj} returned.")
        return redirect("admin:material_loan_changelist")

    # loans are written through the ledger so availability stays in sync
    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


admin.site.register(Loan, LoanAdmin)
admin.site.register(Material, MaterialAdmin)
