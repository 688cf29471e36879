from datetime import timedelta

from django.contrib import messages
from django.contrib.auth.decorators import login_required, permission_required
from django.shortcuts import get_object_or_404, redirect, render
from django.utils import timezone

from activities.models import Activity
from configuration.utils import get_setting

from .forms import CheckoutForm, ExtendLoanForm, LoanFormSet, ReturnForm
from .models import Loan, Material
from .selection import group_by_type
from .services import LoanError, LoanLedger


@login_required
@permission_required("material.view_material", raise_exception=True)
def item_list(request):
    items = Material.objects.exclude(state=Material.State.UNAVAILABLE)
    loaned_items = Loan.objects.active().select_related("material", "user", "activity")

    return render(
        request,
        "material/item_list.html",
        {
            "items_by_type": group_by_type(items),
            "type_labels": dict(Material.Type.choices),
            "loaned_items": loaned_items,
        },
    )


@login_required
@permission_required("material.view_material", raise_exception=True)
def checkout_items(request):
    items = Material.objects.filter(state=Material.State.AVAILABLE, available_quantity__gt=0)
    if request.method == "POST":
        checkout_form = CheckoutForm(request.POST)
        formset = LoanFormSet(request.POST)
        if formset.is_valid() and checkout_form.is_valid():
            lines = [
                (form["material_id"], form["quantity"])
                for form in formset.cleaned_data
                if form.get("quantity")
            ]
            try:
                loans = LoanLedger().checkout(
                    request.user,
                    lines,
                    checkout_form.cleaned_data["expected_return"],
                    checkout_form.cleaned_data["note"],
                )
            except LoanError as e:
                messages.error(request, str(e))
                return redirect("checkout")
            messages.success(request, f"Successfully borrowed {len(loans)} item(s)!")
            return redirect("my_loans")
        else:
            messages.error(request, "Invalid form, check the quantities requested.")
            return redirect("checkout")
    else:
        initial_data = [
            {
                "material_id": item.id,
                "name": item.name,
                "type": item.get_type_display(),
                "available_quantity": item.available_quantity,
            }
            for item in items
        ]
        formset = LoanFormSet(initial=initial_data)
        loan_days = int(get_setting("loans", "default_loan_days", 7))
        initial_due_date = timezone.localdate() + timedelta(days=loan_days)
        checkout_form = CheckoutForm(initial={"expected_return": initial_due_date})

    return render(
        request, "material/checkout.html", {"formset": formset, "checkout_form": checkout_form}
    )


@login_required
@permission_required("material.view_material", raise_exception=True)
def return_items(request):

    active_loans = Loan.objects.active().filter(user=request.user)

    if request.method == "POST":
        form = ReturnForm(request.POST, user_loans=active_loans)
        if form.is_valid():
            selected_loans = form.cleaned_data["loans"]
            return_note = form.cleaned_data["return_note"]

            if not selected_loans:
                messages.error(request, "Please select at least one item to return.")
                return redirect("return_items")

            returned = LoanLedger().return_loans(selected_loans, return_note)

            messages.success(request, f"Successfully returned {len(returned)} item(s)!")
            return redirect("my_loans")
    else:
        form = ReturnForm(user_loans=active_loans)

    return render(
        request,
        "material/return.html",
        {
            "form": form,
            "active_loans": active_loans,
        },
    )


@login_required
def my_loans(request):

    loans = Loan.objects.active().filter(user=request.user).select_related("material", "activity")
    return render(request, "material/my_loans.html", {"loans": loans})


@login_required
def extend_loan(request, pk):
    loan = get_object_or_404(Loan, pk=pk, user=request.user, active=True)
    if request.method == "POST":
        form = ExtendLoanForm(request.POST)
        if form.is_valid():
            try:
                LoanLedger().extend(loan, form.cleaned_data["expected_return"])
            except LoanError as e:
                form.add_error("expected_return", str(e))
            else:
                messages.success(request, f"Return date of {loan.material} updated.")
                return redirect("my_loans")
    else:
        form = ExtendLoanForm(initial={"expected_return": loan.expected_return})

    return render(request, "material/extend_loan.html", {"form": form, "loan": loan})


@login_required
@permission_required("material.view_loan", raise_exception=True)
def loan_overview(request):
    days = int(get_setting("notifications", "due_soon_days", 3))
    return render(
        request,
        "material/loan_overview.html",
        {
            "statistics": Loan.objects.statistics(),
            "overdue": Loan.objects.overdue().select_related("material", "user", "activity"),
            "due_soon": Loan.objects.due_within(days).select_related("material", "user"),
            "due_soon_days": days,
            "activities": Activity.objects.upcoming()
            .needing_material()
            .select_related("responsible_material"),
        },
    )
