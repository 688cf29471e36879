import logging

from django.contrib import messages
from django.contrib.auth.decorators import login_required
from django.core.exceptions import PermissionDenied
from django.db import DatabaseError, transaction
from django.http import HttpResponse, HttpResponseBadRequest
from django.shortcuts import get_object_or_404, redirect, render
from django.urls import reverse
from django.views.decorators.http import require_POST
from django.views.generic import DetailView, ListView

from activities.forms import MaterialLineFormSet
from activities.models import Activity
from activities.wizard import (
    FORMS,
    MATERIAL,
    PARTICIPANTS,
    TAB_KEYS,
    TABS,
    ActivityConflict,
    ActivityWizard,
    DraftInvalid,
    TabLocked,
    cancel_activity,
    plain_data,
    session_key,
)
from configuration.utils import get_api_key, weather_available
from material.models import Material
from material.selection import TABS as MATERIAL_TABS
from material.selection import SelectionError
from material.services import LoanError
from weather.utils import AemetError, municipality_forecast


def can_edit(user, activity):
    return (
        user.has_perm("activities.change_activity")
        or user.pk
        in (activity.creator_id, activity.responsible_activity_id, activity.responsible_material_id)
    )


class ActivityListView(ListView):
    model = Activity
    paginate_by = 20

    def get_queryset(self):
        if self.kwargs.get("past"):
            return Activity.objects.past()
        return Activity.objects.upcoming()

    def get_context_data(self, **kwargs):
        context = super().get_context_data(**kwargs)
        context["past"] = bool(self.kwargs.get("past"))
        return context


class ActivityDetailView(DetailView):
    model = Activity

    def get_context_data(self, **kwargs):
        context = super().get_context_data(**kwargs)
        context["loans"] = self.object.loans.active().select_related("material", "user")
        context["material_lines"] = self.object.material_lines.select_related("material")
        context["can_edit"] = can_edit(self.request.user, self.object)
        context["show_weather"] = bool(self.object.municipality_code) and weather_available()
        return context


def _tab_data(wizard, tab, post):
    if tab == MATERIAL:
        formset = MaterialLineFormSet(post)
        if not formset.is_valid():
            return None
        return [line for line in formset.cleaned_data if line]
    kwargs = {"creator": wizard.creator} if tab == PARTICIPANTS else {}
    return plain_data(FORMS[tab], post, **kwargs)


def _material_lines(wizard):
    """Formset rows for the draft lines, shared by the form page and the selector."""
    lines = wizard.draft.lines
    materials = wizard.catalog.in_bulk(line["material_id"] for line in lines)
    formset = MaterialLineFormSet(initial=lines)
    return {
        "material_formset": formset,
        "material_rows": [(f, materials.get(f.initial["material_id"])) for f in formset],
        "needs_material": wizard.needs_material,
    }


def _render_form(request, wizard, form=None):
    tab = wizard.current_tab
    if tab != MATERIAL and form is None:
        form = wizard.form(tab, bound=bool(wizard.draft.data[tab]))
    activity_id = wizard.draft.activity_id
    return render(
        request,
        "activities/activity_form.html",
        {
            "wizard": wizard,
            "form": form,
            "tab": tab,
            "tabs": [
                {
                    "key": key,
                    "label": label,
                    "current": key == tab,
                    "completed": wizard.is_completed(key),
                    "selectable": wizard.can_select(key),
                }
                for key, label in TABS
            ],
            "is_last": tab == TAB_KEYS[-1],
            **_material_lines(wizard),
            "selector_url": (
                reverse("activity_material_selector", args=[activity_id])
                if activity_id
                else reverse("activity_material_selector_new")
            ),
        },
    )


@login_required
def activity_form(request, pk=None):
    activity = get_object_or_404(Activity, pk=pk) if pk else None
    if activity is not None and not can_edit(request.user, activity):
        raise PermissionDenied

    wizard = ActivityWizard.load(request.session, request.user, activity)
    if request.method == "GET":
        if "tab" in request.GET:
            try:
                wizard.select_tab(request.GET["tab"])
            except TabLocked as e:
                messages.error(request, str(e))
            wizard.store(request.session)
        return _render_form(request, wizard)

    tab = request.POST.get("tab", wizard.current_tab)
    if tab not in TAB_KEYS:
        return HttpResponseBadRequest("Unknown tab")
    action = "select" if "target" in request.POST else request.POST.get("action", "next")
    data = _tab_data(wizard, tab, request.POST)
    if data is None:
        messages.error(request, "Check the material quantities.")
        data = wizard.draft.lines

    form = None
    if action == "previous":
        wizard.previous(tab, data)
    elif action == "select":
        wizard.keep(tab, data)
        try:
            wizard.select_tab(request.POST.get("target", tab))
        except TabLocked as e:
            messages.error(request, str(e))
    else:
        form = wizard.submit(tab, data)
        refused = form is not None and not form.is_valid()
        if action == "save" and not refused:
            original_key = session_key(wizard.draft.activity_id)
            try:
                saved = wizard.save()
            except DraftInvalid as e:
                wizard.draft.current_tab = e.tab
                form = None
                messages.error(request, str(e))
                for errors in e.errors.values():
                    for error in errors:
                        messages.error(request, error)
            except ActivityConflict as e:
                messages.error(request, str(e))
            except LoanError as e:
                messages.error(request, str(e))
            else:
                request.session.pop(original_key, None)
                for notice in wizard.notices:
                    messages.info(request, notice)
                messages.success(request, f"Activity {saved} saved.")
                return redirect(saved)

    for notice in wizard.notices:
        messages.info(request, notice)
    wizard.store(request.session)
    if form is not None and form.is_valid():
        form = None
    return _render_form(request, wizard, form)


@login_required
def discard_draft(request, pk=None):
    request.session.pop(session_key(pk), None)
    if pk:
        return redirect("activity_detail", pk=pk)
    return redirect("activity_list")


@transaction.non_atomic_requests
@login_required
def material_selector(request, pk=None):
    activity = get_object_or_404(Activity, pk=pk) if pk else None
    if activity is not None and not can_edit(request.user, activity):
        raise PermissionDenied
    if not request.htmx:
        return redirect(reverse("activity_edit", args=[pk]) if pk else reverse("activity_create"))

    wizard = ActivityWizard.load(request.session, request.user, activity)
    if not wizard.material_enabled:
        return render(request, "activities/_material_blocked.html")

    state = wizard.draft.selector
    params = request.POST if request.method == "POST" else request.GET
    error = None
    try:
        if "tab" in params:
            state.switch_tab(params["tab"])
        if "search" in params:
            state.set_search(params["search"])

        materials = wizard.catalog.list_selectable()
        selection = wizard.selection()
        operation = params.get("op")
        if request.method == "POST" and operation:
            material_id = int(params["material_id"])
            if operation == "remove":
                selection.remove(material_id)
            else:
                material = wizard.catalog.get(material_id)
                quantity = int(params.get("quantity", 1))
                if operation == "add":
                    selection.add(material, quantity)
                else:
                    selection.set_quantity(material, quantity)
        selected = wizard.catalog.in_bulk(line["material_id"] for line in selection.lines)
    except DatabaseError:
        logging.exception("Material catalog query failed")
        return render(
            request,
            "activities/_selector_error.html",
            {"retry_url": request.path},
            status=503,
        )
    except (SelectionError, ValueError, KeyError, Material.DoesNotExist) as e:
        error = str(e)
        selection = wizard.selection()
        selected = wizard.catalog.in_bulk(line["material_id"] for line in selection.lines)

    wizard.store(request.session)
    return render(
        request,
        "activities/_material_selector.html",
        {
            "state": state,
            "tabs": MATERIAL_TABS,
            "visible": selection.visible(materials, state) if error is None else [],
            "lines": [(selected.get(line["material_id"]), line["quantity"]) for line in selection.lines],
            "selector_url": request.path,
            "error": error,
            **_material_lines(wizard),
        },
    )


@login_required
@require_POST
def activity_cancel(request, pk):
    activity = get_object_or_404(Activity, pk=pk)
    if not can_edit(request.user, activity):
        raise PermissionDenied
    if activity.cancelled:
        messages.warning(request, f"{activity} was already cancelled.")
    else:
        cancel_activity(activity)
        messages.success(request, f"{activity} cancelled, its material has been released.")
    return redirect(activity)


def activity_ics(request, pk):
    activity = get_object_or_404(Activity, pk=pk)
    response = HttpResponse(activity.ics(), content_type="text/calendar")
    response["Content-Disposition"] = f'attachment; filename="{activity.pk}.ics"'
    return response


@login_required
def activity_weather(request, pk):
    activity = get_object_or_404(Activity, pk=pk)
    if not activity.municipality_code or not weather_available():
        return HttpResponse("")
    try:
        forecast = municipality_forecast(activity.municipality_code, get_api_key("aemet_api_key"))
    except AemetError as e:
        return render(
            request,
            "activities/_weather.html",
            {"activity": activity, "error": e.error, "retry_url": request.path},
        )
    days = []
    if isinstance(forecast, list) and forecast:
        days = forecast[0].get("prediccion", {}).get("dia", [])
    return render(request, "activities/_weather.html", {"activity": activity, "days": days})
