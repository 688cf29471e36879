import datetime
from unittest.mock import patch

from django.contrib.auth.models import User
from django.db import DatabaseError
from django.test import TestCase
from django.urls import reverse
from django.utils import timezone

from activities.forms import InfoForm, LinksForm, ParticipantsForm
from activities.models import Activity, ActivityMaterial, derive_needs_material
from activities.wizard import (
    INFO,
    LINKS,
    MATERIAL,
    PARTICIPANTS,
    ActivityConflict,
    ActivityWizard,
    InvalidDateRange,
    TabLocked,
    cancel_activity,
)
from material.models import Loan, Material
from material.services import InsufficientStock, LoanLedger


def _info(**overrides):
    start = timezone.localdate() + datetime.timedelta(days=10)
    data = {
        "name": "Sistema del Trave",
        "place": "Picos de Europa",
        "description": "",
        "types": ["caving"],
        "subtypes": ["exploration"],
        "difficulty": "high",
        "start_date": start.isoformat(),
        "end_date": (start + datetime.timedelta(days=2)).isoformat(),
        "municipality_code": "",
    }
    data.update(overrides)
    return data


class ActivityTestMixin:
    def setUp(self):
        self.creator = User.objects.create_user(username="creator", email="creator@example.com")
        self.u1 = User.objects.create_user(username="u1", email="u1@example.com")
        self.u2 = User.objects.create_user(username="u2", email="u2@example.com")
        self.rope = Material.objects.create(
            name="Cuerda 60m", type="rope", code="C-01", total_quantity=3, available_quantity=3
        )
        self.spits = Material.objects.create(
            name="Spits", type="anchor", code="A-01", total_quantity=20, available_quantity=20
        )

    def _wizard(self, responsible_material=None, lines=None, **participants):
        wizard = ActivityWizard.start(self.creator)
        wizard.submit(INFO, _info())
        wizard.submit(
            PARTICIPANTS,
            {
                "responsible_activity": participants.get("responsible_activity"),
                "responsible_material": responsible_material,
                "participants": participants.get("participants", [self.u2.pk]),
            },
        )
        if lines is not None:
            wizard.submit(MATERIAL, lines)
        wizard.submit(LINKS, {})
        return wizard


class InfoValidationTests(TestCase):
    def test_valid(self):
        self.assertTrue(InfoForm(_info()).is_valid())

    def test_blank_place_is_the_only_error(self):
        form = InfoForm(_info(place="   "))
        self.assertFalse(form.is_valid())
        self.assertEqual(list(form.errors), ["place"])

    def test_bare_string_and_empty_list_are_rejected_the_same_way(self):
        bare = InfoForm(_info(types="caving"))
        empty = InfoForm(_info(types=[]))
        self.assertFalse(bare.is_valid())
        self.assertFalse(empty.is_valid())
        self.assertEqual(bare.errors["types"], empty.errors["types"])
        self.assertEqual(bare.errors.as_data()["types"][0].code, "required")

    def test_subtypes_required(self):
        form = InfoForm(_info(subtypes=[]))
        self.assertFalse(form.is_valid())
        self.assertIn("subtypes", form.errors)

    def test_unknown_type(self):
        form = InfoForm(_info(types=["diving"]))
        self.assertFalse(form.is_valid())
        self.assertEqual(form.errors.as_data()["types"][0].code, "invalid_choice")

    def test_dates_required_but_order_not_checked_here(self):
        self.assertIn("end_date", InfoForm(_info(end_date="")).errors)
        later = timezone.localdate() + datetime.timedelta(days=30)
        self.assertTrue(InfoForm(_info(start_date=later.isoformat())).is_valid())


class ParticipantsAndLinksFormTests(TestCase):
    def setUp(self):
        self.creator = User.objects.create_user(username="creator")
        self.u1 = User.objects.create_user(username="u1")

    def test_empty_participants_rejected(self):
        form = ParticipantsForm({}, creator=None)
        self.assertFalse(form.is_valid())

    def test_creator_and_responsibles_are_merged(self):
        form = ParticipantsForm({"responsible_material": self.u1.pk}, creator=self.creator)
        self.assertTrue(form.is_valid())
        self.assertEqual(set(form.cleaned_data["participants"]), {self.creator, self.u1})

    def test_links_must_be_urls(self):
        form = LinksForm({"wikiloc": "https://www.wikiloc.com/route/1\nnot a url", "web": ""})
        self.assertFalse(form.is_valid())
        self.assertIn("wikiloc", form.errors)

    def test_empty_links_allowed(self):
        form = LinksForm({})
        self.assertTrue(form.is_valid())
        self.assertEqual(form.cleaned_data["drive"], [])


class WizardNavigationTests(ActivityTestMixin, TestCase):
    def test_failed_next_keeps_data_and_stays(self):
        wizard = ActivityWizard.start(self.creator)
        form = wizard.submit(INFO, _info(place=""))
        self.assertFalse(form.is_valid())
        self.assertEqual(wizard.current_tab, INFO)
        self.assertEqual(wizard.draft.data[INFO]["name"], "Sistema del Trave")
        self.assertFalse(wizard.is_completed(INFO))

    def test_next_marks_completed(self):
        wizard = ActivityWizard.start(self.creator)
        wizard.submit(INFO, _info())
        self.assertTrue(wizard.is_completed(INFO))
        self.assertEqual(wizard.current_tab, PARTICIPANTS)

    def test_direct_selection_needs_previous_tabs(self):
        wizard = ActivityWizard.start(self.creator)
        with self.assertRaises(TabLocked):
            wizard.select_tab(MATERIAL)
        wizard.submit(INFO, _info())
        wizard.submit(PARTICIPANTS, {"participants": [self.u1.pk]})
        with self.assertRaises(TabLocked):
            wizard.select_tab(LINKS)
        self.assertEqual(wizard.select_tab(MATERIAL), MATERIAL)
        self.assertEqual(wizard.select_tab(INFO), INFO)

    def test_previous_always_allowed(self):
        wizard = ActivityWizard.start(self.creator)
        wizard.submit(INFO, _info())
        self.assertEqual(wizard.previous(PARTICIPANTS, {"participants": []}), INFO)
        self.assertEqual(wizard.draft.data[PARTICIPANTS], {"participants": []})

    def test_session_round_trip(self):
        session = {}
        wizard = ActivityWizard.start(self.creator)
        wizard.submit(INFO, _info())
        wizard.store(session)
        restored = ActivityWizard.load(session, self.creator)
        self.assertEqual(restored.current_tab, PARTICIPANTS)
        self.assertTrue(restored.is_completed(INFO))


class NeedsMaterialTests(ActivityTestMixin, TestCase):
    def test_derived_from_responsible_and_lines(self):
        self.assertFalse(derive_needs_material(None, [{"material_id": 1, "quantity": 1}]))
        self.assertFalse(derive_needs_material(self.u1.pk, []))
        self.assertTrue(derive_needs_material(self.u1.pk, [{"material_id": 1, "quantity": 1}]))

    def test_live_on_the_draft(self):
        wizard = self._wizard(responsible_material=self.u1.pk)
        self.assertFalse(wizard.needs_material)
        selection = wizard.selection()
        selection.add(self.rope)
        self.assertTrue(wizard.needs_material)
        selection.remove(self.rope.id)
        self.assertFalse(wizard.needs_material)

    def test_auto_assigns_responsible_for_activity(self):
        wizard = self._wizard(responsible_activity=self.u1.pk)
        self.assertFalse(wizard.material_enabled)
        wizard.update_materials([{"material_id": self.rope.id, "quantity": 1}])
        self.assertEqual(wizard.draft.responsible_material_id, self.u1.pk)
        self.assertTrue(wizard.needs_material)
        self.assertEqual(len(wizard.notices), 1)

    def test_auto_assigns_creator_without_responsible(self):
        wizard = self._wizard()
        wizard.update_materials([{"material_id": self.rope.id, "quantity": 1}])
        self.assertEqual(wizard.draft.responsible_material_id, self.creator.pk)
        self.assertEqual(len(wizard.notices), 1)

    def test_no_notice_when_responsible_set(self):
        wizard = self._wizard(responsible_material=self.u2.pk)
        wizard.update_materials([{"material_id": self.rope.id, "quantity": 1}])
        self.assertEqual(wizard.draft.responsible_material_id, self.u2.pk)
        self.assertEqual(wizard.notices, [])


class WizardSaveTests(ActivityTestMixin, TestCase):
    def test_save_creates_activity_and_loans(self):
        wizard = self._wizard(
            responsible_material=self.u1.pk,
            lines=[
                {"material_id": self.rope.id, "quantity": 2},
                {"material_id": self.spits.id, "quantity": 8},
            ],
        )
        activity = wizard.save()

        self.assertEqual(activity.version, 1)
        self.assertEqual(activity.creator, self.creator)
        self.assertEqual(
            set(activity.participants.all()), {self.creator, self.u1, self.u2}
        )
        self.assertTrue(activity.needs_material)
        loans = Loan.objects.active().for_activity(activity)
        self.assertEqual(loans.count(), 2)
        for loan in loans:
            self.assertEqual(loan.user, self.u1)
            self.assertEqual(loan.expected_return, activity.end_date)
        self.rope.refresh_from_db()
        self.assertEqual(self.rope.available_quantity, 1)

    def test_reconcile_is_idempotent(self):
        wizard = self._wizard(
            responsible_material=self.u1.pk, lines=[{"material_id": self.rope.id, "quantity": 2}]
        )
        activity = wizard.save()
        result = LoanLedger().reconcile_activity(activity)
        self.assertFalse(result.changed)
        self.assertEqual(Loan.objects.count(), 1)
        self.rope.refresh_from_db()
        self.assertEqual(self.rope.available_quantity, 1)

    def test_edit_updates_loans_in_place(self):
        activity = self._wizard(
            responsible_material=self.u1.pk, lines=[{"material_id": self.rope.id, "quantity": 3}]
        ).save()
        loan = Loan.objects.get()

        wizard = ActivityWizard.start(self.creator, activity)
        # the three units held by this activity count as available to it
        self.assertEqual(wizard.held(), {self.rope.id: 3})
        wizard.update_materials([{"material_id": self.rope.id, "quantity": 1}])
        activity = wizard.save()

        self.assertEqual(activity.version, 2)
        loan.refresh_from_db()
        self.assertTrue(loan.active)
        self.assertEqual(loan.quantity, 1)
        self.rope.refresh_from_db()
        self.assertEqual(self.rope.available_quantity, 2)

    def test_clearing_responsible_releases_loans(self):
        activity = self._wizard(
            responsible_material=self.u1.pk, lines=[{"material_id": self.rope.id, "quantity": 2}]
        ).save()

        wizard = ActivityWizard.start(self.creator, activity)
        wizard.submit(PARTICIPANTS, {"responsible_material": None, "participants": [self.u2.pk]})
        activity = wizard.save()

        self.assertFalse(activity.needs_material)
        self.assertEqual(Loan.objects.active().count(), 0)
        self.rope.refresh_from_db()
        self.assertEqual(self.rope.available_quantity, 3)

    def test_dropped_material_is_released(self):
        activity = self._wizard(
            responsible_material=self.u1.pk,
            lines=[
                {"material_id": self.rope.id, "quantity": 1},
                {"material_id": self.spits.id, "quantity": 5},
            ],
        ).save()
        wizard = ActivityWizard.start(self.creator, activity)
        wizard.update_materials([{"material_id": self.spits.id, "quantity": 5}])
        wizard.save()

        self.assertEqual(
            list(Loan.objects.active().values_list("material_id", flat=True)), [self.spits.id]
        )
        self.rope.refresh_from_db()
        self.assertEqual(self.rope.available_quantity, 3)

    def test_insufficient_stock_rolls_back_everything(self):
        wizard = self._wizard(
            responsible_material=self.u1.pk,
            lines=[
                {"material_id": self.spits.id, "quantity": 5},
                {"material_id": self.rope.id, "quantity": 4},
            ],
        )
        with self.assertRaises(InsufficientStock):
            wizard.save()
        self.assertEqual(Activity.objects.count(), 0)
        self.assertEqual(ActivityMaterial.objects.count(), 0)
        self.assertEqual(Loan.objects.count(), 0)
        self.spits.refresh_from_db()
        self.assertEqual(self.spits.available_quantity, 20)

    def test_end_before_start_is_rejected_at_save(self):
        wizard = ActivityWizard.start(self.creator)
        start = timezone.localdate() + datetime.timedelta(days=5)
        wizard.submit(
            INFO,
            _info(
                start_date=start.isoformat(),
                end_date=(start - datetime.timedelta(days=1)).isoformat(),
            ),
        )
        self.assertTrue(wizard.is_completed(INFO))
        wizard.submit(PARTICIPANTS, {"participants": [self.u1.pk]})
        with self.assertRaises(InvalidDateRange):
            wizard.save()
        self.assertEqual(Activity.objects.count(), 0)

    def test_concurrent_edit_conflicts(self):
        activity = self._wizard().save()
        first = ActivityWizard.start(self.creator, activity)
        second = ActivityWizard.start(self.creator, activity)

        second.submit(INFO, _info(name="Renamed"))
        second.save()

        first.submit(INFO, _info(name="Lost update"))
        with self.assertRaises(ActivityConflict):
            first.save()
        activity.refresh_from_db()
        self.assertEqual(activity.name, "Renamed")
        self.assertEqual(activity.version, 2)

    def test_cancel_releases_loans(self):
        activity = self._wizard(
            responsible_material=self.u1.pk, lines=[{"material_id": self.rope.id, "quantity": 2}]
        ).save()
        activity = cancel_activity(activity)
        self.assertEqual(activity.state, Activity.State.CANCELLED)
        self.assertEqual(Loan.objects.active().count(), 0)
        self.assertEqual(Loan.objects.returned().count(), 1)
        self.rope.refresh_from_db()
        self.assertEqual(self.rope.available_quantity, 3)


class ActivityModelTests(ActivityTestMixin, TestCase):
    def test_state_and_ics(self):
        today = timezone.localdate()
        activity = Activity.objects.create(
            name="Barranco",
            place="Guara",
            types=["canyoning"],
            subtypes=["visit"],
            start_date=today,
            end_date=today + datetime.timedelta(days=1),
            creator=self.creator,
        )
        self.assertEqual(activity.state, Activity.State.IN_PROGRESS)
        self.assertIn("SUMMARY:Barranco", activity.ics())
        self.assertIn(activity, Activity.objects.upcoming())

        activity.end_date = activity.start_date = today - datetime.timedelta(days=3)
        self.assertEqual(activity.state, Activity.State.FINISHED)

    def test_ics_end_date_covers_last_day(self):
        activity = Activity.objects.create(
            name="Torca del Carlista",
            place="Karrantza",
            types=["caving"],
            subtypes=["visit"],
            start_date=datetime.date(2026, 3, 7),
            end_date=datetime.date(2026, 3, 7),
            creator=self.creator,
        )
        ics = activity.ics()
        self.assertIn("DTSTART;VALUE=DATE:20260307", ics)
        self.assertIn("DTEND;VALUE=DATE:20260308", ics)

    def test_needing_material(self):
        with_material = self._wizard(
            responsible_material=self.u1.pk, lines=[{"material_id": self.rope.id, "quantity": 1}]
        ).save()
        self._wizard().save()
        self.assertEqual(list(Activity.objects.needing_material()), [with_material])


class ActivityViewTests(ActivityTestMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client.force_login(self.creator)

    def _post(self, tab, data, action="next", url=None):
        payload = {"tab": tab, "action": action}
        payload.update(data)
        return self.client.post(url or reverse("activity_create"), payload)

    def test_create_flow(self):
        response = self._post(INFO, _info(place=""))
        self.assertEqual(response.status_code, 200)
        self.assertContains(response, "This field is required")

        response = self._post(INFO, _info())
        self.assertContains(response, 'name="participants"')

        response = self._post(PARTICIPANTS, {"responsible_activity": self.u1.pk, "participants": [self.u2.pk]})
        self.assertEqual(response.status_code, 200)

        # material tab submitted with lines but nobody responsible for them
        response = self._post(
            MATERIAL,
            {
                "form-TOTAL_FORMS": "1",
                "form-INITIAL_FORMS": "0",
                "form-0-material_id": str(self.rope.id),
                "form-0-quantity": "2",
            },
        )
        self.assertContains(response, "assigned to the person responsible for the activity")

        response = self._post(LINKS, {"web": "https://example.com/topo"}, action="save")
        activity = Activity.objects.get()
        self.assertRedirects(response, activity.get_absolute_url())
        self.assertEqual(activity.responsible_material, self.u1)
        self.assertEqual(activity.links["web"], ["https://example.com/topo"])
        self.assertEqual(Loan.objects.active().get().user, self.u1)

    def test_selector_blocked_without_responsible(self):
        self._post(INFO, _info())
        self._post(PARTICIPANTS, {"participants": [self.u2.pk]})
        response = self.client.get(
            reverse("activity_material_selector_new"), HTTP_HX_REQUEST="true"
        )
        self.assertContains(response, "responsible for the material")
        self.assertNotContains(response, "Cuerda 60m")

    def test_selector_search_and_add(self):
        self._post(INFO, _info())
        self._post(PARTICIPANTS, {"responsible_material": self.u1.pk})
        url = reverse("activity_material_selector_new")

        response = self.client.get(url, {"tab": "rope", "search": "cuerda"}, HTTP_HX_REQUEST="true")
        self.assertContains(response, "Cuerda 60m")
        self.assertNotContains(response, "Spits")

        response = self.client.post(
            url, {"op": "add", "material_id": self.rope.id, "quantity": 1}, HTTP_HX_REQUEST="true"
        )
        self.assertContains(response, "1 x Cuerda 60m")
        draft = self.client.session["activity_draft:new"]
        self.assertEqual(draft["data"]["material"], [{"material_id": self.rope.id, "quantity": 1}])

    def test_selector_picks_survive_material_tab_submit(self):
        self._post(INFO, _info())
        response = self._post(PARTICIPANTS, {"responsible_material": self.u1.pk})
        self.assertContains(response, 'name="form-TOTAL_FORMS" value="0"')

        response = self.client.post(
            reverse("activity_material_selector_new"),
            {"op": "add", "material_id": self.rope.id, "quantity": 1},
            HTTP_HX_REQUEST="true",
        )
        # the line rows on the page are swapped for the updated selection
        self.assertContains(response, 'id="material-lines" hx-swap-oob="true"')
        self.assertContains(response, 'name="form-TOTAL_FORMS" value="1"')
        self.assertContains(response, f'name="form-0-material_id" value="{self.rope.id}"')

        self._post(
            MATERIAL,
            {
                "form-TOTAL_FORMS": "1",
                "form-INITIAL_FORMS": "1",
                "form-0-material_id": str(self.rope.id),
                "form-0-quantity": "1",
            },
        )
        draft = self.client.session["activity_draft:new"]
        self.assertEqual(draft["data"]["material"], [{"material_id": self.rope.id, "quantity": 1}])
        self.assertEqual(draft["current_tab"], LINKS)

        response = self._post(LINKS, {}, action="save")
        activity = Activity.objects.get()
        self.assertRedirects(response, activity.get_absolute_url())
        loan = Loan.objects.active().get()
        self.assertEqual((loan.material, loan.quantity, loan.user), (self.rope, 1, self.u1))

    def test_selector_catalog_failure_offers_retry(self):
        self._post(INFO, _info())
        self._post(PARTICIPANTS, {"responsible_material": self.u1.pk})
        with patch(
            "material.services.MaterialCatalog.list_selectable", side_effect=DatabaseError("down")
        ):
            response = self.client.get(
                reverse("activity_material_selector_new"), HTTP_HX_REQUEST="true"
            )
        self.assertEqual(response.status_code, 503)
        self.assertContains(response, "Retry", status_code=503)

    def test_detail_cancel_and_ics(self):
        activity = self._wizard(
            responsible_material=self.u1.pk, lines=[{"material_id": self.rope.id, "quantity": 1}]
        ).save()
        response = self.client.get(activity.get_absolute_url())
        self.assertContains(response, "Cuerda 60m")
        self.assertNotContains(response, 'id="weather"')

        response = self.client.get(reverse("activity_ics", args=[activity.pk]))
        self.assertEqual(response["Content-Type"], "text/calendar")

        response = self.client.post(reverse("activity_cancel", args=[activity.pk]))
        self.assertRedirects(response, activity.get_absolute_url())
        activity.refresh_from_db()
        self.assertTrue(activity.cancelled)
        self.assertEqual(Loan.objects.active().count(), 0)

    def test_only_involved_users_can_edit(self):
        activity = self._wizard().save()
        self.client.force_login(self.u1)
        response = self.client.get(reverse("activity_edit", args=[activity.pk]))
        self.assertEqual(response.status_code, 403)
