import datetime
import os
import tempfile
from io import StringIO
from unittest.mock import patch

from django.contrib.auth.models import Permission, User
from django.core import mail
from django.core.management import call_command
from django.test import SimpleTestCase, TestCase
from django.urls import reverse
from django.utils import timezone

from configuration.models import ConfigurationDocument
from material.availability import coerce_quantity, compute_available, parse_quantity
from material.models import Loan, Material
from material.selection import ALL, MaterialSelection, SelectionError, SelectorState
from material.services import InsufficientStock, LoanLedger, MaterialCatalog, MaterialUnavailable
from material.tasks import notify_loan_created, send_overdue_reminders


class AvailabilityTests(SimpleTestCase):
    def test_total_minus_active_loans(self):
        self.assertEqual(compute_available(10, [3, 2], "anchor"), 5)

    def test_never_negative(self):
        self.assertEqual(compute_available(2, [3], "rope"), 0)

    def test_missing_total_uses_type_default(self):
        with self.assertLogs(level="WARNING") as logs:
            self.assertEqual(compute_available(None, [], "anchor", label="Spits"), 10)
        self.assertIn("Spits", logs.output[0])

    def test_non_numeric_and_nan_totals(self):
        with self.assertLogs(level="WARNING"):
            self.assertEqual(compute_available("abc", [], "rope"), 1)
            self.assertEqual(compute_available(float("nan"), [], "misc"), 1)
            self.assertEqual(compute_available(-4, [], "anchor"), 10)
            self.assertEqual(compute_available(2.5, [], "rope"), 1)

    def test_numeric_strings_are_accepted(self):
        self.assertEqual(compute_available("4", ["1"], "rope"), 3)
        self.assertEqual(parse_quantity(" 7.0 "), 7)

    def test_booleans_are_not_quantities(self):
        self.assertIsNone(parse_quantity(True))

    def test_invalid_loan_quantity_counts_as_one(self):
        with self.assertLogs(level="WARNING"):
            self.assertEqual(compute_available(5, [0, None, 2], "rope"), 1)

    def test_unknown_type_falls_back(self):
        with self.assertLogs(level="WARNING"):
            self.assertEqual(coerce_quantity(None, "helmet"), 1)


def _material(pk, name, material_type, code="", description="", available=1):
    return Material(
        id=pk,
        name=name,
        type=material_type,
        code=code,
        description=description,
        total_quantity=available,
        available_quantity=available,
    )


class SelectorStateTests(SimpleTestCase):
    def setUp(self):
        self.materials = [
            _material(1, "Cuerda Petzl 60m", "rope", code="C-01"),
            _material(2, "Cuerda Edelrid 30m", "rope", code="C-02"),
            _material(3, "Spit Petzl", "anchor", code="A-01", available=20),
            _material(4, "Saca", "misc", description="Petzl transport bag"),
        ]

    def test_search_matches_name_code_and_description(self):
        state = SelectorState()
        state.set_search("petzl")
        self.assertEqual([m.id for m in state.filter(self.materials)], [1, 3, 4])
        state.set_search("c-02")
        self.assertEqual([m.id for m in state.filter(self.materials)], [2])

    def test_search_survives_tab_switch(self):
        state = SelectorState()
        state.switch_tab("rope")
        state.set_search("petzl")
        self.assertEqual([m.id for m in state.filter(self.materials)], [1])

        state.switch_tab("anchor")
        self.assertEqual(state.search, "petzl")
        self.assertEqual([m.id for m in state.filter(self.materials)], [3])

        state.switch_tab(ALL)
        self.assertEqual([m.id for m in state.filter(self.materials)], [1, 3, 4])

    def test_search_keeps_only_matching_item_in_every_tab(self):
        materials = [
            _material(10, "Cuerda 60m", "rope"),
            _material(11, "Mosquetón", "misc"),
        ]
        state = SelectorState()
        state.set_search("cuerda")
        for tab in (ALL, "rope", "anchor", "misc"):
            state.switch_tab(tab)
            names = [m.name for m in state.filter(materials)]
            self.assertNotIn("Mosquetón", names)
            self.assertEqual(names, ["Cuerda 60m"] if tab in (ALL, "rope") else [])

    def test_unknown_tab(self):
        with self.assertRaises(SelectionError):
            SelectorState().switch_tab("helmets")

    def test_round_trip_through_session_data(self):
        state = SelectorState()
        state.switch_tab("misc")
        state.set_search("saca")
        restored = SelectorState.from_dict(state.to_dict())
        self.assertEqual(restored.active_tab, "misc")
        self.assertEqual(restored.search, "saca")
        self.assertEqual(SelectorState.from_dict(None).active_tab, ALL)


class MaterialSelectionTests(SimpleTestCase):
    def setUp(self):
        self.rope = _material(1, "Cuerda 60m", "rope", available=2)
        self.spits = _material(2, "Spits", "anchor", available=10)
        self.changes = []
        self.selection = MaterialSelection(on_change=self.changes.append)

    def test_every_change_is_pushed(self):
        self.selection.add(self.rope)
        self.selection.add(self.spits, 4)
        self.selection.remove(self.rope.id)
        self.assertEqual(len(self.changes), 3)
        self.assertEqual(self.changes[-1], [{"material_id": 2, "quantity": 4}])

    def test_selected_units_reduce_what_is_shown(self):
        self.selection.add(self.rope)
        visible = dict(
            (m.id, units) for m, units in self.selection.visible([self.rope, self.spits], SelectorState())
        )
        self.assertEqual(visible, {1: 1, 2: 10})

        self.selection.add(self.rope)
        visible = [m.id for m, _ in self.selection.visible([self.rope], SelectorState())]
        self.assertEqual(visible, [])

    def test_cannot_select_more_than_available(self):
        with self.assertRaises(SelectionError):
            self.selection.add(self.rope, 3)
        self.assertEqual(self.changes, [])

    def test_units_held_by_the_activity_are_selectable(self):
        selection = MaterialSelection(
            [{"material_id": 1, "quantity": 2}], held={1: 2}
        )
        self.rope.available_quantity = 0
        self.assertEqual(selection.selectable(self.rope), 0)
        selection.set_quantity(self.rope, 1)
        self.assertEqual(selection.selectable(self.rope), 1)

    def test_unavailable_material_cannot_be_added(self):
        self.rope.state = Material.State.REVIEW
        with self.assertRaises(SelectionError):
            self.selection.add(self.rope)


class LoanLedgerTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="espeleo", email="espeleo@example.com")
        self.rope = Material.objects.create(
            name="Cuerda 60m", type="rope", code="C-01", total_quantity=3, available_quantity=3
        )
        self.spits = Material.objects.create(
            name="Spits", type="anchor", code="A-01", total_quantity=20, available_quantity=20
        )
        self.due = timezone.localdate() + datetime.timedelta(days=7)

    @patch("material.services.notify_loan_created")
    def test_checkout_updates_availability_and_notifies_after_commit(self, mock_task):
        with self.captureOnCommitCallbacks(execute=True):
            loans = LoanLedger().checkout(self.user, [(self.rope.id, 2), (self.spits.id, 5)], self.due)

        self.assertEqual(len(loans), 2)
        self.rope.refresh_from_db()
        self.spits.refresh_from_db()
        self.assertEqual(self.rope.available_quantity, 1)
        self.assertEqual(self.spits.available_quantity, 15)
        self.assertEqual(mock_task.delay.call_count, 2)

    def test_insufficient_stock_writes_nothing(self):
        with self.assertRaises(InsufficientStock):
            LoanLedger().checkout(self.user, [(self.spits.id, 5), (self.rope.id, 4)], self.due)

        self.assertEqual(Loan.objects.count(), 0)
        self.spits.refresh_from_db()
        self.assertEqual(self.spits.available_quantity, 20)

    def test_material_under_review_cannot_be_borrowed(self):
        self.rope.state = Material.State.REVIEW
        self.rope.save()
        with self.assertRaises(MaterialUnavailable):
            LoanLedger().checkout(self.user, [(self.rope.id, 1)], self.due)

    def test_return_restores_availability(self):
        loans = LoanLedger().checkout(self.user, [(self.rope.id, 3)], self.due)
        returned = LoanLedger().return_loans(loans, "all dry")

        self.assertEqual(len(returned), 1)
        loan = Loan.objects.get()
        self.assertFalse(loan.active)
        self.assertEqual(loan.return_note, "all dry")
        self.assertEqual(loan.status, Loan.Status.RETURNED)
        self.rope.refresh_from_db()
        self.assertEqual(self.rope.available_quantity, 3)

        # returning again is a no-op
        self.assertEqual(LoanLedger().return_loans(loans), [])

    def test_overdue_is_derived(self):
        loan = LoanLedger().checkout(self.user, [(self.rope.id, 1)], self.due)[0]
        self.assertEqual(loan.status, Loan.Status.ACTIVE)
        Loan.objects.filter(pk=loan.pk).update(
            expected_return=timezone.localdate() - datetime.timedelta(days=1)
        )
        loan.refresh_from_db()
        self.assertTrue(loan.is_overdue)
        self.assertEqual(list(Loan.objects.overdue()), [loan])

    def test_statistics(self):
        loans = LoanLedger().checkout(self.user, [(self.rope.id, 1), (self.spits.id, 1)], self.due)
        Loan.objects.filter(pk=loans[0].pk).update(
            expected_return=timezone.localdate() - datetime.timedelta(days=4)
        )
        LoanLedger().return_loans([loans[0]])

        stats = Loan.objects.statistics()
        self.assertEqual(stats["total"], 2)
        self.assertEqual(stats["active"], 1)
        self.assertEqual(stats["returned"], 1)
        self.assertEqual(stats["average_days_late"], 4)

    def test_catalog_lists_available_material_only(self):
        Material.objects.create(name="Old rope", type="rope", state=Material.State.UNAVAILABLE)
        catalog = MaterialCatalog()
        self.assertEqual(
            [m.name for m in catalog.list_selectable()], ["Spits", "Cuerda 60m"]
        )
        self.assertEqual([m.name for m in catalog.grouped()["rope"]], ["Cuerda 60m"])


class NotificationTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="espeleo", email="espeleo@example.com")
        self.rope = Material.objects.create(name="Cuerda 60m", type="rope", total_quantity=2)

    def _loan(self, days):
        return Loan.objects.create(
            material=self.rope,
            user=self.user,
            expected_return=timezone.localdate() + datetime.timedelta(days=days),
        )

    def test_loan_email_disabled_by_default(self):
        notify_loan_created(self._loan(3).id)
        self.assertEqual(len(mail.outbox), 0)

    def test_loan_email(self):
        ConfigurationDocument.objects.create(
            name="notifications", data={"loan_email_enabled": True}
        )
        notify_loan_created(self._loan(3).id)
        self.assertEqual(len(mail.outbox), 1)
        self.assertIn("Cuerda 60m", mail.outbox[0].subject)
        self.assertEqual(mail.outbox[0].to, ["espeleo@example.com"])

    def test_overdue_reminders_one_email_per_borrower(self):
        ConfigurationDocument.objects.create(
            name="notifications", data={"overdue_reminders_enabled": True}
        )
        self._loan(-2)
        self._loan(-1)
        self._loan(5)
        send_overdue_reminders()
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].body.count("Cuerda 60m"), 2)


class MaterialViewTests(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="espeleo", password="x")
        self.rope = Material.objects.create(
            name="Cuerda 60m", type="rope", total_quantity=3, available_quantity=3
        )

    def test_catalog_requires_permission(self):
        self.client.force_login(self.user)
        response = self.client.get(reverse("item_list"))
        self.assertEqual(response.status_code, 403)

        self.user.user_permissions.add(Permission.objects.get(codename="view_material"))
        self.user = User.objects.get(pk=self.user.pk)
        self.client.force_login(self.user)
        response = self.client.get(reverse("item_list"))
        self.assertEqual(response.status_code, 200)
        self.assertContains(response, "Cuerda 60m")

    @patch("material.services.notify_loan_created")
    def test_checkout_flow(self, mock_task):
        self.user.user_permissions.add(Permission.objects.get(codename="view_material"))
        self.client.force_login(self.user)
        response = self.client.post(
            reverse("checkout"),
            {
                "form-TOTAL_FORMS": "1",
                "form-INITIAL_FORMS": "1",
                "form-0-material_id": str(self.rope.id),
                "form-0-quantity": "2",
                "expected_return": (timezone.localdate() + datetime.timedelta(days=3)).isoformat(),
                "note": "weekend",
            },
        )
        self.assertRedirects(response, reverse("my_loans"))
        self.rope.refresh_from_db()
        self.assertEqual(self.rope.available_quantity, 1)

        response = self.client.get(reverse("my_loans"))
        self.assertContains(response, "Cuerda 60m")

    def test_extend_own_loan(self):
        loan = Loan.objects.create(
            material=self.rope, user=self.user, expected_return=timezone.localdate()
        )
        self.client.force_login(self.user)
        new_date = timezone.localdate() + datetime.timedelta(days=10)
        response = self.client.post(
            reverse("extend_loan", args=[loan.pk]), {"expected_return": new_date.isoformat()}
        )
        self.assertRedirects(response, reverse("my_loans"))
        loan.refresh_from_db()
        self.assertEqual(loan.expected_return, new_date)


class CommandTests(TestCase):
    def _csv(self, content):
        handle, path = tempfile.mkstemp(suffix=".csv")
        with os.fdopen(handle, "w", encoding="utf-8") as f:
            f.write(content)
        self.addCleanup(os.remove, path)
        return path

    def test_import_materials_coerces_bad_quantities(self):
        path = self._csv(
            "name,type,code,description,total_quantity,state\n"
            "Cuerda 60m,cuerda,C-01,,3,disponible\n"
            "Spits,anclaje,A-01,,NaN,disponible\n"
            ",varios,X-01,,1,\n"
        )
        with self.assertLogs(level="WARNING"):
            call_command("import_materials", path, stdout=StringIO(), stderr=StringIO())

        self.assertEqual(Material.objects.count(), 2)
        spits = Material.objects.get(code="A-01")
        self.assertEqual(spits.type, Material.Type.ANCHOR)
        self.assertEqual(spits.total_quantity, 10)
        self.assertEqual(spits.available_quantity, 10)

    def test_import_dry_run_writes_nothing(self):
        path = self._csv("name,type,code,description,total_quantity,state\nSaca,varios,M-1,,2,\n")
        call_command("import_materials", path, "--dry-run", stdout=StringIO())
        self.assertEqual(Material.objects.count(), 0)

    def test_recalculate_availability(self):
        user = User.objects.create_user(username="espeleo")
        rope = Material.objects.create(name="Cuerda", type="rope", total_quantity=5, available_quantity=5)
        Loan.objects.create(material=rope, user=user, quantity=2)
        call_command("recalculate_availability", stdout=StringIO())
        rope.refresh_from_db()
        self.assertEqual(rope.available_quantity, 3)


class LoanOverviewTests(TestCase):
    def test_overview_lists_overdue_and_requires_permission(self):
        user = User.objects.create_user(username="guarda")
        rope = Material.objects.create(name="Cuerda 60m", type="rope", total_quantity=2)
        Loan.objects.create(
            material=rope,
            user=user,
            expected_return=timezone.localdate() - datetime.timedelta(days=2),
        )
        self.client.force_login(user)
        self.assertEqual(self.client.get(reverse("loan_overview")).status_code, 403)

        user.user_permissions.add(Permission.objects.get(codename="view_loan"))
        response = self.client.get(reverse("loan_overview"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.context["statistics"]["overdue"], 1)
        self.assertContains(response, "Cuerda 60m")
