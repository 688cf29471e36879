import logging
from dataclasses import dataclass, field

from django.db import transaction
from django.utils import timezone

from material.models import Loan, Material
from material.selection import group_by_type
from material.tasks import notify_loan_created


class LoanError(Exception):
    pass


class InsufficientStock(LoanError):
    def __init__(self, material, requested, available):
        self.material = material
        self.requested = requested
        self.available = available
        super().__init__(
            f"Not enough stock of {material}: requested {requested}, available {available}"
        )


class MaterialUnavailable(LoanError):
    def __init__(self, material):
        self.material = material
        super().__init__(f"{material} is {material.get_state_display().lower()}")


@dataclass
class ReconcileResult:
    created: list = field(default_factory=list)
    updated: list = field(default_factory=list)
    released: list = field(default_factory=list)

    @property
    def changed(self):
        return bool(self.created or self.updated or self.released)


class MaterialCatalog:
    """Read access to the material catalog."""

    def list_selectable(self):
        return list(Material.objects.filter(state=Material.State.AVAILABLE).order_by("type", "name"))

    def get(self, material_id):
        return Material.objects.get(pk=material_id)

    def in_bulk(self, material_ids):
        return Material.objects.in_bulk(list(material_ids))

    def grouped(self, materials=None):
        if materials is None:
            materials = self.list_selectable()
        return group_by_type(materials)


class LoanLedger:
    """
    Loan writes. Each public method is one transaction: the affected
    materials are locked, loans are written and the cached availability of
    every touched material is recomputed before commit.
    """

    def _lock(self, material_ids):
        return Material.objects.select_for_update().in_bulk(list(material_ids))

    def _notify(self, loans):
        for loan in loans:
            transaction.on_commit(lambda loan_id=loan.id: notify_loan_created.delay(loan_id))

    @transaction.atomic
    def checkout(self, user, lines, expected_return, note="", activity=None):
        """Manual loans; ``lines`` is a list of (material_id, quantity)."""
        lines = [(material_id, quantity) for material_id, quantity in lines if quantity]
        materials = self._lock({material_id for material_id, _ in lines})
        loans = []
        for material_id, quantity in lines:
            material = materials[material_id]
            if material.state != Material.State.AVAILABLE:
                raise MaterialUnavailable(material)
            available = material.compute_availability()
            if quantity > available:
                raise InsufficientStock(material, quantity, available)
            loans.append(
                Loan.objects.create(
                    material=material,
                    user=user,
                    activity=activity,
                    quantity=quantity,
                    expected_return=expected_return,
                    checkout_note=note,
                )
            )
            material.refresh_availability()
        self._notify(loans)
        logging.info(f"{user} borrowed {len(loans)} item(s)")
        return loans

    @transaction.atomic
    def return_loans(self, loans, note=""):
        loans = list(
            Loan.objects.select_for_update().filter(
                pk__in=[loan.pk for loan in loans], active=True
            )
        )
        materials = self._lock({loan.material_id for loan in loans})
        now = timezone.now()
        for loan in loans:
            loan.active = False
            loan.returned_at = now
            loan.return_note = note
            loan.save()
        for material in materials.values():
            material.refresh_availability()
        return loans

    @transaction.atomic
    def extend(self, loan, new_date):
        loan = Loan.objects.select_for_update().get(pk=loan.pk)
        if not loan.active:
            raise LoanError(f"Loan {loan} has already been returned")
        if new_date < timezone.localdate(loan.borrowed_at):
            raise LoanError("The return date cannot be before the loan started")
        loan.expected_return = new_date
        loan.save(update_fields=["expected_return", "updated_at"])
        return loan

    @transaction.atomic
    def reconcile_activity(self, activity):
        """
        Make the active loans of ``activity`` match its material lines.

        One active loan per (activity, material), borrowed by the
        responsible-for-material and due at the end of the activity. Loans
        for materials no longer listed, or for an activity that no longer
        needs material, are released. Running it twice changes nothing.
        """
        existing = {
            loan.material_id: loan
            for loan in Loan.objects.select_for_update().active().for_activity(activity)
        }
        if activity.cancelled or not activity.needs_material:
            lines = {}
        else:
            lines = {line.material_id: line.quantity for line in activity.material_lines.all()}

        materials = self._lock(set(existing) | set(lines))
        result = ReconcileResult()
        now = timezone.now()

        for material_id, loan in existing.items():
            if material_id not in lines:
                loan.active = False
                loan.returned_at = now
                loan.return_note = f"Released: no longer assigned to activity {activity}"
                loan.save()
                result.released.append(loan)

        borrower = activity.responsible_material
        for material_id, quantity in lines.items():
            material = materials[material_id]
            loan = existing.get(material_id)
            held = loan.quantity if loan is not None else 0
            available = material.compute_availability() + held
            if quantity > available:
                raise InsufficientStock(material, quantity, available)

            if loan is None:
                if material.state != Material.State.AVAILABLE:
                    raise MaterialUnavailable(material)
                loan = Loan.objects.create(
                    material=material,
                    user=borrower,
                    activity=activity,
                    quantity=quantity,
                    expected_return=activity.end_date,
                    checkout_note=f"Activity: {activity.name}",
                )
                result.created.append(loan)
            elif (
                loan.quantity != quantity
                or loan.user_id != borrower.id
                or loan.expected_return != activity.end_date
            ):
                loan.quantity = quantity
                loan.user = borrower
                loan.expected_return = activity.end_date
                loan.save()
                result.updated.append(loan)

        if result.changed:
            for material in materials.values():
                material.refresh_availability()
            logging.info(
                f"Loans for activity {activity.pk}: {len(result.created)} created, "
                f"{len(result.updated)} updated, {len(result.released)} released"
            )
        self._notify(result.created)
        return result
