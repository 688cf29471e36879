import datetime

from django.contrib.auth.models import User
from django.db import models
from django.db.models import Q
from django.utils import timezone

from material.availability import coerce_quantity, compute_available


class Material(models.Model):
    class Type(models.TextChoices):
        ROPE = "rope", "Rope"
        ANCHOR = "anchor", "Anchor"
        MISC = "misc", "Miscellaneous"

    class State(models.TextChoices):
        AVAILABLE = "available", "Available"
        UNAVAILABLE = "unavailable", "Unavailable"
        REVIEW = "review", "Under review"

    name = models.CharField(max_length=255)
    type = models.CharField(max_length=16, choices=Type.choices, default=Type.MISC)
    state = models.CharField(max_length=16, choices=State.choices, default=State.AVAILABLE)
    code = models.CharField(max_length=64, blank=True)
    description = models.TextField(blank=True)

    # null only for legacy/imported records, see material.availability
    total_quantity = models.PositiveIntegerField(null=True, blank=True)
    available_quantity = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["type", "name"]

    @property
    def label(self):
        return f"{self.name} ({self.code})" if self.code else self.name

    @property
    def effective_total(self):
        return coerce_quantity(self.total_quantity, self.type, label=self.label)

    def compute_availability(self):
        if self.pk is None:
            quantities = []
        else:
            quantities = self.loans.filter(active=True).values_list("quantity", flat=True)
        return compute_available(self.total_quantity, quantities, self.type, label=self.label)

    def refresh_availability(self, save=True):
        """Recompute the cached available quantity from the active loans."""
        self.available_quantity = self.compute_availability()
        if save:
            self.save(update_fields=["available_quantity", "updated_at"])
        return self.available_quantity

    def retire(self):
        self.state = self.State.UNAVAILABLE
        self.save(update_fields=["state", "updated_at"])

    def __str__(self):
        return self.name


class LoanQuerySet(models.QuerySet):
    def active(self):
        return self.filter(active=True)

    def returned(self):
        return self.filter(active=False)

    def overdue(self, today=None):
        today = today or timezone.localdate()
        return self.active().filter(expected_return__lt=today)

    def due_within(self, days, today=None):
        today = today or timezone.localdate()
        return self.active().filter(
            expected_return__gte=today,
            expected_return__lte=today + datetime.timedelta(days=days),
        )

    def for_activity(self, activity):
        return self.filter(activity=activity)

    def for_material(self, material):
        return self.filter(material=material)

    def statistics(self, today=None):
        today = today or timezone.localdate()
        days_late = []
        for loan in self.returned().filter(
            returned_at__isnull=False, expected_return__isnull=False
        ):
            returned_on = timezone.localdate(loan.returned_at)
            if returned_on > loan.expected_return:
                days_late.append((returned_on - loan.expected_return).days)

        return {
            "total": self.count(),
            "active": self.active().count(),
            "returned": self.returned().count(),
            "overdue": self.overdue(today=today).count(),
            "average_days_late": sum(days_late) / len(days_late) if days_late else 0,
        }


class Loan(models.Model):
    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        RETURNED = "returned", "Returned"
        OVERDUE = "overdue", "Overdue"

    material = models.ForeignKey(Material, on_delete=models.PROTECT, related_name="loans")
    user = models.ForeignKey(User, on_delete=models.PROTECT, related_name="loans")
    activity = models.ForeignKey(
        "activities.Activity",
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="loans",
    )

    quantity = models.PositiveIntegerField(default=1)
    active = models.BooleanField(default=True)
    borrowed_at = models.DateTimeField(auto_now_add=True)
    returned_at = models.DateTimeField(null=True, blank=True)
    expected_return = models.DateField(null=True, blank=True)

    checkout_note = models.TextField(blank=True)
    return_note = models.TextField(blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = LoanQuerySet.as_manager()

    class Meta:
        ordering = ["-borrowed_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["activity", "material"],
                condition=Q(active=True),
                name="unique_active_loan_per_activity_material",
            )
        ]

    @property
    def status(self):
        """Overdue is derived at read time, it is never stored."""
        if not self.active:
            return self.Status.RETURNED
        if self.expected_return is not None and self.expected_return < timezone.localdate():
            return self.Status.OVERDUE
        return self.Status.ACTIVE

    @property
    def is_overdue(self):
        return self.status == self.Status.OVERDUE

    def __str__(self):
        return f"{self.user} {self.material}"
