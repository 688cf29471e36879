import datetime
import uuid

from django.conf import settings
from django.contrib.auth.models import User
from django.db import models
from django.urls import reverse
from django.utils import timezone
from icalendar import Calendar, Event

from material.models import Material


def derive_needs_material(responsible_material_id, material_lines):
    """An activity needs loan bookkeeping iff someone answers for its material."""
    return bool(responsible_material_id) and len(material_lines) > 0


class ActivityQuerySet(models.QuerySet):
    def upcoming(self):
        return (
            self.filter(cancelled=False, end_date__gte=timezone.localdate())
            .order_by("start_date")
        )

    def past(self):
        return self.filter(end_date__lt=timezone.localdate()).order_by("-start_date")

    def needing_material(self):
        return self.filter(
            responsible_material__isnull=False, material_lines__isnull=False
        ).distinct()


class Activity(models.Model):
    class Type(models.TextChoices):
        CAVING = "caving", "Caving"
        CANYONING = "canyoning", "Canyoning"
        OUTDOOR = "outdoor", "Outdoor"

    class Subtype(models.TextChoices):
        EXPLORATION = "exploration", "Exploration"
        VISIT = "visit", "Visit"
        TRAINING = "training", "Training"
        SURVEY = "survey", "Survey"
        OTHER = "other", "Other"

    class Difficulty(models.TextChoices):
        LOW = "low", "Low"
        MEDIUM = "medium", "Medium"
        HIGH = "high", "High"

    class State(models.TextChoices):
        PLANNED = "planned", "Planned"
        IN_PROGRESS = "in_progress", "In progress"
        FINISHED = "finished", "Finished"
        CANCELLED = "cancelled", "Cancelled"

    LINK_CATEGORIES = [
        ("wikiloc", "Wikiloc tracks"),
        ("topography", "Topographies"),
        ("drive", "Drive files"),
        ("web", "Web pages"),
    ]

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    name = models.CharField(max_length=255)
    place = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    types = models.JSONField(default=list)
    subtypes = models.JSONField(default=list)
    difficulty = models.CharField(
        max_length=16, choices=Difficulty.choices, default=Difficulty.MEDIUM
    )
    start_date = models.DateField()
    end_date = models.DateField()
    municipality_code = models.CharField(
        max_length=16, blank=True, help_text="AEMET municipality code for the weather forecast"
    )

    creator = models.ForeignKey(User, on_delete=models.PROTECT, related_name="activities_created")
    responsible_activity = models.ForeignKey(
        User,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="activities_responsible",
    )
    responsible_material = models.ForeignKey(
        User,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="activities_material_responsible",
    )
    participants = models.ManyToManyField(User, related_name="activities", blank=True)
    links = models.JSONField(default=dict, blank=True)

    cancelled = models.BooleanField(default=False)
    version = models.PositiveIntegerField(default=1)

    objects = ActivityQuerySet.as_manager()

    class Meta:
        ordering = ["-start_date"]
        verbose_name_plural = "activities"

    @property
    def needs_material(self):
        return derive_needs_material(self.responsible_material_id, self.material_lines.all())

    @property
    def state(self):
        if self.cancelled:
            return self.State.CANCELLED
        today = timezone.localdate()
        if today > self.end_date:
            return self.State.FINISHED
        if today >= self.start_date:
            return self.State.IN_PROGRESS
        return self.State.PLANNED

    def get_state_display(self):
        return self.State(self.state).label

    def get_types_display(self):
        labels = dict(self.Type.choices)
        return ", ".join(labels.get(t, t) for t in self.types)

    def get_subtypes_display(self):
        labels = dict(self.Subtype.choices)
        return ", ".join(labels.get(t, t) for t in self.subtypes)

    def get_absolute_url(self):
        return reverse("activity_detail", args=[self.pk])

    def ics(self):
        _calendar = Calendar()
        _calendar.add("prodid", "-//Speleo Club//Activities//EN")
        _calendar.add("version", "2.0")

        _event = Event()
        _event["uid"] = str(self.id)
        _event.add("summary", self.name)
        _event.add("description", self.description)
        _event.add("dtstart", self.start_date)
        # DTEND is exclusive for all-day events
        _event.add("dtend", self.end_date + datetime.timedelta(days=1))
        _event.add("location", self.place)
        _event.add("url", settings.SITE_URL + self.get_absolute_url())

        _calendar.add_component(_event)

        return _calendar.to_ical().decode()

    def __str__(self):
        return self.name


class ActivityMaterial(models.Model):
    activity = models.ForeignKey(Activity, on_delete=models.CASCADE, related_name="material_lines")
    material = models.ForeignKey(
        Material, on_delete=models.PROTECT, related_name="activity_lines"
    )
    quantity = models.PositiveIntegerField(default=1)

    class Meta:
        unique_together = ("activity", "material")

    def __str__(self):
        return f"{self.quantity} x {self.material} for {self.activity}"
