import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("material", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Activity",
            fields=[
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4, editable=False, primary_key=True, serialize=False
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("name", models.CharField(max_length=255)),
                ("place", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True)),
                ("types", models.JSONField(default=list)),
                ("subtypes", models.JSONField(default=list)),
                (
                    "difficulty",
                    models.CharField(
                        choices=[("low", "Low"), ("medium", "Medium"), ("high", "High")],
                        default="medium",
                        max_length=16,
                    ),
                ),
                ("start_date", models.DateField()),
                ("end_date", models.DateField()),
                (
                    "municipality_code",
                    models.CharField(
                        blank=True,
                        help_text="AEMET municipality code for the weather forecast",
                        max_length=16,
                    ),
                ),
                ("links", models.JSONField(blank=True, default=dict)),
                ("cancelled", models.BooleanField(default=False)),
                ("version", models.PositiveIntegerField(default=1)),
                (
                    "creator",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="activities_created",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "responsible_activity",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="activities_responsible",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "responsible_material",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="activities_material_responsible",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "participants",
                    models.ManyToManyField(
                        blank=True, related_name="activities", to=settings.AUTH_USER_MODEL
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "activities",
                "ordering": ["-start_date"],
            },
        ),
        migrations.CreateModel(
            name="ActivityMaterial",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True, primary_key=True, serialize=False, verbose_name="ID"
                    ),
                ),
                ("quantity", models.PositiveIntegerField(default=1)),
                (
                    "activity",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="material_lines",
                        to="activities.activity",
                    ),
                ),
                (
                    "material",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="activity_lines",
                        to="material.material",
                    ),
                ),
            ],
            options={
                "unique_together": {("activity", "material")},
            },
        ),
    ]
