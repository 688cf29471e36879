import csv
import logging

from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from material.availability import coerce_quantity, parse_quantity
from material.models import Material

# exports of the previous catalog use Spanish values
TYPE_ALIASES = {
    "cuerda": Material.Type.ROPE,
    "anclaje": Material.Type.ANCHOR,
    "varios": Material.Type.MISC,
}
STATE_ALIASES = {
    "disponible": Material.State.AVAILABLE,
    "prestado": Material.State.AVAILABLE,
    "mantenimiento": Material.State.REVIEW,
    "revision": Material.State.REVIEW,
    "baja": Material.State.UNAVAILABLE,
    "perdido": Material.State.UNAVAILABLE,
}


def normalize_choice(value, choices, aliases, default):
    value = (value or "").strip().lower()
    if value in choices:
        return value
    if value in aliases:
        return aliases[value]
    logging.warning(f"Unknown value {value!r}, using {default}")
    return default


class Command(BaseCommand):
    help = (
        "Import materials from a CSV file with the columns "
        "name, type, code, description, total_quantity, state"
    )

    def add_arguments(self, parser):
        parser.add_argument("path", help="CSV file to import")
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Report what would be imported without writing anything",
        )

    def handle(self, *args, **options):
        dry_run = options.get("dry_run", False)

        try:
            with open(options["path"], newline="", encoding="utf-8") as f:
                rows = list(csv.DictReader(f))
        except OSError as e:
            raise CommandError(f"Cannot read {options['path']}: {e}")

        created, updated, defects = 0, 0, 0
        with transaction.atomic():
            for line, row in enumerate(rows, start=2):
                name = (row.get("name") or "").strip()
                if not name:
                    self.stderr.write(f"Line {line}: skipped, no name")
                    continue

                material_type = normalize_choice(
                    row.get("type"), Material.Type.values, TYPE_ALIASES, Material.Type.MISC
                )
                raw_total = row.get("total_quantity")
                if parse_quantity(raw_total) is None:
                    defects += 1
                total = coerce_quantity(raw_total, material_type, label=name)
                values = {
                    "name": name,
                    "type": material_type,
                    "description": (row.get("description") or "").strip(),
                    "total_quantity": total,
                    "state": normalize_choice(
                        row.get("state") or Material.State.AVAILABLE,
                        Material.State.values,
                        STATE_ALIASES,
                        Material.State.REVIEW,
                    ),
                }
                code = (row.get("code") or "").strip()

                if dry_run:
                    self.stdout.write(f"Would import {name} ({material_type}) x{total}")
                    continue

                if code:
                    material, was_created = Material.objects.update_or_create(
                        code=code, defaults=values
                    )
                else:
                    material, was_created = Material.objects.create(**values), True
                material.refresh_availability()

                if was_created:
                    created += 1
                else:
                    updated += 1

        self.stdout.write(
            self.style.SUCCESS(
                f"{created} created, {updated} updated, "
                f"{defects} quantity defect(s) replaced by defaults"
            )
        )
