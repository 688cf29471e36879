from django.core.management.base import BaseCommand
from django.db import transaction

from material.availability import parse_quantity
from material.models import Material


class Command(BaseCommand):
    help = "Recompute the available quantity of every material from its active loans"

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Print the differences without saving",
        )

    def handle(self, *args, **options):
        dry_run = options.get("dry_run", False)

        changed = 0
        with transaction.atomic():
            for material in Material.objects.select_for_update().order_by("pk"):
                if parse_quantity(material.total_quantity) is None:
                    self.stdout.write(
                        self.style.WARNING(
                            f"{material.label}: missing total quantity, "
                            f"using default {material.effective_total}"
                        )
                    )

                available = material.compute_availability()
                if available == material.available_quantity:
                    continue

                changed += 1
                self.stdout.write(
                    f"{material.label}: available {material.available_quantity} -> {available}"
                )
                if not dry_run:
                    material.available_quantity = available
                    material.save(update_fields=["available_quantity", "updated_at"])

        verb = "would change" if dry_run else "changed"
        self.stdout.write(self.style.SUCCESS(f"{changed} material(s) {verb}"))
