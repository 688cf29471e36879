import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    dependencies = [
        ("activities", "0001_initial"),
        ("material", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="loan",
            name="activity",
            field=models.ForeignKey(
                blank=True,
                null=True,
                on_delete=django.db.models.deletion.SET_NULL,
                related_name="loans",
                to="activities.activity",
            ),
        ),
        migrations.AddConstraint(
            model_name="loan",
            constraint=models.UniqueConstraint(
                condition=models.Q(("active", True)),
                fields=("activity", "material"),
                name="unique_active_loan_per_activity_material",
            ),
        ),
    ]
