from django.db import migrations

from configuration.models import DEFAULTS


def initialize_documents(apps, schema_editor):
    ConfigurationDocument = apps.get_model("configuration", "ConfigurationDocument")
    for name, data in DEFAULTS.items():
        ConfigurationDocument.objects.get_or_create(name=name, defaults={"data": dict(data)})


class Migration(migrations.Migration):

    dependencies = [
        ("configuration", "0001_initial"),
    ]

    operations = [
        migrations.RunPython(initialize_documents, migrations.RunPython.noop),
    ]
