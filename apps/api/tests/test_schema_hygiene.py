"""
Schema Hygiene Tests

The suite runs with --nomigrations, so nothing else notices when a model
drifts from its migration files. These tests load the real migrations.
"""
from io import StringIO

import pytest
from django.core.management import call_command


@pytest.mark.django_db
class TestMigrationsMatchModels:

    def test_no_pending_model_changes(self, settings):
        # Undo the --nomigrations override so the loader reads the files on disk
        settings.MIGRATION_MODULES = {}
        output = StringIO()

        try:
            call_command('makemigrations', '--check', '--dry-run', stdout=output, stderr=output)
        except SystemExit as exc:
            pytest.fail(
                f"❌ Models changed without a migration (exit {exc.code}):\n{output.getvalue()}"
            )

