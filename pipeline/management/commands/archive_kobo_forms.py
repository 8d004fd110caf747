"""Archive every deployed version of a KoboToolbox form.

Looks the form up by name, lists its versions and writes one XLSForm
workbook per deployed version to ``{directory}/vN/{file name}``.  Versions
that are already archived are left untouched.

Usage::

    python manage.py archive_kobo_forms --form-name "Oncology patient questionnaire" \
        --file-name onco_patient_questionnaire.xlsx --directory forms/archive/patient
"""

from __future__ import annotations

from pathlib import Path

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from pipeline.services.form_archive import archive_form_versions
from pipeline.services.kobo import (
    KoboAPIError,
    kobo_asset_list,
    kobo_asset_version_list,
    kobo_get_uid,
    kobo_get_version_urls,
)


class Command(BaseCommand):
    help = "Archive deployed versions of a Kobo form as XLSForm workbooks."

    def add_arguments(self, parser) -> None:
        parser.add_argument('--form-name', required=True, help='Name of the form on KoboToolbox')
        parser.add_argument('--file-name', help='Workbook name inside each version folder')
        parser.add_argument('--directory', help='Archive directory (defaults to FORMS_ARCHIVE_DIR)')
        parser.add_argument('--title', help='Form title written to the settings sheet')

    def handle(self, *args, **options) -> None:
        form_name: str = options['form_name']
        file_name: str = options.get('file_name') or f"{form_name.lower().replace(' ', '_')}.xlsx"
        directory = Path(options.get('directory') or settings.FORMS_ARCHIVE_DIR)

        try:
            uid = kobo_get_uid(kobo_asset_list(), form_name)
            if not uid:
                raise CommandError(f"No Kobo form named {form_name!r}.")
            version_urls = kobo_get_version_urls(kobo_asset_version_list(uid))
            if not version_urls:
                self.stdout.write(self.style.WARNING(f"Form {form_name!r} has no deployed versions."))
                return
            paths = archive_form_versions(
                version_urls,
                file_name=file_name,
                form_title=options.get('title') or form_name,
                directory=directory,
            )
        except KoboAPIError as exc:
            raise CommandError(f"Failed to archive {form_name!r}: {exc}") from exc

        for version, path in paths.items():
            self.stdout.write(f"{version}: {path}")
        self.stdout.write(self.style.SUCCESS(f"Archived {len(paths)} versions of {form_name!r}."))
