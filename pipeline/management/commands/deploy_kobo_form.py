"""Import an XLSForm workbook into KoboToolbox.

Usage::

    python manage.py deploy_kobo_form forms/release/onco_patient_questionnaire.xlsx --uid aBcD1234
"""

from __future__ import annotations

from django.core.management.base import BaseCommand, CommandError

from pipeline.services.kobo import KoboAPIError, kobo_deploy_form


class Command(BaseCommand):
    help = "Upload an XLSForm workbook to KoboToolbox through the imports API."

    def add_arguments(self, parser) -> None:
        parser.add_argument('file', help='Path to the XLSForm workbook')
        parser.add_argument('--uid', help='Replace the content of this existing asset')

    def handle(self, *args, **options) -> None:
        try:
            result = kobo_deploy_form(options['file'], uid=options.get('uid'))
        except FileNotFoundError as exc:
            raise CommandError(f"No such file: {options['file']}") from exc
        except KoboAPIError as exc:
            raise CommandError(str(exc)) from exc
        self.stdout.write(self.style.SUCCESS(f"Import {result.get('uid', '')} submitted ({result.get('status', 'queued')})."))
