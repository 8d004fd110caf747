"""Download a KoboToolbox form as XLSForm or XForm.

Usage::

    python manage.py retrieve_kobo_form aBcD1234 --type xml --output forms/onco_patient_survey.xml
"""

from __future__ import annotations

from django.core.management.base import BaseCommand, CommandError

from pipeline.services.kobo import FORM_TYPES, KoboAPIError, kobo_retrieve_form


class Command(BaseCommand):
    help = "Download the XLSForm or XForm definition of a Kobo asset."

    def add_arguments(self, parser) -> None:
        parser.add_argument('uid', help='Asset uid')
        parser.add_argument('--type', dest='form_type', choices=FORM_TYPES, default='xls')
        parser.add_argument('--output', help='Destination file')

    def handle(self, *args, **options) -> None:
        try:
            path = kobo_retrieve_form(options['uid'], form_type=options['form_type'], destination=options.get('output'))
        except KoboAPIError as exc:
            raise CommandError(str(exc)) from exc
        self.stdout.write(self.style.SUCCESS(f"Saved {path}"))
