"""Generate patient identifiers and write the external-select CSV.

Usage::

    python manage.py write_patient_list --n 400 --pattern numeric --sequential \
        --prefix 2025 --name-key --enumerators nurse01 nurse02 --per-enumerator 200
"""

from __future__ import annotations

from django.conf import settings
from django.core.management.base import BaseCommand, CommandError

from pipeline.services.patients import (
    ID_PATTERNS,
    create_patient_id,
    create_patient_list,
    write_patient_list,
)


class Command(BaseCommand):
    help = "Create patient identifiers and write patient_list.csv."

    def add_arguments(self, parser) -> None:
        parser.add_argument('--n', type=int, default=settings.PATIENT_ID_COUNT, help='Number of identifiers')
        parser.add_argument('--pattern', choices=sorted(ID_PATTERNS), default='alphanumeric')
        parser.add_argument('--sequential', action='store_true', help='Sequential numeric identifiers')
        parser.add_argument('--prefix', help='Prefix for every identifier (e.g. the study year)')
        parser.add_argument('--suffix', help='Suffix for every identifier')
        parser.add_argument('--seed', type=int, default=settings.PATIENT_ID_SEED, help='Random seed')
        parser.add_argument('--language', default=settings.PATIENT_LIST_LANGUAGE, help='Second label language')
        parser.add_argument('--name-key', action='store_true', help='Add a name_key column')
        parser.add_argument('--enumerators', nargs='*', help='Enumerator codes used as choice filter')
        parser.add_argument('--per-enumerator', type=int, help='Patients assigned to each enumerator')
        parser.add_argument('--directory', help='Output directory (defaults to FORMS_MEDIA_DIR)')

    def handle(self, *args, **options) -> None:
        choice_filter = None
        if options.get('enumerators'):
            per_enumerator = options.get('per_enumerator') or options['n'] // len(options['enumerators'])
            choice_filter = [code for code in options['enumerators'] for _ in range(per_enumerator)]

        try:
            ids = create_patient_id(
                n=options['n'],
                pattern=options['pattern'],
                sequential=options['sequential'],
                prefix=options.get('prefix'),
                suffix=options.get('suffix'),
                seed=options['seed'],
            )
            patient_list = create_patient_list(
                ids,
                language=options.get('language') or None,
                name_key=options['name_key'],
                choice_filter=choice_filter,
                choice_filter_label=settings.PATIENT_LIST_FILTER_LABEL if choice_filter else None,
            )
        except (ValueError, TypeError) as exc:
            raise CommandError(str(exc)) from exc

        path = write_patient_list(patient_list, directory=options.get('directory'))
        self.stdout.write(self.style.SUCCESS(f"Wrote {len(patient_list)} patients to {path}"))
