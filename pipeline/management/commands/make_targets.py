"""Build the declared pipeline targets.

Runs the targets declared in :func:`pipeline.targets.build_plan` in
dependency order.  Without arguments every target is built; naming one or
more targets builds only those and what they depend on.

Usage::

    python manage.py make_targets
    python manage.py make_targets patient_list_csv patient_form_archive
    python manage.py make_targets --list
"""

from __future__ import annotations

from django.core.management.base import BaseCommand, CommandError

from pipeline.services.form_archive import FormArchiveError
from pipeline.services.kobo import KoboAPIError
from pipeline.services.onedrive import OneDriveError
from pipeline.services.patients import PatientListError
from pipeline.targets import build_plan


class Command(BaseCommand):
    help = "Build the declared pipeline targets (all of them by default)."

    def add_arguments(self, parser) -> None:
        parser.add_argument('targets', nargs='*', help='Names of the targets to build')
        parser.add_argument(
            '--list',
            action='store_true',
            help='List the declared targets and exit',
        )

    def handle(self, *args, **options) -> None:
        plan = build_plan()
        if options['list']:
            for target in plan.targets:
                deps = ', '.join(target.deps) or '-'
                self.stdout.write(f"{target.name:<28} deps: {deps}  {target.description}".rstrip())
            return

        try:
            order = plan.order(options['targets'])
        except (KeyError, ValueError) as exc:
            raise CommandError(str(exc)) from exc
        self.stdout.write(self.style.NOTICE(f"Building {len(order)} targets..."))

        try:
            values = plan.make(options['targets'])
        except (FormArchiveError, KoboAPIError, OneDriveError, PatientListError) as exc:
            raise CommandError(f"Pipeline failed: {exc}") from exc

        for name in (t.name for t in order):
            self.stdout.write(f"  {name}: {_summary(values[name])}")
        self.stdout.write(self.style.SUCCESS('Targets built.'))


def _summary(value) -> str:
    if hasattr(value, 'shape'):
        return f"{value.shape[0]} rows x {value.shape[1]} columns"
    if isinstance(value, (list, tuple, dict)):
        return f"{len(value)} items"
    return str(value)
