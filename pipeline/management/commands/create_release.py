"""Publish the staged forms as a new GitHub release.

Computes the next ``YYYY.MM.NN`` tag, creates the release and uploads the
XLSForm workbooks and zipped media from the release directory.

Usage::

    python manage.py create_release --body "Pilot forms"
    python manage.py create_release --repo owner/repo --release-start 30 --no-upload
"""

from __future__ import annotations

from django.core.management.base import BaseCommand, CommandError

from pipeline.services.releases import ReleaseError, github_create_release, github_upload_release


class Command(BaseCommand):
    help = "Create a GitHub release for the staged forms and upload them."

    def add_arguments(self, parser) -> None:
        parser.add_argument('--repo', help='owner/repo (defaults to GITHUB_REPOSITORY or the git remote)')
        parser.add_argument('--body', help='Release description')
        parser.add_argument('--release-start', type=int, help='Counter of the very first release')
        parser.add_argument('--release-dir', help='Directory holding the staged forms')
        parser.add_argument(
            '--no-upload',
            action='store_true',
            help='Create the release without uploading assets',
        )

    def handle(self, *args, **options) -> None:
        try:
            tag = github_create_release(
                repo=options.get('repo'),
                body=options.get('body'),
                release_start=options.get('release_start'),
            )
            self.stdout.write(self.style.NOTICE(f"Created release {tag}"))
            if options['no_upload']:
                return
            uploaded = github_upload_release(tag, repo=options.get('repo'), release_dir=options.get('release_dir'))
        except ReleaseError as exc:
            raise CommandError(f"Release failed: {exc}") from exc

        for name in uploaded:
            self.stdout.write(f"  uploaded {name}")
        self.stdout.write(self.style.SUCCESS(f"Release {tag} published with {len(uploaded)} assets."))
