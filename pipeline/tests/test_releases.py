"""Tests for release tagging and publication."""

from __future__ import annotations

import shutil
import subprocess
import tempfile
import zipfile
from datetime import date
from pathlib import Path
from unittest import mock

import requests
from django.test import SimpleTestCase, override_settings

from pipeline.services.releases import (
    GitRepositoryError,
    ReleaseError,
    get_github_repository,
    github_create_release,
    github_create_release_tag,
    github_upload_release,
    next_release_tag,
)


def _response(payload=None, status_code=200):
    response = mock.MagicMock(status_code=status_code)
    response.json.return_value = payload
    return response


def _completed(args, returncode=0, stdout=''):
    return subprocess.CompletedProcess(args=args, returncode=returncode, stdout=stdout, stderr='')


class NextReleaseTagTests(SimpleTestCase):
    def test_same_month_increments_counter(self) -> None:
        self.assertEqual(next_release_tag('2025.05.07', date(2025, 5, 20)), '2025.05.08')

    def test_new_year_restarts_counter(self) -> None:
        self.assertEqual(next_release_tag('2024.12.03', date(2025, 1, 2)), '2025.01.01')

    def test_new_month_restarts_counter(self) -> None:
        self.assertEqual(next_release_tag('2025.03.11', date(2025, 4, 1)), '2025.04.01')

    def test_first_release_uses_release_start(self) -> None:
        self.assertEqual(next_release_tag(None, date(2025, 4, 15), release_start=30), '2025.04.30')
        self.assertEqual(next_release_tag(None, date(2025, 4, 15)), '2025.04.01')

    def test_repeated_calls_give_the_same_tag(self) -> None:
        today = date(2025, 5, 20)
        self.assertEqual(next_release_tag('2025.05.07', today), next_release_tag('2025.05.07', today))

    def test_counter_beyond_two_digits(self) -> None:
        self.assertEqual(next_release_tag('2025.05.99', date(2025, 5, 20)), '2025.05.100')

    def test_malformed_tag_raises(self) -> None:
        with self.assertRaises(ReleaseError):
            next_release_tag('release-1', date(2025, 5, 20))


@override_settings(GITHUB_API_BASE='https://api.github.test', GITHUB_TOKEN='t', RELEASE_BODY='Form release')
class GithubReleaseTests(SimpleTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._release_dir = Path(tempfile.mkdtemp())
        self.addCleanup(lambda: shutil.rmtree(self._release_dir, ignore_errors=True))

    def test_tag_follows_latest_release(self) -> None:
        session = mock.MagicMock()
        session.request.return_value = _response([{'tag_name': '2025.05.07'}])
        session.get.return_value = _response({'tag_name': '2025.05.07'})

        tag = github_create_release_tag('owner/repo', today=date(2025, 5, 20), session=session)

        self.assertEqual(tag, '2025.05.08')
        self.assertEqual(session.get.call_args.args[0], 'https://api.github.test/repos/owner/repo/releases/latest')

    def test_tag_without_releases_uses_release_start(self) -> None:
        session = mock.MagicMock()
        session.request.return_value = _response([])

        tag = github_create_release_tag('owner/repo', release_start=30, today=date(2025, 4, 3), session=session)

        self.assertEqual(tag, '2025.04.30')
        session.get.assert_not_called()

    def test_tag_falls_back_to_listed_release_when_no_latest(self) -> None:
        session = mock.MagicMock()
        session.request.return_value = _response([{'tag_name': '2025.05.02', 'prerelease': True}])
        session.get.return_value = _response({'message': 'Not Found'}, status_code=404)

        tag = github_create_release_tag('owner/repo', today=date(2025, 5, 20), session=session)

        self.assertEqual(tag, '2025.05.03')

    def test_create_release_posts_tag_and_body(self) -> None:
        session = mock.MagicMock()
        session.request.side_effect = [_response([]), _response({'id': 1})]

        tag = github_create_release('owner/repo', release_start=1, today=date(2025, 6, 1), session=session)

        self.assertEqual(tag, '2025.06.01')
        method, url = session.request.call_args.args
        self.assertEqual((method, url), ('POST', 'https://api.github.test/repos/owner/repo/releases'))
        self.assertEqual(
            session.request.call_args.kwargs['json'],
            {'tag_name': '2025.06.01', 'name': '2025.06.01', 'body': 'Form release'},
        )

    def test_upload_zips_media_and_removes_archive(self) -> None:
        (self._release_dir / 'patient.xlsx').write_bytes(b'xlsx')
        (self._release_dir / 'notes.txt').write_text('not an asset')
        media = self._release_dir / 'media'
        (media / 'icons').mkdir(parents=True)
        (media / 'patient_list.csv').write_text('name\nP1\n')
        (media / 'icons' / 'yes.png').write_bytes(b'png')
        archived_names = []

        def fake_request(method, url, **kwargs):
            if method == 'GET':
                return _response({
                    'id': 7,
                    'upload_url': 'https://uploads.github.test/repos/owner/repo/releases/7/assets{?name,label}',
                })
            if kwargs['params']['name'] == 'media.zip':
                with zipfile.ZipFile(self._release_dir / 'media.zip') as zf:
                    archived_names.extend(zf.namelist())
            return _response({'state': 'uploaded'})

        session = mock.MagicMock()
        session.request.side_effect = fake_request

        uploaded = github_upload_release('2025.06.01', repo='owner/repo', release_dir=self._release_dir, session=session)

        self.assertEqual(uploaded, ['media.zip', 'patient.xlsx'])
        self.assertEqual(archived_names, ['yes.png', 'patient_list.csv'])
        self.assertFalse((self._release_dir / 'media.zip').exists())
        post_urls = {c.args[1] for c in session.request.call_args_list if c.args[0] == 'POST'}
        self.assertEqual(post_urls, {'https://uploads.github.test/repos/owner/repo/releases/7/assets'})

    def test_upload_removes_archive_on_failure(self) -> None:
        (self._release_dir / 'media').mkdir()
        (self._release_dir / 'media' / 'a.png').write_bytes(b'png')
        session = mock.MagicMock()
        session.request.return_value.raise_for_status.side_effect = requests.HTTPError('404 Not Found')

        with self.assertRaises(ReleaseError):
            github_upload_release('2025.06.01', repo='owner/repo', release_dir=self._release_dir, session=session)
        self.assertFalse((self._release_dir / 'media.zip').exists())


    def test_upload_refuses_media_with_duplicate_names(self) -> None:
        (self._release_dir / 'patient.xlsx').write_bytes(b'xlsx')
        for folder in ('hcw', 'patient'):
            (self._release_dir / 'media' / folder).mkdir(parents=True)
            (self._release_dir / 'media' / folder / 'a.png').write_bytes(folder.encode())
        session = mock.MagicMock()

        with self.assertRaisesMessage(ReleaseError, 'share the name a.png'):
            github_upload_release('2025.06.01', repo='owner/repo', release_dir=self._release_dir, session=session)

        session.request.assert_not_called()
        self.assertFalse((self._release_dir / 'media.zip').exists())


class GithubRepositoryTests(SimpleTestCase):
    def _patch_git(self, remotes: str, inside: bool = True):
        def fake_run(args, **kwargs):
            if 'rev-parse' in args:
                return _completed(args, returncode=0 if inside else 128)
            return _completed(args, stdout=remotes)

        return mock.patch('pipeline.services.releases.subprocess.run', side_effect=fake_run)

    def test_ssh_remote(self) -> None:
        remotes = (
            'origin\tgit@github.com:owner/forms.git (fetch)\n'
            'origin\tgit@github.com:owner/forms.git (push)\n'
        )
        with self._patch_git(remotes):
            self.assertEqual(get_github_repository(), 'owner/forms')

    def test_https_remote(self) -> None:
        remotes = (
            'origin\thttps://github.com/owner/forms.git (fetch)\n'
            'origin\thttps://github.com/owner/forms.git (push)\n'
        )
        with self._patch_git(remotes):
            self.assertEqual(get_github_repository(), 'owner/forms')
            self.assertEqual(get_github_repository(full=True), 'https://github.com/owner/forms.git')

    def test_outside_git_repository_raises(self) -> None:
        with self._patch_git('', inside=False):
            with self.assertRaises(GitRepositoryError):
                get_github_repository()
