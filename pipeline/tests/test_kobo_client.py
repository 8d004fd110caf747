"""Tests for the KoboToolbox API helpers."""

from __future__ import annotations

import shutil
import tempfile
from pathlib import Path
from unittest import mock

import pandas as pd
import requests
from django.test import SimpleTestCase, override_settings

from pipeline.services.kobo import (
    KoboAPIError,
    kobo_asset_list,
    kobo_asset_version_list,
    kobo_deploy_form,
    kobo_get_uid,
    kobo_get_version_urls,
    kobo_retrieve_form,
    kobo_session,
)


def _response(payload=None, status_code=200, chunks=None):
    response = mock.MagicMock(status_code=status_code)
    response.json.return_value = payload
    response.iter_content.return_value = chunks or []
    return response


@override_settings(KOBO_API_BASE='https://kobo.example/api/v2', KOBO_TOKEN='secret')
class VersionUrlTests(SimpleTestCase):
    def test_deployed_versions_are_labelled_in_descending_order(self) -> None:
        versions = [
            {'url': 'https://kobo.example/v/c', 'deployed': True},
            {'url': 'https://kobo.example/v/draft', 'deployed': False},
            {'url': 'https://kobo.example/v/b', 'deployed': True},
            {'url': 'https://kobo.example/v/a', 'deployed': True},
        ]

        urls = kobo_get_version_urls(versions)

        self.assertEqual(list(urls), ['v3', 'v2', 'v1'])
        self.assertEqual(urls['v3'], 'https://kobo.example/v/c')
        self.assertEqual(urls['v1'], 'https://kobo.example/v/a')
        self.assertNotIn('https://kobo.example/v/draft', urls.values())

    def test_no_deployed_versions_gives_empty_mapping(self) -> None:
        versions = pd.DataFrame({'url': ['u1', 'u2'], 'deployed': [False, False]})
        self.assertEqual(kobo_get_version_urls(versions), {})

    def test_accepts_version_data_frame(self) -> None:
        versions = pd.DataFrame({'url': ['u2', 'u1'], 'deployed': [True, True]})
        self.assertEqual(kobo_get_version_urls(versions), {'v2': 'u2', 'v1': 'u1'})


@override_settings(KOBO_API_BASE='https://kobo.example/api/v2', KOBO_TOKEN='secret')
class AssetTests(SimpleTestCase):
    def test_session_sends_token_header(self) -> None:
        session = kobo_session('abc123')
        self.assertEqual(session.headers['Authorization'], 'Token abc123')

    def test_asset_list_follows_pagination(self) -> None:
        session = mock.MagicMock()
        session.get.side_effect = [
            _response({'results': [{'uid': 'a1', 'name': 'Patient'}], 'next': 'https://kobo.example/api/v2/assets/?page=2'}),
            _response({'results': [{'uid': 'b2', 'name': 'HCW'}], 'next': None}),
        ]

        assets = kobo_asset_list(session=session)

        self.assertEqual(list(assets['uid']), ['a1', 'b2'])
        first_call, second_call = session.get.call_args_list
        self.assertEqual(first_call.args[0], 'https://kobo.example/api/v2/assets/')
        self.assertEqual(first_call.kwargs['params'], {'format': 'json'})
        self.assertIsNone(second_call.kwargs['params'])

    def test_get_uid_returns_matching_uid(self) -> None:
        assets = pd.DataFrame({'uid': ['a1', 'b2'], 'name': ['Patient', 'HCW']})
        self.assertEqual(kobo_get_uid(assets, 'HCW'), 'b2')

    def test_get_uid_warns_and_returns_empty_string_when_missing(self) -> None:
        assets = pd.DataFrame({'uid': ['a1'], 'name': ['Patient']})
        with self.assertWarns(UserWarning):
            uid = kobo_get_uid(assets, 'Unknown form')
        self.assertEqual(uid, '')

    def test_version_list_derives_deployed_flag(self) -> None:
        session = mock.MagicMock()
        session.get.return_value = _response({
            'results': [
                {'uid': 'v3', 'url': 'u3', 'date_deployed': '2025-04-02T10:00:00Z'},
                {'uid': 'v2', 'url': 'u2', 'date_deployed': None},
                {'uid': 'v1', 'url': 'u1', 'date_deployed': '2025-03-01T10:00:00Z'},
            ],
            'next': None,
        })

        versions = kobo_asset_version_list('a1', session=session)

        self.assertEqual(list(versions['deployed']), [True, False, True])
        self.assertEqual(kobo_get_version_urls(versions), {'v2': 'u3', 'v1': 'u1'})

    def test_network_errors_are_wrapped(self) -> None:
        session = mock.MagicMock()
        session.get.side_effect = requests.ConnectionError('offline')
        with self.assertRaises(KoboAPIError):
            kobo_asset_list(session=session)


@override_settings(KOBO_API_BASE='https://kobo.example/api/v2', KOBO_TOKEN='secret')
class FormFileTests(SimpleTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._tmp = Path(tempfile.mkdtemp())
        self.addCleanup(lambda: shutil.rmtree(self._tmp, ignore_errors=True))

    def test_retrieve_form_rejects_unknown_type(self) -> None:
        with self.assertRaises(ValueError):
            kobo_retrieve_form('a1', form_type='pdf', destination=self._tmp / 'form.pdf')

    def test_retrieve_form_writes_download(self) -> None:
        session = mock.MagicMock()
        session.get.return_value = _response(chunks=[b'<h:html>', b'</h:html>'])

        path = kobo_retrieve_form('a1', form_type='xml', destination=self._tmp / 'forms' / 'a1.xml', session=session)

        self.assertEqual(path.read_bytes(), b'<h:html></h:html>')
        self.assertEqual(session.get.call_args.args[0], 'https://kobo.example/api/v2/assets/a1.xml')

    def test_deploy_form_posts_workbook_to_imports(self) -> None:
        workbook = self._tmp / 'form.xlsx'
        workbook.write_bytes(b'PK')
        session = mock.MagicMock()
        session.post.return_value = _response({'uid': 'imp1', 'status': 'processing'})

        result = kobo_deploy_form(workbook, uid='a1', session=session)

        self.assertEqual(result['uid'], 'imp1')
        call = session.post.call_args
        self.assertEqual(call.args[0], 'https://kobo.example/api/v2/imports/')
        self.assertEqual(call.kwargs['data']['destination'], 'https://kobo.example/api/v2/assets/a1/')
        self.assertEqual(call.kwargs['files']['file'][0], 'form.xlsx')

    def test_deploy_form_requires_existing_file(self) -> None:
        with self.assertRaises(FileNotFoundError):
            kobo_deploy_form(self._tmp / 'missing.xlsx', session=mock.MagicMock())
