"""Tests for the declared pipeline targets."""

from __future__ import annotations

import shutil
import tempfile
from datetime import date
from pathlib import Path
from unittest import mock

import pandas as pd
from django.test import SimpleTestCase, override_settings

from pipeline.targets import Plan, Target, build_plan


class PlanTests(SimpleTestCase):
    def test_dependencies_are_built_first(self) -> None:
        plan = Plan([
            Target('total', lambda numbers: sum(numbers), deps=['numbers']),
            Target('numbers', lambda: [1, 2, 3]),
            Target('unused', lambda: 'skip'),
        ])

        self.assertEqual([t.name for t in plan.order(['total'])], ['numbers', 'total'])
        self.assertEqual(plan.make(['total']), {'numbers': [1, 2, 3], 'total': 6})

    def test_each_target_runs_once(self) -> None:
        calls = []

        def source():
            calls.append('source')
            return 2

        plan = Plan([
            Target('source', source),
            Target('double', lambda source: source * 2, deps=['source']),
            Target('square', lambda source: source ** 2, deps=['source']),
        ])

        values = plan.make()

        self.assertEqual(calls, ['source'])
        self.assertEqual((values['double'], values['square']), (4, 4))

    def test_pattern_fans_out_over_mapping(self) -> None:
        plan = Plan([
            Target('versions', lambda: {'v2': 'b', 'v1': 'a'}),
            Target('suffix', lambda: '!'),
            Target(
                'shouted',
                lambda versions, suffix: ''.join(f'{k}={v}{suffix}' for k, v in versions.items()),
                deps=['versions', 'suffix'],
                pattern='versions',
            ),
        ])

        self.assertEqual(plan.make(['shouted'])['shouted'], {'v2': 'v2=b!', 'v1': 'v1=a!'})

    def test_pattern_must_be_a_dependency(self) -> None:
        with self.assertRaises(ValueError):
            Target('broken', lambda: None, deps=['a'], pattern='b')

    def test_cycles_are_rejected(self) -> None:
        plan = Plan([
            Target('a', lambda b: b, deps=['b']),
            Target('b', lambda a: a, deps=['a']),
        ])
        with self.assertRaisesMessage(ValueError, 'a -> b -> a'):
            plan.order(['a'])

    def test_unknown_target_raises_key_error(self) -> None:
        with self.assertRaises(KeyError):
            Plan([Target('a', lambda: 1)]).order(['b'])

    def test_duplicate_names_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            Plan([Target('a', lambda: 1), Target('a', lambda: 2)])


class StudyPlanTests(SimpleTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._tmp = Path(tempfile.mkdtemp())
        self.addCleanup(lambda: shutil.rmtree(self._tmp, ignore_errors=True))

    @override_settings(KOBO_FORMS={'patient': 'Patient form', 'hcw': 'HCW form'})
    def test_declares_study_targets(self) -> None:
        names = build_plan().names

        self.assertEqual(names[0], 'release_forms')
        for name in (
            'patient_ids',
            'patient_list',
            'patient_list_search',
            'patient_list_csv',
            'kobo_assets',
            'patient_form_uid',
            'patient_form_version_urls',
            'patient_form_archive',
            'hcw_form_archive',
            'pilot_patient_list',
        ):
            self.assertIn(name, names)

    def test_patient_list_csv_target_writes_media_file(self) -> None:
        media = self._tmp / 'media'
        with override_settings(FORMS_MEDIA_DIR=media):
            values = build_plan().make(['patient_list_csv'])

        self.assertEqual(values['patient_list_csv'], media / 'patient_list.csv')
        written = pd.read_csv(media / 'patient_list.csv', dtype=str)
        self.assertEqual(len(written), 400)
        self.assertEqual(
            list(written.columns),
            ['name_key', 'name', 'label::English (en)', 'label::Creole (cpf)', 'enumerator'],
        )
        self.assertEqual(written.loc[0, 'name'], f'{date.today():%Y}-000001')
        self.assertEqual(written['enumerator'].value_counts().to_dict(), {f'nurse{i:02d}': 50 for i in range(1, 9)})
        self.assertNotIn('release_forms', values)

    def test_form_archive_target_archives_each_deployed_version(self) -> None:
        assets = pd.DataFrame({'uid': ['a1'], 'name': ['Patient form']})
        versions = pd.DataFrame({'url': ['u3', 'u2', 'u1'], 'deployed': [True, False, True]})
        archived = []

        def fake_archive(version_url, file_name, form_title=None, directory=None):
            archived.append((dict(version_url), file_name, form_title, directory))
            (label,) = version_url
            return directory / label / file_name

        with override_settings(
            KOBO_FORMS={'patient': 'Patient form'},
            KOBO_FORM_FILES={'patient': 'patient.xlsx'},
            FORMS_ARCHIVE_DIR=self._tmp,
        ), mock.patch('pipeline.services.kobo.kobo_asset_list', return_value=assets), \
                mock.patch('pipeline.services.kobo.kobo_asset_version_list', return_value=versions) as version_list, \
                mock.patch('pipeline.services.form_archive.archive_form_version', side_effect=fake_archive):
            values = build_plan().make(['patient_form_archive'])

        version_list.assert_called_once_with('a1')
        self.assertEqual(values['patient_form_uid'], 'a1')
        self.assertEqual(values['patient_form_version_urls'], {'v2': 'u3', 'v1': 'u1'})
        self.assertEqual(
            values['patient_form_archive'],
            {'v2': self._tmp / 'patient' / 'v2' / 'patient.xlsx', 'v1': self._tmp / 'patient' / 'v1' / 'patient.xlsx'},
        )
        self.assertEqual(archived[0], ({'v2': 'u3'}, 'patient.xlsx', 'Patient form', self._tmp / 'patient'))
