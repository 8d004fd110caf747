"""Archive deployed KoboToolbox form versions as XLSForm workbooks.

KPI serves the content of each form version as JSON: a ``survey`` array of
question rows, a ``choices`` array of option rows and a ``settings``
object.  Multi-language text arrives as arrays ordered like the asset's
``translations`` (Creole first, English second for our forms).  This
module turns that payload back into the three-sheet workbook layout that
XLSForm tooling expects and writes one workbook per version under
``{directory}/{version label}/{file name}``.

A workbook that already exists on disk is never fetched again; presence of
the file is the only check, its content is not compared.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd
import requests
from django.conf import settings
from openpyxl.cell.cell import ILLEGAL_CHARACTERS_RE

from .kobo import KoboAPIError, kobo_session, request_options

logger = logging.getLogger(__name__)

ENGLISH = 'English (en)'
CREOLE = 'Creole (cpf)'
# Position of each language inside the translated arrays when the payload
# does not list its translations.
DEFAULT_TRANSLATION_ORDER = (CREOLE, ENGLISH)

SURVEY_DROP_COLUMNS = ['$kuid', '$xpath', '$autoname', 'select_from_list_name']
CHOICES_DROP_COLUMNS = ['$kuid', '$autovalue']
SHEET_NAMES = ('survey', 'choices', 'settings')

VersionURL = Union[Mapping[str, str], Tuple[str, str]]


class FormArchiveError(KoboAPIError):
    """Raised when a form version cannot be fetched or archived."""


@dataclass
class FormTables:
    """The three XLSForm sheets of one form version."""

    survey: pd.DataFrame
    choices: pd.DataFrame
    settings: pd.DataFrame

    def as_sheets(self) -> List[Tuple[str, pd.DataFrame]]:
        return list(zip(SHEET_NAMES, (self.survey, self.choices, self.settings)))


# ---------------------------------------------------------------------------
# Column helpers


def translated_column(field: str, language: str) -> str:
    return f'{field}::{language}'


def _translation_positions(content: Mapping[str, Any]) -> Tuple[int, int]:
    """Return the (English, Creole) positions inside translated arrays."""

    translations = content.get('translations')
    order: Sequence[Any] = DEFAULT_TRANSLATION_ORDER
    if isinstance(translations, list) and ENGLISH in translations and CREOLE in translations:
        order = translations
    return list(order).index(ENGLISH), list(order).index(CREOLE)


def _pick(value: Any, position: int) -> Any:
    """Return one translation, or an empty string when it is missing."""

    if isinstance(value, (list, tuple)):
        item = value[position] if position < len(value) else None
    elif position == 0 and isinstance(value, str):
        item = value
    else:
        item = None
    if item is None or (isinstance(item, float) and pd.isna(item)):
        return ''
    return item


def split_translations(frame: pd.DataFrame, field: str, positions: Tuple[int, int]) -> pd.DataFrame:
    """Replace the array column ``field`` with English and Creole columns."""

    english_pos, creole_pos = positions
    values = frame[field] if field in frame.columns else pd.Series([None] * len(frame), index=frame.index)
    frame = frame.drop(columns=[field], errors='ignore')
    frame[translated_column(field, ENGLISH)] = [_pick(value, english_pos) for value in values]
    frame[translated_column(field, CREOLE)] = [_pick(value, creole_pos) for value in values]
    return frame


def relocate(frame: pd.DataFrame, columns: Sequence[str], before: str) -> pd.DataFrame:
    """Move ``columns`` (in the given order) immediately before ``before``.

    When the anchor column does not exist the columns are moved to the end.
    """

    moving = [column for column in columns if column in frame.columns]
    remaining = [column for column in frame.columns if column not in moving]
    if before in remaining:
        index = remaining.index(before)
        ordered = remaining[:index] + moving + remaining[index:]
    else:
        logger.debug('Column %s not present; appending %s at the end', before, moving)
        ordered = remaining + moving
    return frame.reindex(columns=ordered)


# ---------------------------------------------------------------------------
# Reshaping


def _content_section(form_json: Mapping[str, Any]) -> Mapping[str, Any]:
    if not isinstance(form_json, Mapping):
        raise FormArchiveError(f'Form version payload is a {type(form_json).__name__}, not an object.')
    content = form_json.get('content', form_json)
    if not isinstance(content, Mapping):
        raise FormArchiveError('Form version payload has no content object.')
    return content


def reshape_survey(rows: Iterable[Mapping[str, Any]], positions: Tuple[int, int]) -> pd.DataFrame:
    survey = pd.DataFrame.from_records(list(rows))
    if 'type' not in survey.columns:
        survey['type'] = pd.Series(dtype=object)

    if 'select_from_list_name' in survey.columns:
        def _select_type(row: pd.Series) -> Any:
            list_name = row['select_from_list_name']
            if str(row['type']).startswith('select_') and isinstance(list_name, str) and list_name:
                return f"{row['type']} {list_name}"
            return row['type']

        survey['type'] = survey.apply(_select_type, axis=1) if len(survey) else survey['type']

    for field in ('label', 'hint'):
        survey = split_translations(survey, field, positions)
    survey = survey.drop(columns=SURVEY_DROP_COLUMNS, errors='ignore')

    if 'constraint_message' in survey.columns:
        survey = split_translations(survey, 'constraint_message', positions)
        survey = relocate(
            survey,
            [
                translated_column('constraint_message', ENGLISH),
                translated_column('constraint_message', CREOLE),
            ],
            before='relevant',
        )

    survey = relocate(survey, ['type'], before='name')
    survey = relocate(
        survey,
        [
            translated_column('label', ENGLISH),
            translated_column('label', CREOLE),
            translated_column('hint', ENGLISH),
            translated_column('hint', CREOLE),
        ],
        before='required',
    )
    return survey


def reshape_choices(rows: Iterable[Mapping[str, Any]], positions: Tuple[int, int]) -> pd.DataFrame:
    choices = pd.DataFrame.from_records(list(rows))
    choices = split_translations(choices, 'label', positions)
    choices = relocate(choices, ['list_name'], before='name')
    choices = choices.drop(columns=CHOICES_DROP_COLUMNS, errors='ignore')
    if 'media::image' in choices.columns:
        choices = split_translations(choices, 'media::image', positions)
    return choices


def reshape_settings(values: Any, form_title: Optional[str] = None) -> pd.DataFrame:
    if isinstance(values, list):
        merged: Dict[str, Any] = {}
        for item in values:
            merged.update(item or {})
        values = merged
    settings_frame = pd.DataFrame([dict(values or {})])
    if form_title is not None:
        settings_frame = settings_frame.drop(columns=['form_title'], errors='ignore')
        settings_frame['form_title'] = form_title
        settings_frame = relocate(settings_frame, ['form_title'], before='style')
    settings_frame = settings_frame.rename(columns={'id_string': 'form_id'})
    settings_frame = relocate(settings_frame, ['form_id'], before='style')
    return settings_frame


def reshape_form_content(form_json: Mapping[str, Any], form_title: Optional[str] = None) -> FormTables:
    """Convert a KPI form version payload into XLSForm sheets.

    * ``select_*`` types absorb their ``select_from_list_name``.
    * ``label``, ``hint`` and ``constraint_message`` (and ``media::image`` on
      choices) are split into ``::English (en)`` / ``::Creole (cpf)``
      columns; missing translations become empty strings.
    * KPI bookkeeping columns are dropped and columns reordered the way the
      form authors lay out their workbooks.
    * Settings become a single row with ``form_id`` and the supplied
      ``form_title`` placed before ``style``.
    """

    content = _content_section(form_json)
    positions = _translation_positions(content)
    return FormTables(
        survey=reshape_survey(content.get('survey') or [], positions),
        choices=reshape_choices(content.get('choices') or [], positions),
        settings=reshape_settings(content.get('settings'), form_title),
    )


# ---------------------------------------------------------------------------
# Writing


def _clean_text(value: Any) -> Any:
    if isinstance(value, str):
        return ILLEGAL_CHARACTERS_RE.sub('', value)
    return value


def _cell_safe(frame: pd.DataFrame) -> pd.DataFrame:
    """Drop the control characters openpyxl refuses to store."""

    cleaned = frame.copy()
    for column in cleaned.columns:
        if cleaned[column].dtype == object:
            cleaned[column] = cleaned[column].map(_clean_text)
    return cleaned


def write_form_workbook(tables: FormTables, path: Union[str, Path]) -> Path:
    """Write ``tables`` as a workbook with survey, choices and settings sheets.

    The workbook is written next to ``path`` and moved into place only once
    every sheet is saved, so a failed write never leaves a file at ``path``.
    """

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    partial = path.with_name(f'{path.stem}.part{path.suffix}')
    try:
        with pd.ExcelWriter(partial, engine='openpyxl') as writer:
            for sheet_name, frame in tables.as_sheets():
                _cell_safe(frame).to_excel(writer, sheet_name=sheet_name, index=False)
    except Exception:
        partial.unlink(missing_ok=True)
        raise
    os.replace(partial, path)
    return path


def _split_version_url(form_version_url: VersionURL) -> Tuple[str, str]:
    if isinstance(form_version_url, tuple):
        label, url = form_version_url
        return str(label), str(url)
    if len(form_version_url) != 1:
        raise ValueError('form_version_url must hold exactly one version label and URL.')
    label, url = next(iter(form_version_url.items()))
    return str(label), str(url)


def archive_path(directory: Union[str, Path], version: str, file_name: str) -> Path:
    return Path(directory) / version / file_name


def archive_form_version(
    form_version_url: VersionURL,
    file_name: str,
    form_title: Optional[str] = None,
    directory: Optional[Union[str, Path]] = None,
    token: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> Path:
    """Save one deployed form version as ``{directory}/{version}/{file_name}``.

    Args:
        form_version_url: ``{"v3": url}`` (or ``("v3", url)``) as produced by
            :func:`pipeline.services.kobo.kobo_get_version_urls`.
        file_name: Name of the workbook inside the version folder.
        form_title: Value written to the ``form_title`` setting.
        directory: Archive root, ``FORMS_ARCHIVE_DIR`` by default.
        token: Kobo API token, ``KOBO_TOKEN`` by default.

    Returns the workbook path.  When the file already exists nothing is
    fetched and the existing path is returned.
    """

    version, url = _split_version_url(form_version_url)
    if directory is None:
        directory = getattr(settings, 'FORMS_ARCHIVE_DIR', Path('forms') / 'archive')
    path = archive_path(directory, version, file_name)
    if path.exists():
        logger.info('Version %s already archived at %s', version, path)
        return path

    session = session or kobo_session(token)
    try:
        response = session.get(url, **request_options())
        response.raise_for_status()
        form_json = response.json()
    except requests.RequestException as exc:
        raise FormArchiveError(f'Failed to fetch form version {version} from {url}: {exc}') from exc
    except ValueError as exc:
        raise FormArchiveError(f'Form version {version} did not return JSON: {exc}') from exc

    tables = reshape_form_content(form_json, form_title=form_title)
    try:
        write_form_workbook(tables, path)
    except (OSError, ValueError) as exc:
        raise FormArchiveError(f'Failed to write form version {version} to {path}: {exc}') from exc
    logger.info(
        'Archived version %s to %s (%d questions, %d choices)',
        version, path, len(tables.survey), len(tables.choices),
    )
    return path


def archive_form_versions(
    version_urls: Mapping[str, str],
    file_name: str,
    form_title: Optional[str] = None,
    directory: Optional[Union[str, Path]] = None,
    token: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> Dict[str, Path]:
    """Archive every version in ``version_urls``; returns paths keyed by label."""

    session = session or kobo_session(token)
    return {
        version: archive_form_version(
            {version: url},
            file_name=file_name,
            form_title=form_title,
            directory=directory,
            session=session,
        )
        for version, url in version_urls.items()
    }


__all__ = [
    'FormArchiveError',
    'FormTables',
    'archive_form_version',
    'archive_form_versions',
    'archive_path',
    'relocate',
    'reshape_form_content',
    'split_translations',
    'write_form_workbook',
]
