"""Patient identifiers and external-select patient lists.

The forms look patients up in a CSV shipped as form media
(``patient_list.csv``).  Identifiers carry no personal information: they
are random (or sequential) six character codes, optionally wrapped in a
prefix such as the study year.  Each row can be tagged with the
enumerator/nurse responsible for the patient so the form can filter the
list per field worker.
"""
from __future__ import annotations

import logging
import random
import re
import shutil
import string
import tempfile
import warnings
from pathlib import Path
from typing import Any, List, Optional, Sequence, Union

import pandas as pd
from django.conf import settings

logger = logging.getLogger(__name__)

ID_LENGTH = 6
ID_PATTERNS = {
    'alphanumeric': string.ascii_uppercase + string.digits,
    'alpha': string.ascii_uppercase,
    'numeric': string.digits,
}
LANGUAGE_RE = re.compile(r'\([a-z]{2,3}\)')
PATIENT_LIST_FILE = 'patient_list.csv'

# Header names in the anonymised patient workbook kept on OneDrive.
SOURCE_ENUMERATOR_COLUMN = 'ASSIGNED TO - NURSE/ENUMERATOR'
SOURCE_ID_COLUMN = 'UNIQUE PATIENT ID'


class PatientListError(ValueError):
    """Raised when patient list arguments are inconsistent."""


def _scalar_affix(value: Any, name: str) -> Optional[str]:
    """Validate a prefix/suffix, keeping only the first of several values."""

    if value is None:
        return None
    if isinstance(value, (str, int)):
        return str(value)
    if isinstance(value, (list, tuple)):
        if not value:
            raise ValueError(f'`{name}` should be a character value. Try again.')
        if len(value) > 1:
            message = f'`{name}` has length > 1. Only first value will be used as {name}.'
            logger.warning(message)
            warnings.warn(message, UserWarning, stacklevel=3)
        return str(value[0])
    raise TypeError(f'`{name}` should be a character value. Try again.')


def create_patient_id(
    n: int,
    pattern: str = 'alphanumeric',
    sequential: bool = False,
    prefix: Any = None,
    suffix: Any = None,
    seed: Optional[int] = None,
) -> List[str]:
    """Generate ``n`` unique patient identifiers.

    Identifiers look like ``PREFIX-XXXXXX-SUFFIX`` where ``XXXXXX`` is drawn
    from ``pattern`` (``alphanumeric``, ``alpha`` or ``numeric``).  With
    ``pattern="numeric"`` and ``sequential=True`` the codes are
    ``000001`` .. ``n`` in order.  ``seed`` makes random codes
    reproducible.
    """

    if pattern not in ID_PATTERNS:
        raise ValueError(f"`pattern` should be one of {', '.join(ID_PATTERNS)}.")
    if n < 0:
        raise ValueError('`n` should be a non-negative integer.')
    prefix = _scalar_affix(prefix, 'prefix')
    suffix = _scalar_affix(suffix, 'suffix')

    if pattern == 'numeric' and sequential:
        codes = [str(number).zfill(ID_LENGTH) for number in range(1, n + 1)]
    else:
        alphabet = ID_PATTERNS[pattern]
        if n > len(alphabet) ** ID_LENGTH:
            raise ValueError(f'Cannot draw {n} unique {pattern} identifiers of length {ID_LENGTH}.')
        rng = random.Random(seed)
        seen = set()
        codes = []
        while len(codes) < n:
            code = ''.join(rng.choices(alphabet, k=ID_LENGTH))
            if code in seen:
                continue
            seen.add(code)
            codes.append(code)

    if prefix is not None:
        codes = [f'{prefix}-{code}' for code in codes]
    if suffix is not None:
        codes = [f'{code}-{suffix}' for code in codes]
    return codes


def create_patient_list(
    ids: Sequence[str],
    language: Optional[str] = None,
    label: Optional[Sequence[str]] = None,
    label_other: Optional[Sequence[str]] = None,
    name_key: bool = False,
    choice_filter: Optional[Sequence[str]] = None,
    choice_filter_label: Optional[str] = None,
) -> pd.DataFrame:
    """Build the external-select list for ``ids``.

    Args:
        ids: Patient identifiers, usually from :func:`create_patient_id`.
        language: Second label language as ``"Name (code)"``, e.g.
            ``"Creole (cpf)"``.  Without it a single ``label`` column is
            written.
        label: Display labels, defaults to the identifiers.
        label_other: Labels in ``language``, defaults to ``label``.
        name_key: Add a leading ``name_key`` column for the search-from-file
            approach used by older ODK Collect releases.
        choice_filter: Filter value (enumerator) per identifier.
        choice_filter_label: Column name for ``choice_filter``; required
            when ``choice_filter`` is given.
    """

    ids = list(ids)
    frame = pd.DataFrame({'name': ids})

    if label is None:
        label = ids
    elif len(label) != len(ids):
        raise PatientListError('`label` should be of same length as `ids`. Try again.')

    if language is None:
        frame['label'] = list(label)
    else:
        if not LANGUAGE_RE.search(language):
            raise PatientListError(
                'Language specification is not in correct format. '
                'Format should be language name, followed by the '
                'two letter language code in parentheses. Try again.'
            )
        if label_other is None:
            label_other = label
        if len(label_other) != len(ids):
            raise PatientListError('`label_other` should be of same length as `ids`. Try again.')
        frame['label::English (en)'] = list(label)
        frame[f'label::{language}'] = list(label_other)

    if choice_filter is not None:
        if len(choice_filter) != len(ids):
            raise PatientListError('`choice_filter` should be of same length as `ids`. Try again.')
        if not choice_filter_label:
            raise PatientListError(
                '`choice_filter_label` is required if `choice_filter` is specified. Try again.'
            )
        frame[choice_filter_label] = list(choice_filter)

    if name_key:
        frame.insert(0, 'name_key', ids)

    return frame


def write_patient_list(
    patient_list: pd.DataFrame,
    directory: Optional[Union[str, Path]] = None,
) -> Path:
    """Write ``patient_list.csv`` into ``directory`` and return its path."""

    if directory is None:
        directory = getattr(settings, 'FORMS_MEDIA_DIR', Path('forms') / 'release' / 'media')
    directory = Path(directory)
    if not directory.exists():
        logger.info("Directory `%s` doesn't exist. Creating directory.", directory)
        directory.mkdir(parents=True)
    path = directory / PATIENT_LIST_FILE
    patient_list.to_csv(path, index=False)
    logger.info('Wrote %d patients to %s', len(patient_list), path)
    return path


def recode_nurse_names(patient_list: pd.DataFrame) -> pd.DataFrame:
    """Replace enumerator names by ``nurse01``, ``nurse02``, ... codes.

    Codes follow the alphabetical order of the enumerator names; rows are
    returned sorted by patient ``id``.
    """

    names = sorted(patient_list['enumerator'].dropna().unique())
    codes = {name: f'nurse{index:02d}' for index, name in enumerate(names, start=1)}
    recoded = patient_list.copy()
    recoded['enumerator_code'] = recoded['enumerator'].map(codes)
    return recoded.sort_values('id', kind='stable').reset_index(drop=True)


def read_patient_list(
    client=None,
    remote_path: Optional[str] = None,
    dest_dir: Optional[Union[str, Path]] = None,
) -> pd.DataFrame:
    """Download the anonymised patient workbook from OneDrive and tidy it.

    The second sheet holds the list.  Only the enumerator and patient id
    columns are kept; the downloaded workbook is removed afterwards.
    """

    from .onedrive import OneDriveClient

    client = client or OneDriveClient()
    remote_path = remote_path or getattr(settings, 'ONEDRIVE_PATIENT_LIST_PATH')
    cleanup_dir = dest_dir is None
    dest_dir = Path(dest_dir or tempfile.mkdtemp(prefix='patient_list_'))
    dest_dir.mkdir(parents=True, exist_ok=True)
    local_path = dest_dir / 'patient_list.xlsx'

    try:
        client.download_file(remote_path, local_path, overwrite=True)
        raw = pd.read_excel(local_path, sheet_name=1, engine='openpyxl')
    finally:
        local_path.unlink(missing_ok=True)
        if cleanup_dir:
            shutil.rmtree(dest_dir, ignore_errors=True)

    raw.columns = [str(column).strip() for column in raw.columns]
    missing = [c for c in (SOURCE_ENUMERATOR_COLUMN, SOURCE_ID_COLUMN) if c not in raw.columns]
    if missing:
        raise PatientListError(f'Patient workbook is missing columns: {missing}')
    patient_list = raw[[SOURCE_ENUMERATOR_COLUMN, SOURCE_ID_COLUMN]].copy()
    patient_list.columns = ['enumerator', 'id']
    patient_list['enumerator'] = patient_list['enumerator'].astype(str).str.strip().str.title()
    return recode_nurse_names(patient_list)


__all__ = [
    'PatientListError',
    'create_patient_id',
    'create_patient_list',
    'read_patient_list',
    'recode_nurse_names',
    'write_patient_list',
]
