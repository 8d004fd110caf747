"""Thin client helpers for the KoboToolbox KPI v2 API.

Every request is authenticated with ``Authorization: Token <token>``.  The
token, base URL, timeout and TLS options default to the ``KOBO_*`` values
in Django settings but can be passed explicitly by callers (the build
targets and tests do so).  Network failures are wrapped in
:class:`KoboAPIError`; nothing here retries.
"""
from __future__ import annotations

import logging
import warnings
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import pandas as pd
import requests
from django.conf import settings

logger = logging.getLogger(__name__)

XLSX_CONTENT_TYPE = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
FORM_TYPES = ('xls', 'xml')

ASSET_COLUMNS = ['uid', 'name', 'asset_type', 'deployment__active', 'url']
VERSION_COLUMNS = ['uid', 'url', 'content_hash', 'date_deployed', 'date_modified', 'deployed']


class KoboAPIError(Exception):
    """Raised when a request to the KoboToolbox API fails."""


def resolve_token(token: Optional[str] = None) -> str:
    return token if token is not None else getattr(settings, 'KOBO_TOKEN', '')


def resolve_api_base(base_url: Optional[str] = None) -> str:
    """Return the ``/api/v2`` root for ``base_url`` or the configured server."""

    if base_url:
        return base_url.rstrip('/') + '/api/v2'
    api_base = getattr(settings, 'KOBO_API_BASE', None)
    if not api_base:
        raise KoboAPIError('KOBO_API_BASE setting is not configured.')
    return api_base.rstrip('/')


def request_options() -> Dict[str, Any]:
    """Timeout and TLS verification keyword arguments for ``requests``."""

    timeout = getattr(settings, 'KOBO_HTTP_TIMEOUT', 60)
    verify = getattr(settings, 'KOBO_TLS_CERT', None) or getattr(settings, 'KOBO_VERIFY_TLS', True)
    return {'timeout': timeout, 'verify': verify}


def kobo_session(token: Optional[str] = None) -> requests.Session:
    """Create a requests Session with the Authorization header."""

    session = requests.Session()
    session.headers.update({'Authorization': f'Token {resolve_token(token)}', 'Accept': 'application/json'})
    return session


def _get_json(session: requests.Session, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
    try:
        response = session.get(url, params=params, **request_options())
        response.raise_for_status()
    except requests.RequestException as exc:
        raise KoboAPIError(f'Request to {url} failed: {exc}') from exc
    return response.json()


def _get_paginated(session: requests.Session, url: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    """Collect ``results`` across every page linked through ``next``."""

    records: List[Dict[str, Any]] = []
    next_url: Optional[str] = url
    while next_url:
        payload = _get_json(session, next_url, params)
        results = payload.get('results', []) if isinstance(payload, dict) else payload
        if not isinstance(results, list):
            raise KoboAPIError(f'Unexpected payload received from {next_url}.')
        records.extend(results)
        next_url = payload.get('next') if isinstance(payload, dict) else None
        params = None  # the next link already carries the query string
    return records


# ---------------------------------------------------------------------------
# Assets


def kobo_asset_list(
    token: Optional[str] = None,
    base_url: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> pd.DataFrame:
    """Return every asset visible to the token as a data frame."""

    session = session or kobo_session(token)
    url = f'{resolve_api_base(base_url)}/assets/'
    records = _get_paginated(session, url, params={'format': 'json'})
    logger.info('Retrieved %d Kobo assets', len(records))
    frame = pd.DataFrame.from_records(records)
    for column in ASSET_COLUMNS:
        if column not in frame.columns:
            frame[column] = pd.Series(dtype=object)
    return frame


def kobo_get_uid(asset_list: pd.DataFrame, form_name: str) -> str:
    """Return the uid of the asset called ``form_name``.

    A missing form is not fatal: a warning is issued and an empty string is
    returned, so the first network call made with it fails loudly instead.
    """

    matches = asset_list.loc[asset_list['name'] == form_name, 'uid']
    if matches.empty:
        message = f'Form with name {form_name} not found. Returning empty `uid` string.'
        logger.warning(message)
        warnings.warn(message, UserWarning, stacklevel=2)
        return ''
    if len(matches) > 1:
        logger.warning('Form name %s matches %d assets; using the first', form_name, len(matches))
    return str(matches.iloc[0])


# ---------------------------------------------------------------------------
# Versions


def kobo_asset_version_list(
    uid: str,
    token: Optional[str] = None,
    base_url: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> pd.DataFrame:
    """List the versions of an asset, newest first.

    KPI reports ``date_deployed`` for deployed versions; the ``deployed``
    column is derived from it when the server does not send the flag.
    """

    session = session or kobo_session(token)
    url = f'{resolve_api_base(base_url)}/assets/{uid}/versions/'
    records = _get_paginated(session, url, params={'format': 'json'})
    frame = pd.DataFrame.from_records(records)
    for column in VERSION_COLUMNS:
        if column not in frame.columns:
            frame[column] = pd.Series(dtype=object)
    if records and not any('deployed' in record for record in records):
        frame['deployed'] = frame['date_deployed'].notna() & (frame['date_deployed'] != '')
    frame['deployed'] = frame['deployed'].fillna(False).astype(bool)
    logger.info('Asset %s has %d versions (%d deployed)', uid, len(frame), int(frame['deployed'].sum()))
    return frame


def kobo_get_version_urls(
    asset_version_list: Union[pd.DataFrame, Iterable[Mapping[str, Any]]],
) -> Dict[str, str]:
    """Label the URLs of deployed versions ``vN`` down to ``v1``.

    Records keep their input order, which is expected to be newest first, so
    the first deployed record receives the highest label.  No deployed
    records gives an empty mapping.
    """

    if isinstance(asset_version_list, pd.DataFrame):
        records = asset_version_list.to_dict('records')
    else:
        records = list(asset_version_list)
    deployed = [record for record in records if bool(record.get('deployed'))]
    total = len(deployed)
    return {f'v{total - index}': str(record['url']) for index, record in enumerate(deployed)}


# ---------------------------------------------------------------------------
# Form files


def kobo_retrieve_form(
    uid: str,
    form_type: str = 'xls',
    destination: Optional[Union[str, Path]] = None,
    token: Optional[str] = None,
    base_url: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> Path:
    """Download the XLSForm (``xls``) or XForm (``xml``) of an asset."""

    if form_type not in FORM_TYPES:
        raise ValueError(f'form_type must be one of {FORM_TYPES}, not {form_type!r}.')
    if destination is None:
        destination = Path(getattr(settings, 'FORMS_ROOT', 'forms')) / f'{uid}.{form_type}'
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)

    session = session or kobo_session(token)
    url = f'{resolve_api_base(base_url)}/assets/{uid}.{form_type}'
    try:
        response = session.get(url, stream=True, **request_options())
        response.raise_for_status()
        with destination.open('wb') as fh:
            for chunk in response.iter_content(chunk_size=65536):
                if chunk:
                    fh.write(chunk)
    except requests.RequestException as exc:
        raise KoboAPIError(f'Failed to download {form_type} form for asset {uid}: {exc}') from exc
    logger.info('Downloaded asset %s to %s', uid, destination)
    return destination


def kobo_deploy_form(
    file: Union[str, Path],
    uid: Optional[str] = None,
    token: Optional[str] = None,
    base_url: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> Dict[str, Any]:
    """Import an XLSForm workbook through ``POST /api/v2/imports/``.

    When ``uid`` is given the import replaces the content of that asset,
    otherwise KPI creates a new draft asset.
    """

    path = Path(file)
    if not path.is_file():
        raise FileNotFoundError(path)
    api_base = resolve_api_base(base_url)
    data = {'library': 'false'}
    if uid:
        data['destination'] = f'{api_base}/assets/{uid}/'

    session = session or kobo_session(token)
    try:
        with path.open('rb') as fh:
            response = session.post(
                f'{api_base}/imports/',
                data=data,
                files={'file': (path.name, fh, XLSX_CONTENT_TYPE)},
                **request_options(),
            )
        response.raise_for_status()
    except requests.RequestException as exc:
        raise KoboAPIError(f'Failed to import {path.name}: {exc}') from exc
    logger.info('Submitted %s for import (destination=%s)', path.name, data.get('destination', 'new asset'))
    return response.json()


__all__ = [
    'KoboAPIError',
    'kobo_asset_list',
    'kobo_asset_version_list',
    'kobo_deploy_form',
    'kobo_get_uid',
    'kobo_get_version_urls',
    'kobo_retrieve_form',
    'kobo_session',
    'request_options',
    'resolve_api_base',
    'resolve_token',
]
