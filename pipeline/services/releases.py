"""Publish form bundles as GitHub releases.

Releases are tagged ``YYYY.MM.NN``: the year and month of the release
date and a counter that restarts every month.  The first release of a
repository starts the counter at ``release_start``.  Tags are computed
from the latest published release and the current date only; no state is
kept locally.

Assets are the XLSForm workbooks staged in the release directory plus a
flat ``media.zip`` of the form media folder, which is removed once the
upload finishes.
"""
from __future__ import annotations

import logging
import subprocess
import zipfile
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import requests
from django.conf import settings
from django.utils import timezone

logger = logging.getLogger(__name__)

ASSET_SUFFIXES = ('.xlsx', '.zip')
MEDIA_ARCHIVE = 'media.zip'


class ReleaseError(Exception):
    """Raised when a release cannot be tagged, created or uploaded."""


class GitRepositoryError(ReleaseError):
    """Raised when the GitHub repository cannot be read from git."""


# ---------------------------------------------------------------------------
# Repository discovery


def _run_git(args: List[str], cwd: Optional[Union[str, Path]] = None) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(['git', *args], cwd=cwd, capture_output=True, text=True, check=False)
    except FileNotFoundError as exc:
        raise GitRepositoryError('git executable not found on PATH.') from exc


def get_github_repository(full: bool = False, cwd: Optional[Union[str, Path]] = None) -> str:
    """Return the push remote of the current git repository.

    With ``full=False`` (default) the remote is reduced to ``owner/repo``
    for both ``git@github.com:owner/repo.git`` and
    ``https://github.com/owner/repo.git`` remotes.
    """

    status = _run_git(['rev-parse', '--is-inside-work-tree'], cwd=cwd)
    if status.returncode != 0:
        raise GitRepositoryError(
            'Current working directory should be a git repository; '
            'current working directory is not a git repository.'
        )

    remotes = _run_git(['remote', '-v'], cwd=cwd)
    push_remotes = [line for line in remotes.stdout.splitlines() if line.endswith('(push)')]
    if not push_remotes:
        raise GitRepositoryError('The git repository has no push remote configured.')
    origin = [line for line in push_remotes if line.startswith('origin\t')]
    line = (origin or push_remotes)[0]
    remote_url = line.split('\t', 1)[-1].rsplit(' (push)', 1)[0].strip()

    if full:
        return remote_url
    if '@' in remote_url and not remote_url.startswith('http'):
        repo = remote_url.split(':', 1)[-1]
    else:
        repo = remote_url.split('github.com/', 1)[-1]
    if repo.endswith('.git'):
        repo = repo[: -len('.git')]
    return repo.strip('/')


def resolve_repository(repo: Optional[str] = None) -> str:
    return repo or getattr(settings, 'GITHUB_REPOSITORY', None) or get_github_repository()


# ---------------------------------------------------------------------------
# Tags


def next_release_tag(latest_tag: Optional[str], today: date, release_start: int = 1) -> str:
    """Compute the tag that follows ``latest_tag`` on ``today``.

    * no previous release: ``{year}.{month}.{release_start}``
    * latest release in another year or month: ``{year}.{month}.01``
    * latest release in the current month: counter + 1
    """

    current_year = f'{today.year:04d}'
    current_month = f'{today.month:02d}'
    if not latest_tag:
        return f'{current_year}.{current_month}.{int(release_start):02d}'

    parts = latest_tag.strip().lstrip('v').split('.')
    if len(parts) != 3:
        raise ReleaseError(f'Latest release tag {latest_tag!r} is not in YYYY.MM.NN format.')
    latest_year, latest_month, latest_counter = parts

    if latest_year != current_year or latest_month != current_month:
        return f'{current_year}.{current_month}.01'
    try:
        counter = int(latest_counter)
    except ValueError as exc:
        raise ReleaseError(f'Latest release tag {latest_tag!r} has a non-numeric counter.') from exc
    return f'{current_year}.{current_month}.{counter + 1:02d}'


# ---------------------------------------------------------------------------
# GitHub API


def github_session(token: Optional[str] = None) -> requests.Session:
    """Create a requests Session authorised for the GitHub REST API."""

    if token is None:
        token = getattr(settings, 'GITHUB_TOKEN', '')
    session = requests.Session()
    session.headers.update({
        'Accept': 'application/vnd.github+json',
        'X-GitHub-Api-Version': '2022-11-28',
    })
    if token:
        session.headers['Authorization'] = f'Bearer {token}'
    return session


def _api_url(path: str) -> str:
    api_base = getattr(settings, 'GITHUB_API_BASE', 'https://api.github.com').rstrip('/')
    return f'{api_base}/{path.lstrip("/")}'


def _request(session: requests.Session, method: str, url: str, **kwargs: Any) -> requests.Response:
    try:
        response = session.request(method, url, timeout=60, **kwargs)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise ReleaseError(f'GitHub request {method} {url} failed: {exc}') from exc
    return response


def github_latest_release_tag(repo: str, session: requests.Session) -> Optional[str]:
    """Return the tag of the latest release, or ``None`` when there is none."""

    releases = _request(session, 'GET', _api_url(f'repos/{repo}/releases')).json()
    if not releases:
        return None
    try:
        latest = session.get(_api_url(f'repos/{repo}/releases/latest'), timeout=60)
    except requests.RequestException as exc:
        raise ReleaseError(f'Failed to read the latest release of {repo}: {exc}') from exc
    if latest.status_code == 404:
        # Only drafts or pre-releases exist; fall back to the newest listed.
        return releases[0].get('tag_name')
    try:
        latest.raise_for_status()
    except requests.RequestException as exc:
        raise ReleaseError(f'Failed to read the latest release of {repo}: {exc}') from exc
    return latest.json().get('tag_name')


def github_create_release_tag(
    repo: Optional[str] = None,
    release_start: Optional[int] = None,
    today: Optional[date] = None,
    session: Optional[requests.Session] = None,
) -> str:
    """Compute the next release tag for ``repo``."""

    repo = resolve_repository(repo)
    session = session or github_session()
    if release_start is None:
        release_start = getattr(settings, 'RELEASE_START', 1)
    today = today or timezone.localdate()
    latest_tag = github_latest_release_tag(repo, session)
    tag = next_release_tag(latest_tag, today, release_start=release_start)
    logger.info('Next release tag for %s: %s (latest %s)', repo, tag, latest_tag or 'none')
    return tag


def github_create_release(
    repo: Optional[str] = None,
    body: Optional[str] = None,
    release_start: Optional[int] = None,
    today: Optional[date] = None,
    session: Optional[requests.Session] = None,
) -> str:
    """Create a release with the next tag and return the tag."""

    repo = resolve_repository(repo)
    session = session or github_session()
    if body is None:
        body = getattr(settings, 'RELEASE_BODY', 'Form release')
    tag = github_create_release_tag(repo, release_start=release_start, today=today, session=session)
    _request(
        session,
        'POST',
        _api_url(f'repos/{repo}/releases'),
        json={'tag_name': tag, 'name': tag, 'body': body},
    )
    logger.info('Created release %s on %s', tag, repo)
    return tag


def zip_media(media_dir: Path, archive: Path) -> Path:
    """Zip every file below ``media_dir`` into ``archive`` without folders.

    Two files with the same name in different subfolders would collide in
    the flat archive and raise :class:`ReleaseError`.
    """

    seen: Dict[str, Path] = {}
    with zipfile.ZipFile(archive, 'w', compression=zipfile.ZIP_DEFLATED) as zf:
        for path in sorted(media_dir.rglob('*')):
            if not path.is_file():
                continue
            if path.name in seen:
                raise ReleaseError(f'Media files {seen[path.name]} and {path} share the name {path.name}.')
            seen[path.name] = path
            zf.write(path, arcname=path.name)
    return archive


def _upload_url(release: Dict[str, Any], repo: str) -> str:
    upload_url = release.get('upload_url')
    if upload_url:
        return upload_url.split('{', 1)[0]
    uploads_base = getattr(settings, 'GITHUB_UPLOADS_BASE', 'https://uploads.github.com').rstrip('/')
    return f"{uploads_base}/repos/{repo}/releases/{release['id']}/assets"


def github_upload_release(
    tag: str,
    repo: Optional[str] = None,
    release_dir: Optional[Union[str, Path]] = None,
    session: Optional[requests.Session] = None,
) -> List[str]:
    """Upload the staged workbooks and zipped media to the release ``tag``.

    Returns the names of the uploaded assets.
    """

    repo = resolve_repository(repo)
    session = session or github_session()
    release_dir = Path(release_dir or getattr(settings, 'FORMS_RELEASE_DIR', Path('forms') / 'release'))
    media_dir = release_dir / 'media'
    archive = release_dir / MEDIA_ARCHIVE
    if not release_dir.is_dir():
        raise ReleaseError(f'Release directory {release_dir} does not exist.')

    try:
        if media_dir.is_dir():
            zip_media(media_dir, archive)
        else:
            logger.warning('No media folder at %s; uploading workbooks only', media_dir)

        release = _request(session, 'GET', _api_url(f'repos/{repo}/releases/tags/{tag}')).json()
        upload_url = _upload_url(release, repo)
        uploaded: List[str] = []
        assets = sorted(
            path for path in release_dir.iterdir()
            if path.is_file() and path.suffix.lower() in ASSET_SUFFIXES
        )
        for path in assets:
            with path.open('rb') as fh:
                _request(
                    session,
                    'POST',
                    upload_url,
                    params={'name': path.name},
                    data=fh,
                    headers={'Content-Type': 'application/octet-stream'},
                )
            logger.info('Uploaded %s to release %s', path.name, tag)
            uploaded.append(path.name)
    finally:
        archive.unlink(missing_ok=True)
    return uploaded


__all__ = [
    'GitRepositoryError',
    'ReleaseError',
    'get_github_repository',
    'github_create_release',
    'github_create_release_tag',
    'github_latest_release_tag',
    'github_session',
    'github_upload_release',
    'next_release_tag',
    'zip_media',
]
