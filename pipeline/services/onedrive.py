"""Download form sources and media from OneDrive via Microsoft Graph.

The study team keeps the XLSForm workbooks, their media folder and the
anonymised patient workbook on a OneDrive for Business drive.  Paths are
addressed relative to the drive root (``root:/{path}:``).  Downloads always
overwrite the local copy unless told otherwise.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union
from urllib.parse import quote

import requests
from django.conf import settings

logger = logging.getLogger(__name__)


class OneDriveError(Exception):
    """Raised when a OneDrive download fails."""


class OneDriveClient:
    """Minimal Microsoft Graph drive client for downloads."""

    def __init__(
        self,
        token: Optional[str] = None,
        api_base: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.api_base = (api_base or getattr(settings, 'ONEDRIVE_API_BASE')).rstrip('/')
        self.timeout = getattr(settings, 'ONEDRIVE_HTTP_TIMEOUT', 120)
        self.session = session or requests.Session()
        if token is None:
            token = getattr(settings, 'ONEDRIVE_ACCESS_TOKEN', '')
        self.session.headers.update({'Authorization': f'Bearer {token}'})

    def _item_url(self, remote_path: str, suffix: str = '') -> str:
        path = quote(remote_path.strip('/'))
        return f'{self.api_base}/root:/{path}:{suffix}'

    def _get(self, url: str, **kwargs: Any) -> requests.Response:
        try:
            response = self.session.get(url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise OneDriveError(f'OneDrive request to {url} failed: {exc}') from exc
        return response

    def list_children(self, remote_path: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        url: Optional[str] = self._item_url(remote_path, '/children')
        while url:
            payload = self._get(url).json()
            items.extend(payload.get('value', []))
            url = payload.get('@odata.nextLink')
        return items

    def download_file(self, src: str, dest: Union[str, Path], overwrite: bool = True) -> Path:
        """Download the drive file ``src`` to the local path ``dest``."""

        dest = Path(dest)
        if dest.exists() and not overwrite:
            logger.info('%s exists; skipping download of %s', dest, src)
            return dest
        dest.parent.mkdir(parents=True, exist_ok=True)
        response = self._get(self._item_url(src, '/content'), stream=True)
        with dest.open('wb') as fh:
            for chunk in response.iter_content(chunk_size=65536):
                if chunk:
                    fh.write(chunk)
        logger.info('Downloaded %s to %s', src, dest)
        return dest

    def download_folder(self, src: str, dest: Union[str, Path], overwrite: bool = True) -> List[Path]:
        """Download every file below the drive folder ``src`` into ``dest``."""

        dest = Path(dest)
        dest.mkdir(parents=True, exist_ok=True)
        downloaded: List[Path] = []
        for item in self.list_children(src):
            name = item.get('name')
            if not name:
                continue
            child_src = f"{src.rstrip('/')}/{name}"
            if 'folder' in item:
                downloaded.extend(self.download_folder(child_src, dest / name, overwrite=overwrite))
            else:
                downloaded.append(self.download_file(child_src, dest / name, overwrite=overwrite))
        return downloaded


def retrieve_release_forms(
    client: Optional[OneDriveClient] = None,
    form_paths: Optional[Iterable[str]] = None,
    media_path: Optional[str] = None,
    release_dir: Optional[Union[str, Path]] = None,
) -> List[Path]:
    """Stage the XLSForm workbooks and media folder for a release.

    Workbooks land directly in ``release_dir``; the media folder lands in
    ``release_dir/media``.  Returns every local path written.
    """

    client = client or OneDriveClient()
    if form_paths is None:
        form_paths = getattr(settings, 'ONEDRIVE_FORM_PATHS', [])
    if media_path is None:
        media_path = getattr(settings, 'ONEDRIVE_MEDIA_PATH', None)
    release_dir = Path(release_dir or getattr(settings, 'FORMS_RELEASE_DIR', Path('forms') / 'release'))

    paths: List[Path] = []
    for form_path in form_paths:
        name = form_path.rstrip('/').rsplit('/', 1)[-1]
        paths.append(client.download_file(form_path, release_dir / name, overwrite=True))
    if media_path:
        paths.extend(client.download_folder(media_path, release_dir / 'media', overwrite=True))
    logger.info('Staged %d files in %s', len(paths), release_dir)
    return paths


__all__ = ['OneDriveClient', 'OneDriveError', 'retrieve_release_forms']
