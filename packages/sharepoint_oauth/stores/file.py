"""File-backed credential store shared by every window of the application."""

import asyncio
import json
import logging
import os
import stat
import tempfile
import threading
import typing as t
from pathlib import Path

from sharepoint_oauth.models import Credential
from sharepoint_oauth.stores.base import CredentialStore

logger = logging.getLogger(__name__)

_path_locks: t.Dict[Path, threading.Lock] = {}
_path_locks_guard = threading.Lock()


def _lock_for(path: Path) -> threading.Lock:
    with _path_locks_guard:
        return _path_locks.setdefault(path.resolve(), threading.Lock())


class FileCredentialStore(CredentialStore):
    """JSON credential store keyed by service URL.

    The file is re-read on every call and rewritten through a temporary
    file followed by ``os.replace``, so separate processes observe each
    other's writes and never see a half-written file. Files are chmod 0600.

    File access runs in a worker thread. Read-modify-write updates are
    serialized between store instances of the same process; two processes
    saving at the same moment can still lose one of the updates.
    """

    def __init__(self, path: t.Union[str, Path]) -> None:
        self.path = Path(path)
        self._lock = _lock_for(self.path)

    def _read_all(self) -> t.Dict[str, t.Dict[str, t.Any]]:
        try:
            data = json.loads(self.path.read_text(encoding='utf-8'))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning('Failed to read credentials from %s: %s', self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: t.Dict[str, t.Dict[str, t.Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f'.{self.path.name}.', suffix='.tmp', dir=self.path.parent)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2)
            os.chmod(tmp_name, stat.S_IRUSR | stat.S_IWUSR)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _save_sync(self, credential: Credential) -> None:
        with self._lock:
            data = self._read_all()
            data[credential.service_url] = credential.to_dict()
            self._write_all(data)

    def _delete_sync(self, service_url: str) -> bool:
        with self._lock:
            data = self._read_all()
            if data.pop(service_url, None) is None:
                return False
            self._write_all(data)
            return True

    async def save_credential(self, credential: Credential) -> None:
        await asyncio.to_thread(self._save_sync, credential)
        logger.info('Saved credential for %s', credential.service_url)

    async def load_credential(self, service_url: str) -> t.Optional[Credential]:
        entry = (await asyncio.to_thread(self._read_all)).get(service_url)
        if entry is None:
            return None
        try:
            return Credential.from_dict(entry)
        except (TypeError, ValueError) as e:
            logger.warning('Ignoring corrupt credential for %s: %s', service_url, e)
            return None

    async def delete_credential(self, service_url: str) -> bool:
        if not await asyncio.to_thread(self._delete_sync, service_url):
            return False
        logger.info('Deleted credential for %s', service_url)
        return True
