"""Per-run scratch space holding the derived keyfile and captured headers."""

from __future__ import annotations

import os
import shutil
import stat
import tempfile
from typing import Optional

from .credentials import KeyfileCredential
from .executil import trace, warn
from .model import DerivedKey

KEYFILE_NAME = "hardware_tied.key"
HEADER_SUBDIR = "header_backups"


def _ensure_dir_secure(path: str) -> None:
    os.makedirs(path, exist_ok=True)
    os.chmod(path, 0o700)
    st = os.stat(path)
    if stat.S_IMODE(st.st_mode) != 0o700:
        raise PermissionError(f"directory {path} must have mode 0700")


def _write_secret(path: str, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "wb") as fh:
        fh.write(data)
        fh.flush()
        os.fsync(fh.fileno())
    os.chmod(path, 0o400)
    st = os.stat(path)
    if stat.S_IMODE(st.st_mode) != 0o400:
        raise PermissionError(f"keyfile {path} must have mode 0400")


class RunWorkspace:
    """Scoped temporary directory, removed on every exit path.

    ``with RunWorkspace(key) as ws:`` writes the derived key to
    ``ws.keyfile`` and exposes it as ``ws.derived`` (a keyfile credential).
    Without a key only the header directory is created.
    """

    def __init__(self, key: Optional[DerivedKey] = None, base_dir: Optional[str] = None):
        self._key = key
        self._base_dir = base_dir
        self.root: Optional[str] = None
        self.keyfile: Optional[str] = None
        self.header_dir: Optional[str] = None
        self.derived: Optional[KeyfileCredential] = None

    def __enter__(self) -> "RunWorkspace":
        self.root = tempfile.mkdtemp(prefix="hwkey-", dir=self._base_dir)
        try:
            _ensure_dir_secure(self.root)
            self.header_dir = os.path.join(self.root, HEADER_SUBDIR)
            _ensure_dir_secure(self.header_dir)
            if self._key is not None:
                self.keyfile = os.path.join(self.root, KEYFILE_NAME)
                _write_secret(self.keyfile, self._key.as_bytes())
                self.derived = KeyfileCredential(self.keyfile)
        except BaseException:
            self.cleanup()
            raise
        trace("workspace.created", root=self.root, keyfile=bool(self.keyfile))
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.cleanup()
        return False

    def cleanup(self) -> None:
        root = self.root
        if not root:
            return
        self.root = None
        self.derived = None
        try:
            shutil.rmtree(root)
        except FileNotFoundError:
            pass
        except OSError as exc:
            warn("workspace.cleanup_failed", root=root, error=str(exc))
            raise
        trace("workspace.removed", root=root)
