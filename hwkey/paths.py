from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_BASE = "/var/lib/hwkey"
_DEFAULT_HEADER_DIR = "/boot/config/luksheaders"
_DEFAULT_DOWNLOAD_DIR = "/tmp/luksheaders"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def hwkey_base_path() -> str:
    """Return the base directory for hwkey state such as logs.

    The location can be overridden via the ``HWKEY_BASE_PATH`` environment
    variable.
    """

    override = os.environ.get("HWKEY_BASE_PATH")
    if override:
        return _expand(override)
    return _expand(_DEFAULT_BASE)


def hwkey_logs_dir() -> str:
    return str(Path(hwkey_base_path()) / "logs")


def header_archive_dir(mode: str = "server") -> str:
    """Directory receiving the bundled header archive for ``mode``.

    ``server`` keeps the archive on the flash config share so it survives a
    reboot; ``download`` stages it in a scratch directory for the caller to
    fetch.
    """

    if mode == "download":
        return _expand(os.environ.get("HWKEY_DOWNLOAD_DIR") or _DEFAULT_DOWNLOAD_DIR)
    if mode == "server":
        return _expand(os.environ.get("HWKEY_HEADER_DIR") or _DEFAULT_HEADER_DIR)
    raise ValueError(f"unknown header backup mode: {mode!r}")
