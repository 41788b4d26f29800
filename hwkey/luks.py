"""cryptsetup contracts used by the key lifecycle."""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Iterable, Optional

from .errors import LuksCommandError
from .executil import Result, run
from .luks_dump import LuksDump, parse_dump

if TYPE_CHECKING:
    from .credentials import Credential

CRYPTSETUP = "cryptsetup"

_KEY_SLOT_CREATED_RE = re.compile(r"key slot\s+(\d+)\s+created", re.IGNORECASE)


def _checked(action: str, cmd: list[str], res: Result) -> Result:
    if res.rc != 0:
        raise LuksCommandError(action, cmd, res.rc, res.err)
    return res


def dump(device: str) -> LuksDump:
    cmd = [CRYPTSETUP, "luksDump", device]
    res = _checked("luksDump", cmd, run(cmd, check=False, timeout=60.0))
    return parse_dump(res.out)


def can_unlock(device: str, credential: "Credential", key_slot: Optional[int] = None) -> bool:
    """Non-mutating check that ``credential`` opens ``device`` (optionally one slot)."""

    base = [CRYPTSETUP, "luksOpen", "--test-passphrase"]
    if key_slot is not None:
        base += ["--key-slot", str(key_slot)]
    cmd, data = credential.authorize(base + [device])
    res = run(cmd, check=False, timeout=120.0, input=data)
    return res.rc == 0


def parse_created_slot(streams: Iterable[str]) -> Optional[int]:
    for text in streams:
        if not text:
            continue
        match = _KEY_SLOT_CREATED_RE.search(text)
        if match:
            return int(match.group(1))
    return None


def add_key(device: str, new_keyfile: str, credential: "Credential", dry_run: bool = False) -> Result:
    """Enrol ``new_keyfile`` in a free slot, authorised by ``credential``."""

    cmd, data = credential.authorize([CRYPTSETUP, "luksAddKey", "-v", "--batch-mode", device, new_keyfile])
    return _checked("luksAddKey", cmd, run(cmd, check=False, dry_run=dry_run, timeout=180.0, input=data))


def kill_slot(device: str, slot: int, credential: "Credential", dry_run: bool = False) -> Result:
    cmd, data = credential.authorize([CRYPTSETUP, "luksKillSlot", "--batch-mode", device, str(slot)])
    return _checked("luksKillSlot", cmd, run(cmd, check=False, dry_run=dry_run, timeout=180.0, input=data))


def header_backup(device: str, destination: str, dry_run: bool = False) -> Result:
    cmd = [CRYPTSETUP, "luksHeaderBackup", device, "--header-backup-file", destination]
    return _checked("luksHeaderBackup", cmd, run(cmd, check=False, dry_run=dry_run, timeout=120.0))


def token_export(device: str, token_id: int) -> str:
    cmd = [CRYPTSETUP, "token", "export", "--token-id", str(token_id), device]
    return _checked("token export", cmd, run(cmd, check=False, timeout=60.0)).out


def token_import(device: str, payload: str, token_id: Optional[int] = None, dry_run: bool = False) -> Result:
    cmd = [CRYPTSETUP, "token", "import", "--json-file", "-"]
    if token_id is not None:
        cmd += ["--token-id", str(token_id)]
    cmd.append(device)
    return _checked("token import", cmd, run(cmd, check=False, dry_run=dry_run, timeout=60.0, input=payload))


def token_remove(device: str, token_id: int, dry_run: bool = False) -> Result:
    cmd = [CRYPTSETUP, "token", "remove", "--token-id", str(token_id), device]
    return _checked("token remove", cmd, run(cmd, check=False, dry_run=dry_run, timeout=60.0))
