from __future__ import annotations

# Header backup capture and archive bundling
import io
import os
import tarfile
import time
from typing import List, Optional, Sequence

from . import luks
from .errors import HeaderBackupError, LuksCommandError
from .executil import info, trace
from .luks_dump import LuksDump
from .paths import header_archive_dir


def header_filename(uuid: str, device: str) -> str:
    return f"HEADER_UUID_{uuid}_DEVICE_{os.path.basename(device.rstrip('/'))}.img"


def backup(device: str, dump: LuksDump, header_dir: str, dry_run: bool = False) -> str:
    """Capture ``device``'s LUKS header into ``header_dir`` and return its path.

    In dry-run the destination is computed and returned but nothing is
    written. Any failure raises :class:`HeaderBackupError`.
    """

    if not dump.uuid:
        raise HeaderBackupError("could not retrieve LUKS UUID")
    dest = os.path.join(header_dir, header_filename(dump.uuid, device))
    try:
        luks.header_backup(device, dest, dry_run=dry_run)
    except LuksCommandError as exc:
        raise HeaderBackupError(str(exc)) from exc
    if not dry_run and not os.path.isfile(dest):
        raise HeaderBackupError(f"luksHeaderBackup reported success but {dest} is missing")
    trace("backup.header", device=device, path=dest, dry_run=dry_run)
    return dest


def restore_note(count: int, credential_kind: str, generated: str) -> str:
    return (
        "LUKS Header Backup Information\n"
        "=============================\n"
        f"Generated: {generated}\n"
        f"Authentication: {credential_kind}\n"
        f"Number of devices backed up: {count}\n\n"
        "This archive contains LUKS header backups for your encrypted devices.\n"
        "The archive itself is NOT encrypted. Each header is only as safe as the\n"
        "keyslots it contains, so store this file where only you can read it.\n\n"
        "To restore a header:\n"
        "cryptsetup luksHeaderRestore /dev/sdXY --header-backup-file HEADER_FILE.img\n\n"
        "IMPORTANT: Keep this backup secure and test restoration procedures.\n"
    )


def bundle_headers(
        headers: Sequence[str],
        mode: str = "server",
        credential_kind: str = "passphrase",
        timestamp: Optional[str] = None,
        dry_run: bool = False,
) -> Optional[str]:
    """Bundle captured header images into ``luksheaders_<ts>.tar.gz``.

    Returns the archive path, or ``None`` when there is nothing to bundle.
    """

    if not headers:
        return None
    ts = timestamp or time.strftime("%Y%m%d_%H%M%S")
    out_dir = header_archive_dir(mode)
    archive = os.path.join(out_dir, f"luksheaders_{ts}.tar.gz")
    if dry_run:
        info("backup.archive.dry_run", path=archive, headers=len(headers))
        return archive
    os.makedirs(out_dir, exist_ok=True)
    note = restore_note(len(headers), credential_kind, time.strftime("%Y-%m-%d %H:%M:%S %Z")).encode("utf-8")
    added: List[str] = []
    with tarfile.open(archive, "w:gz") as tar:
        for path in headers:
            tar.add(path, arcname=os.path.basename(path))
            added.append(os.path.basename(path))
        member = tarfile.TarInfo(name=f"luks_backup_info_{ts}.txt")
        member.size = len(note)
        member.mtime = int(time.time())
        member.mode = 0o600
        tar.addfile(member, io.BytesIO(note))
    os.chmod(archive, 0o600)
    info("backup.archive", path=archive, members=added, mode=mode)
    return archive
