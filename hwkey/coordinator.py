"""Run coordinator: sequence devices, aggregate outcomes, render the summary."""

from __future__ import annotations

import tarfile
import time
from typing import Callable, List, Optional

from . import backup, luks
from .credentials import Credential
from .devices import list_encrypted_devices
from .errors import HeaderBackupError, HwkeyError
from .executil import RetryPolicy, error, info
from .fingerprint import resolve
from .lifecycle import LifecycleContext, process_device
from .model import BACKED_UP, FAILED, DerivedKey, DeviceOutcome, Flags, RunResult
from .workspace import RunWorkspace


def _archive(result: RunResult, flags: Flags, credential: Credential, timestamp: str) -> None:
    headers = [o.header_path for o in result.outcomes if o.header_path]
    if not headers:
        return
    try:
        result.archive = backup.bundle_headers(
            headers,
            mode=flags.backup_mode,
            credential_kind=credential.kind,
            timestamp=timestamp,
            dry_run=flags.dry_run,
        )
    except (OSError, tarfile.TarError) as exc:
        result.archive_error = f"failed to create header archive: {exc}"
        error("coordinator.archive_failed", error=str(exc))


def run_keys(
        credential: Credential,
        flags: Flags,
        *,
        resolve_key: Callable[[], DerivedKey] = resolve,
        retry: Optional[RetryPolicy] = None,
        timestamp: Optional[str] = None,
) -> RunResult:
    """Install or refresh the hardware-derived key on every encrypted device.

    Fingerprint derivation happens first; :class:`HardwareUnavailable`
    propagates before any device is enumerated. Per-device failures are
    recorded in the result and never stop the run.
    """

    key = resolve_key()
    ts = timestamp or time.strftime("%Y%m%d_%H%M%S")
    result = RunResult(dry_run=flags.dry_run, mode="keys")
    devices = list_encrypted_devices()
    info("coordinator.start", mode="keys", devices=devices, dry_run=flags.dry_run)
    with RunWorkspace(key) as ws:
        ctx = LifecycleContext(
            credential=credential,
            derived=ws.derived,
            derived_keyfile=ws.keyfile,
            header_dir=ws.header_dir,
            dry_run=flags.dry_run,
            retry=retry or RetryPolicy(attempts=2),
        )
        for device in devices:
            result.record(process_device(ctx, device))
        _archive(result, flags, credential, ts)
    info("coordinator.done", added=result.added, skipped=result.skipped, failed=result.failed)
    return result


def _backup_only(device: str, credential: Credential, header_dir: str, dry_run: bool) -> DeviceOutcome:
    outcome = DeviceOutcome(device=device)
    try:
        dump = luks.dump(device)
        outcome.luks_version = dump.version
        outcome.used_slots = dump.used_slots
        outcome.total_slots = dump.total_slots
        if not credential.test(device):
            outcome.status = FAILED
            outcome.reason = f"Invalid {credential.kind}"
            return outcome
        outcome.header_path = backup.backup(device, dump, header_dir, dry_run=dry_run)
        outcome.mutations += 1
        outcome.status = BACKED_UP
    except HeaderBackupError as exc:
        outcome.status = FAILED
        outcome.reason = f"Header backup failed: {exc}"
    except (HwkeyError, OSError) as exc:
        outcome.status = FAILED
        outcome.reason = str(exc)
    return outcome


def run_headers(credential: Credential, flags: Flags, *, timestamp: Optional[str] = None) -> RunResult:
    """Back up and bundle the header of every device ``credential`` unlocks."""

    ts = timestamp or time.strftime("%Y%m%d_%H%M%S")
    result = RunResult(dry_run=flags.dry_run, mode="headers")
    devices = list_encrypted_devices()
    info("coordinator.start", mode="headers", devices=devices, dry_run=flags.dry_run)
    with RunWorkspace() as ws:
        for device in devices:
            result.record(_backup_only(device, credential, ws.header_dir, flags.dry_run))
        _archive(result, flags, credential, ts)
    return result


def run(credential: Credential, flags: Flags, **kwargs) -> RunResult:
    if flags.headers_only:
        return run_headers(credential, flags, timestamp=kwargs.get("timestamp"))
    return run_keys(credential, flags, **kwargs)


def _listing(items: List[str]) -> List[str]:
    if not items:
        return ["  - None"]
    return [f"  - {item}" for item in items]


def render_summary(result: RunResult, timestamp: Optional[str] = None) -> str:
    mode = "Dry Run" if result.dry_run else "Live Run"
    lines = [
        "=================================================",
        "---           LUKS Management Summary         ---",
        "=================================================",
        f"Mode: {mode}",
        f"Timestamp: {timestamp or time.strftime('%Y%m%d_%H%M%S')}",
        f"Total LUKS devices found: {len(result.outcomes)}",
        "",
        "--- Devices ---",
    ]
    for o in result.outcomes:
        slots = ""
        if o.used_slots is not None and o.total_slots is not None:
            slots = f" LUKS{o.luks_version} slots {o.used_slots}/{o.total_slots}"
        status = o.status.upper()
        detail = f": {o.reason}" if o.reason else ""
        lines.append(f"  - {o.device}{slots} -> {status}{detail}")
        if o.removed_slots:
            lines.append(f"      removed stale slots: {', '.join(map(str, o.removed_slots))}")
        if o.added_slot is not None:
            tag = " (provenance token written)" if o.token_written else ""
            lines.append(f"      new slot: {o.added_slot}{tag}")
        for note in o.warnings:
            lines.append(f"      warning: {note}")
    lines.append("")

    if result.mode == "headers":
        lines.append(f"Headers BACKED UP for ({len(result.backed_up)}) devices:")
        lines += _listing(result.backed_up)
        lines.append("")
    else:
        verb = "WOULD HAVE BEEN ADDED to" if result.dry_run else "SUCCESSFULLY ADDED to"
        lines.append(f"Keys {verb} ({len(result.added)}) devices:")
        lines += _listing(result.added)
        lines.append("")
        lines.append(f"Keys SKIPPED on ({len(result.skipped)}) devices (key already exists):")
        lines += _listing(result.skipped)
        lines.append("")

    lines.append(f"FAILED operations on ({len(result.failed)}) devices:")
    lines += _listing([f"{dev}: {reason}" for dev, reason in result.failed.items()])
    lines.append("")

    lines.append("--- Header Backup ---")
    verb = "simulated" if result.dry_run else "captured"
    lines.append(f"Headers {verb}: {result.headers_captured}")
    if result.archive:
        if result.dry_run:
            lines.append(f"Archive would be created at {result.archive}")
        else:
            lines.append(f"Archive created at {result.archive}")
    if result.archive_error:
        lines.append(f"Error: {result.archive_error}")
    lines += [
        "",
        "=================================================",
        "---                 End Summary               ---",
        "=================================================",
    ]
    return "\n".join(lines)
