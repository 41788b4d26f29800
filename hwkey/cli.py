"""CLI entrypoint for the hardware-bound LUKS key manager."""

from __future__ import annotations

import argparse
import json
import sys
import time
from typing import Any, Dict, Optional

from .coordinator import render_summary, run
from .credentials import Credential, KeyfileCredential, credential_from_env, normalize_path, passphrase_from_file
from .errors import CredentialError, HardwareToolMissing, HardwareUnavailable
from .executil import append_jsonl, resolve_log_path, trace
from .model import Flags, RunResult

RESULT_CODES: Dict[str, int] = {
    "RUN_OK": 0,
    "DRYRUN_OK": 0,
    "FAIL_CREDENTIAL": 2,
    "FAIL_DEVICES": 3,
    "FAIL_HARDWARE": 4,
    "FAIL_HARDWARE_TOOL": 4,
    "FAIL_UNHANDLED": 12,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hwkey",
        description="Add a hardware-derived unlock key to every LUKS device.",
    )
    parser.add_argument("--dry-run", action="store_true", help="decide everything, change nothing")
    parser.add_argument("--backup-mode", choices=("server", "download"), default="server")
    parser.add_argument("--headers-only", action="store_true", help="only back up LUKS headers")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--passphrase-file", default=None)
    group.add_argument("--keyfile", default=None)
    parser.add_argument("--json", dest="json", action="store_true", default=True)
    parser.add_argument("--no-json", dest="json", action="store_false")
    return parser


def _credential(args: argparse.Namespace) -> Credential:
    if args.passphrase_file:
        return passphrase_from_file(args.passphrase_file)
    if args.keyfile:
        return KeyfileCredential(normalize_path(args.keyfile) or args.keyfile)
    return credential_from_env()


def result_kind(result: RunResult) -> str:
    if not result.ok:
        return "FAIL_DEVICES"
    return "DRYRUN_OK" if result.dry_run else "RUN_OK"


def _emit_result(kind: str, flags: Flags, extra: Optional[Dict[str, Any]] = None) -> int:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time())}
    if extra:
        payload.update(extra)
    log_path = resolve_log_path()
    if log_path:
        payload.setdefault("log_path", log_path)
        append_jsonl(log_path, payload)
    if flags.json:
        print(json.dumps(payload, sort_keys=True, separators=(",", ":")))
    return RESULT_CODES.get(kind, 1)


def _main_impl(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    flags = Flags(
        dry_run=args.dry_run,
        backup_mode=args.backup_mode,
        headers_only=args.headers_only,
        json=args.json,
    )
    trace("cli.args", dry_run=flags.dry_run, backup_mode=flags.backup_mode, headers_only=flags.headers_only)

    try:
        credential = _credential(args)
    except CredentialError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return _emit_result("FAIL_CREDENTIAL", flags, {"why": str(exc)})

    timestamp = time.strftime("%Y%m%d_%H%M%S")
    try:
        result = run(credential, flags, timestamp=timestamp)
    except HardwareToolMissing as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return _emit_result("FAIL_HARDWARE_TOOL", flags, {"why": str(exc), "dry_run": flags.dry_run})
    except HardwareUnavailable as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return _emit_result("FAIL_HARDWARE", flags, {"why": str(exc), "dry_run": flags.dry_run})

    print(render_summary(result, timestamp=timestamp))
    if result.archive and flags.backup_mode == "download" and not flags.dry_run:
        print(f"DOWNLOAD_READY: {result.archive}")
    return _emit_result(result_kind(result), flags, result.to_dict())


def main(argv: Optional[list[str]] = None) -> int:
    try:
        return _main_impl(argv)
    except Exception as exc:  # noqa: BLE001
        print(f"Error: {exc}", file=sys.stderr)
        return _emit_result("FAIL_UNHANDLED", Flags(), {"error": str(exc)})


if __name__ == "__main__":
    sys.exit(main())
