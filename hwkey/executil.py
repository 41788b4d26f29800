from __future__ import annotations

"""Subprocess wrapper, dry-run hook, JSONL trace logging and retry policy."""

import datetime as _dt
import json
import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, Sequence, TypeVar

from .paths import hwkey_logs_dir


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "hwkey.jsonl"

T = TypeVar("T")


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        hwkey_logs_dir(),
        "/var/log/hwkey",
        "/tmp/hwkey-logs",
    ]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, exist_ok=True)
            LOG_PATH = os.path.join(d_expanded, LOG_NAME)
            return LOG_PATH
        except OSError:
            continue
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


def _utc_now() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat().replace("+00:00", "Z")


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration

    @property
    def ok(self) -> bool:
        return self.rc == 0


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("HWKEY_LOG_LEVEL", "INFO").upper()


def _write_jsonl(obj: dict):
    path = _ensure_logger()
    try:
        if path:
            with open(path, "a", encoding="utf-8") as f:
                f.write(json.dumps(obj, default=str) + "\n")
    except OSError:
        pass


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 20)
    if lvl < cur:
        return
    rec = {"ts": _utc_now(), "level": level.upper(), "event": event}
    rec.update(fields)
    _write_jsonl(rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def info(event: str, **fields):
    log("INFO", event, **fields)


def warn(event: str, **fields):
    log("WARN", event, **fields)


def error(event: str, **fields):
    log("ERROR", event, **fields)


def run(
    cmd: Sequence[str],
    check: bool = True,
    dry_run: bool = False,
    timeout: float = 60.0,
    env: dict | None = None,
    input: str | None = None,
) -> Result:
    """Run ``cmd`` and capture its output.

    ``input`` is fed to the child's stdin and is never logged; callers use it
    for secrets so they stay out of argv and the trace log. With ``dry_run``
    the command is logged but not executed and a successful result is
    returned.
    """

    trace("exec.start", cmd=list(cmd), dry_run=dry_run)
    started = time.time()
    if dry_run:
        text = "DRY-RUN: " + " ".join(shlex.quote(c) for c in cmd)
        return Result(0, text, "", 0.0)
    env2 = (env or os.environ).copy()
    # cryptsetup and lsblk output is parsed; keep it in the C locale.
    env2.setdefault("LC_ALL", "C")
    try:
        proc = subprocess.run(
            list(cmd),
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env2,
            input=input,
        )
    except subprocess.TimeoutExpired:
        dur = time.time() - started
        warn("exec.timeout", cmd=list(cmd), timeout=timeout, dur=dur)
        if check:
            raise
        return Result(124, "", f"timed out after {timeout}s", dur)
    dur = time.time() - started
    trace("exec.done", cmd=list(cmd), rc=proc.returncode, dur=dur, err=proc.stderr)
    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, cmd, proc.stdout, proc.stderr)
    return Result(proc.returncode, proc.stdout, proc.stderr, dur)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry: call ``fn`` up to ``attempts`` times.

    The delay between attempts doubles up to ``max_delay``. The last
    exception is re-raised once the attempts are used up.
    """

    attempts: int = 2
    base: float = 0.5
    max_delay: float = 4.0

    def call(self, fn: Callable[[], T], *, label: str = "") -> T:
        delay = self.base
        tries = max(1, self.attempts)
        for attempt in range(1, tries):
            try:
                return fn()
            except Exception as exc:  # noqa: BLE001
                warn("retry.attempt_failed", label=label, attempt=attempt, attempts=tries, error=str(exc))
                time.sleep(delay)
                delay = min(self.max_delay, delay * 2)
        try:
            return fn()
        except Exception as exc:
            warn("retry.attempt_failed", label=label, attempt=tries, attempts=tries, error=str(exc))
            raise


def append_jsonl(path: str, obj: dict):
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
    except OSError:
        pass
