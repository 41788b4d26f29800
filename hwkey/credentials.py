"""Authentication credentials for cryptsetup operations.

Every credential can ``test`` itself against a device and ``authorize`` a
cryptsetup command line. The lifecycle engine only talks to this interface,
so passphrases, user keyfiles and the derived keyfile are interchangeable.
Secrets travel through stdin or a file path, never through argv.
"""

from __future__ import annotations

import abc
import os
from typing import List, Mapping, Optional, Sequence, Tuple

from . import luks
from .errors import CredentialError

MAX_PASSPHRASE_CHARS = 512
MAX_KEYFILE_BYTES = 8 * 1024 * 1024


class Credential(abc.ABC):
    kind = ""

    @abc.abstractmethod
    def key_file_args(self) -> Tuple[List[str], Optional[str]]:
        """Return the ``--key-file`` arguments and the stdin payload, if any."""

    def authorize(self, cmd: Sequence[str]) -> Tuple[List[str], Optional[str]]:
        """Insert this credential right after ``cryptsetup <action>``."""

        cmd = list(cmd)
        args, data = self.key_file_args()
        return cmd[:2] + args + cmd[2:], data

    def test(self, device: str, key_slot: Optional[int] = None) -> bool:
        return luks.can_unlock(device, self, key_slot=key_slot)


class PassphraseCredential(Credential):
    kind = "passphrase"

    def __init__(self, passphrase: str):
        if not passphrase:
            raise CredentialError("passphrase is empty")
        if len(passphrase) > MAX_PASSPHRASE_CHARS:
            raise CredentialError(f"passphrase exceeds {MAX_PASSPHRASE_CHARS} characters")
        self._passphrase = passphrase

    def __repr__(self) -> str:
        return "PassphraseCredential(<redacted>)"

    def key_file_args(self) -> Tuple[List[str], Optional[str]]:
        return ["--key-file", "-"], self._passphrase


class KeyfileCredential(Credential):
    kind = "keyfile"

    def __init__(self, path: str):
        if not path:
            raise CredentialError("keyfile path is empty")
        if not os.path.isfile(path):
            raise CredentialError(f"keyfile not found at {path}")
        if not os.access(path, os.R_OK):
            raise CredentialError(f"keyfile not readable at {path}")
        size = os.path.getsize(path)
        if size == 0:
            raise CredentialError(f"keyfile {path} is empty")
        if size > MAX_KEYFILE_BYTES:
            raise CredentialError(f"keyfile {path} exceeds {MAX_KEYFILE_BYTES} bytes")
        self.path = path

    def __repr__(self) -> str:
        return f"KeyfileCredential({self.path!r})"

    def key_file_args(self) -> Tuple[List[str], Optional[str]]:
        return ["--key-file", self.path], None


def normalize_path(path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    return os.path.abspath(os.path.expanduser(path))


def passphrase_from_file(path: str) -> PassphraseCredential:
    resolved = normalize_path(path)
    if not resolved or not os.path.isfile(resolved):
        raise CredentialError(f"passphrase file not found: {path}")
    try:
        with open(resolved, "r", encoding="utf-8") as fh:
            text = fh.read(MAX_PASSPHRASE_CHARS + 2)
    except UnicodeDecodeError as exc:
        raise CredentialError(f"passphrase file {path} is not valid UTF-8") from exc
    # Editors add one trailing newline; anything else is part of the secret.
    if text.endswith("\r\n"):
        text = text[:-2]
    elif text.endswith("\n"):
        text = text[:-1]
    return PassphraseCredential(text)


def credential_from_env(environ: Optional[Mapping[str, str]] = None) -> Credential:
    env = os.environ if environ is None else environ
    passphrase = env.get("LUKS_PASSPHRASE")
    if passphrase:
        return PassphraseCredential(passphrase)
    keyfile = env.get("LUKS_KEYFILE")
    if keyfile:
        return KeyfileCredential(normalize_path(keyfile) or keyfile)
    raise CredentialError(
        "no credential provided; use --passphrase-file/--keyfile or LUKS_PASSPHRASE/LUKS_KEYFILE"
    )
