"""Error taxonomy for the hardware-bound key lifecycle."""

from __future__ import annotations

from typing import Sequence


class HwkeyError(Exception):
    """Base class for every error raised by hwkey."""


class HardwareUnavailable(HwkeyError):
    """A hardware identifier could not be read; fatal for the whole run."""


class HardwareToolMissing(HardwareUnavailable):
    """The tool used to read a hardware identifier is not installed."""


class CredentialError(HwkeyError, ValueError):
    """The caller credential is missing, empty or over its size limit."""


class DumpParseError(HwkeyError):
    """``cryptsetup luksDump`` output did not match a known format."""


class LuksCommandError(HwkeyError):
    def __init__(self, action: str, cmd: Sequence[str], rc: int, err: str = ""):
        self.action = action
        self.cmd = list(cmd)
        self.rc = rc
        self.err = (err or "").strip()
        detail = f": {self.err}" if self.err else ""
        super().__init__(f"cryptsetup {action} failed (rc={rc}){detail}")


class HeaderBackupError(HwkeyError):
    """The recovery header could not be captured."""


class SafetyInvariantError(HwkeyError):
    """A slot removal would leave the device without a working keyslot."""


class SlotInstallError(HwkeyError):
    """The derived key could not be enrolled, or did not unlock afterwards."""
