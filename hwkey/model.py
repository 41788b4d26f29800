from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

ADDED = "added"
SKIPPED = "skipped"
FAILED = "failed"
BACKED_UP = "backed_up"


@dataclass
class Flags:
    dry_run: bool = False
    backup_mode: str = "server"
    headers_only: bool = False
    json: bool = True


@dataclass(frozen=True)
class HardwareFingerprint:
    serial: str
    mac: str

    def derive(self) -> "DerivedKey":
        material = f"{self.serial}_{self.mac}".encode("utf-8")
        return DerivedKey(hashlib.sha256(material).hexdigest())


@dataclass(frozen=True)
class DerivedKey:
    value: str = field(repr=False)

    def as_bytes(self) -> bytes:
        return self.value.encode("ascii")


@dataclass(frozen=True)
class ProvenanceToken:
    token_id: Optional[int]
    type: str
    keyslots: tuple[int, ...]
    version: Optional[str] = None
    generation_time: Optional[str] = None


@dataclass
class DeviceOutcome:
    device: str
    status: str = ""
    reason: str = ""
    luks_version: Optional[int] = None
    used_slots: Optional[int] = None
    total_slots: Optional[int] = None
    header_path: Optional[str] = None
    removed_slots: List[int] = field(default_factory=list)
    added_slot: Optional[int] = None
    token_written: bool = False
    mutations: int = 0
    warnings: List[str] = field(default_factory=list)

    def warn(self, message: str) -> None:
        self.warnings.append(message)


@dataclass
class RunResult:
    dry_run: bool = False
    mode: str = "keys"
    added: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    backed_up: List[str] = field(default_factory=list)
    headers_captured: int = 0
    archive: Optional[str] = None
    archive_error: Optional[str] = None
    outcomes: List[DeviceOutcome] = field(default_factory=list)

    def record(self, outcome: DeviceOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.header_path:
            self.headers_captured += 1
        if outcome.status == ADDED:
            self.added.append(outcome.device)
        elif outcome.status == SKIPPED:
            self.skipped.append(outcome.device)
        elif outcome.status == BACKED_UP:
            self.backed_up.append(outcome.device)
        else:
            self.failed[outcome.device] = outcome.reason or "unknown failure"

    @property
    def ok(self) -> bool:
        return not self.failed and not self.archive_error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "dry_run": self.dry_run,
            "added": list(self.added),
            "skipped": list(self.skipped),
            "failed": dict(self.failed),
            "backed_up": list(self.backed_up),
            "headers_captured": self.headers_captured,
            "archive": self.archive,
            "archive_error": self.archive_error,
            "devices": [asdict(o) for o in self.outcomes],
        }
