"""Parser for ``cryptsetup luksDump`` text output.

The output format is treated as a versioned contract:

LUKS1
    ``Version: 1``, ``UUID: <uuid>`` and one ``Key Slot N: ENABLED|DISABLED``
    line per slot (8 slots).

LUKS2
    ``Version: 2``, ``UUID: <uuid>`` and top-level sections (lines without
    indentation). Inside ``Keyslots:`` and ``Tokens:`` each entry starts with
    a two-space indented ``N: <type>`` line, optionally followed by a
    parenthesised state such as ``(unbound)``. 32 slots.

Anything outside these fields is ignored.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .errors import DumpParseError

TOTAL_SLOTS = {1: 8, 2: 32}

_VERSION_RE = re.compile(r"^Version:\s*(\d+)\s*$")
_UUID_RE = re.compile(r"^UUID:\s*(\S+)\s*$")
_V1_SLOT_RE = re.compile(r"^Key Slot\s+(\d+):\s*(ENABLED|DISABLED)\s*$")
# cryptsetup appends a state such as "(unbound)" to some keyslot entries.
_V2_ENTRY_RE = re.compile(r"^ {2}(\d+):\s*(\S+)(?:\s+\(.*\))?\s*$")
_SECTION_RE = re.compile(r"^(\S[^:]*):\s*$")


@dataclass(frozen=True)
class LuksDump:
    version: int
    uuid: str = ""
    active_slots: Tuple[int, ...] = ()
    tokens: Dict[int, str] = field(default_factory=dict)

    @property
    def total_slots(self) -> int:
        return TOTAL_SLOTS.get(self.version, 32)

    @property
    def used_slots(self) -> int:
        return len(self.active_slots)

    @property
    def supports_tokens(self) -> bool:
        return self.version >= 2

    @property
    def token_ids(self) -> Tuple[int, ...]:
        return tuple(sorted(self.tokens))

    def first_free_slot(self, released: Iterable[int] = ()) -> Optional[int]:
        """Lowest unused slot index once the ``released`` slots are gone."""

        active = set(self.active_slots) - set(released)
        for idx in range(self.total_slots):
            if idx not in active:
                return idx
        return None


def _parse_v1(lines: List[str]) -> Tuple[Tuple[int, ...], Dict[int, str]]:
    slots = []
    for line in lines:
        match = _V1_SLOT_RE.match(line.strip())
        if match and match.group(2) == "ENABLED":
            slots.append(int(match.group(1)))
    return tuple(sorted(slots)), {}


def _parse_v2(lines: List[str]) -> Tuple[Tuple[int, ...], Dict[int, str]]:
    section = ""
    slots: List[int] = []
    tokens: Dict[int, str] = {}
    for raw in lines:
        line = raw.rstrip("\n")
        if not line.strip():
            continue
        header = _SECTION_RE.match(line)
        if header and not line[0].isspace():
            section = header.group(1).strip()
            continue
        if not line[0].isspace():
            # Top-level "Key: value" field such as Version or UUID.
            section = ""
            continue
        entry = _V2_ENTRY_RE.match(line)
        if not entry:
            continue
        if section == "Keyslots":
            slots.append(int(entry.group(1)))
        elif section == "Tokens":
            tokens[int(entry.group(1))] = entry.group(2)
    return tuple(sorted(set(slots))), tokens


def parse_dump(text: str) -> LuksDump:
    lines = (text or "").splitlines()
    version: Optional[int] = None
    uuid = ""
    for line in lines:
        stripped = line.strip()
        if version is None:
            match = _VERSION_RE.match(stripped)
            if match:
                version = int(match.group(1))
                continue
        if not uuid:
            match = _UUID_RE.match(stripped)
            if match:
                uuid = match.group(1)
    if version is None:
        raise DumpParseError("luksDump output has no Version field")
    if version == 1:
        slots, tokens = _parse_v1(lines)
    elif version == 2:
        slots, tokens = _parse_v2(lines)
    else:
        raise DumpParseError(f"unsupported LUKS version {version}")
    return LuksDump(version=version, uuid=uuid, active_slots=slots, tokens=tokens)
