"""Provenance tokens: recognise and tag keyslots created by hwkey.

Only LUKS2 headers carry tokens. A slot counts as owned only when a token
whose ``type`` is :data:`TOKEN_TYPE` lists it; position and slot count are
never used as evidence. Tokens that cannot be exported or parsed are
ignored (fail-closed).
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Set

from . import luks
from .errors import LuksCommandError
from .executil import Result, trace, warn
from .luks_dump import LuksDump
from .model import ProvenanceToken

TOKEN_TYPE = "unraid-derived"
TOKEN_VERSION = "1"


def _slot_index(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def parse_token(token_id: Optional[int], text: str) -> Optional[ProvenanceToken]:
    try:
        payload = json.loads(text or "")
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    token_type = payload.get("type")
    if not isinstance(token_type, str):
        return None
    raw_slots = payload.get("keyslots")
    if not isinstance(raw_slots, list):
        raw_slots = []
    slots = []
    for raw in raw_slots:
        idx = _slot_index(raw)
        if idx is not None and idx not in slots:
            slots.append(idx)
    version = payload.get("version")
    generated = payload.get("generation_time")
    return ProvenanceToken(
        token_id=token_id,
        type=token_type,
        keyslots=tuple(sorted(slots)),
        version=str(version) if version is not None else None,
        generation_time=str(generated) if generated is not None else None,
    )


def scan(device: str, dump: LuksDump) -> List[ProvenanceToken]:
    """Return the hwkey-owned tokens on ``device``."""

    if not dump.supports_tokens:
        return []
    owned: List[ProvenanceToken] = []
    for token_id in dump.token_ids:
        try:
            text = luks.token_export(device, token_id)
        except LuksCommandError as exc:
            warn("provenance.export_failed", device=device, token_id=token_id, error=str(exc))
            continue
        token = parse_token(token_id, text)
        if token is None:
            warn("provenance.unparseable", device=device, token_id=token_id)
            continue
        if token.type != TOKEN_TYPE:
            continue
        owned.append(token)
    trace("provenance.scan", device=device, tokens=[t.token_id for t in owned])
    return owned


def owned_slots(tokens: Iterable[ProvenanceToken]) -> Set[int]:
    slots: Set[int] = set()
    for token in tokens:
        slots.update(token.keyslots)
    return slots


def build_token(slot: int, now: Optional[datetime] = None) -> dict:
    stamp = (now or datetime.now(timezone.utc)).replace(microsecond=0)
    return {
        "type": TOKEN_TYPE,
        "keyslots": [str(slot)],
        "version": TOKEN_VERSION,
        "generation_time": stamp.isoformat().replace("+00:00", "Z"),
    }


def tag_slot(device: str, slot: int, dry_run: bool = False) -> Result:
    payload = json.dumps(build_token(slot), sort_keys=True)
    return luks.token_import(device, payload, dry_run=dry_run)


def stale_tokens(tokens: Iterable[ProvenanceToken], removed: Iterable[int]) -> List[ProvenanceToken]:
    """Owned tokens left pointing only at slots that were just removed."""

    gone = set(removed)
    return [t for t in tokens if t.token_id is not None and t.keyslots and set(t.keyslots) <= gone]
