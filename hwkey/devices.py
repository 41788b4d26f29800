"""Block device enumeration (read-only, re-queried every run)."""
from __future__ import annotations

import json
from typing import Iterator, List

from .executil import run, trace

CRYPT_TYPE = "crypt"


def _iter_nodes(nodes: list[dict]) -> Iterator[dict]:
    # Depth-first, preserving lsblk's ordering so devices are processed in
    # enumeration order.
    for node in nodes:
        yield node
        yield from _iter_nodes(list(node.get("children") or []))


def parse_lsblk(text: str) -> List[str]:
    """Return ``/dev/<name>`` for every ``crypt`` entry in ``lsblk -J`` output."""

    try:
        payload = json.loads(text or "{}")
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"failed to parse lsblk output: {exc}") from exc

    found: List[str] = []
    for node in _iter_nodes(list(payload.get("blockdevices") or [])):
        if node.get("type") != CRYPT_TYPE:
            continue
        name = node.get("name") or ""
        if not name:
            continue
        path = name if name.startswith("/") else f"/dev/{name}"
        # A mapping sitting on a RAID member shows up under every parent.
        if path not in found:
            found.append(path)
    return found


def list_encrypted_devices() -> List[str]:
    result = run(["lsblk", "-J", "-o", "NAME,TYPE"], check=True)
    devices = parse_lsblk(result.out)
    trace("devices.enumerated", devices=devices)
    return devices
