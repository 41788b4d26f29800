"""Hardware fingerprint: motherboard serial plus default-gateway MAC."""

from __future__ import annotations

import re
from typing import List, Tuple

from .errors import HardwareToolMissing, HardwareUnavailable
from .executil import info, run, trace, warn
from .model import DerivedKey, HardwareFingerprint

_REPLY_MAC_RE = re.compile(r"reply from\s+\S+\s+\[([0-9A-Fa-f]{2}(?::[0-9A-Fa-f]{2}){5})\]", re.IGNORECASE)


def _tool(cmd: List[str], timeout: float = 15.0):
    try:
        return run(cmd, check=False, timeout=timeout)
    except FileNotFoundError as exc:
        raise HardwareToolMissing(f"{cmd[0]} is not installed") from exc


def motherboard_serial() -> str:
    """Return the baseboard serial reported by dmidecode, or ``""``."""

    res = _tool(["dmidecode", "-s", "baseboard-serial-number"])
    if res.rc != 0:
        trace("fingerprint.serial.rc", rc=res.rc, err=res.err)
        return ""
    # dmidecode prefixes comment lines when reading from a dump or old SMBIOS.
    lines = [ln.strip() for ln in (res.out or "").splitlines()]
    values = [ln for ln in lines if ln and not ln.startswith("#")]
    return values[0] if values else ""


def parse_default_routes(text: str) -> List[Tuple[str, str]]:
    """Return ``(interface, gateway)`` pairs from ``ip route show default``."""

    routes: List[Tuple[str, str]] = []
    for line in (text or "").splitlines():
        fields = line.split()
        if not fields or fields[0] != "default":
            continue
        gateway = iface = ""
        for idx, word in enumerate(fields[:-1]):
            if word == "via":
                gateway = fields[idx + 1]
            elif word == "dev":
                iface = fields[idx + 1]
        if gateway and iface:
            routes.append((iface, gateway))
    return routes


def parse_arping_mac(text: str) -> str:
    match = _REPLY_MAC_RE.search(text or "")
    return match.group(1) if match else ""


def gateway_mac() -> str:
    """Ping each default route's gateway and return the first MAC that replies."""

    res = _tool(["ip", "route", "show", "default"])
    routes = parse_default_routes(res.out if res.rc == 0 else "")
    if not routes:
        warn("fingerprint.gateway.none")
        return ""
    for iface, gateway in routes:
        reply = _tool(["arping", "-c", "1", "-I", iface, gateway], timeout=10.0)
        mac = parse_arping_mac(reply.out)
        trace("fingerprint.gateway.arping", iface=iface, gateway=gateway, rc=reply.rc, found=bool(mac))
        if mac:
            return mac
    return ""


def read_fingerprint() -> HardwareFingerprint:
    serial = motherboard_serial()
    if not serial:
        raise HardwareUnavailable("could not retrieve motherboard serial number")
    mac = gateway_mac()
    if not mac:
        raise HardwareUnavailable("could not retrieve MAC address of the default gateway")
    return HardwareFingerprint(serial=serial, mac=mac)


def resolve() -> DerivedKey:
    """Derive the hardware-bound key from live identifiers.

    Both identifiers are re-read on every call. An empty identifier raises
    :class:`HardwareUnavailable`; there is no fallback value.
    """

    key = read_fingerprint().derive()
    info("fingerprint.resolved")
    return key
