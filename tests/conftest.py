import ast
import json
import sys
import threading
from collections import defaultdict
from pathlib import Path
from types import SimpleNamespace
from typing import Dict, Iterable, List, Optional, Set

import pytest

from hwkey import executil
from hwkey.model import HardwareFingerprint

_ROOT_DIR = Path(__file__).absolute().parent.parent
_PACKAGE_DIR = (_ROOT_DIR / "hwkey").absolute()

_EXECUTED_LINES: Dict[Path, Set[int]] = defaultdict(set)
_CANDIDATE_LINES: Dict[Path, Set[int]] = {}
_PREVIOUS_TRACE = None
_PREVIOUS_THREAD_TRACE = None
_TRACE_ACTIVE = False


def _iter_python_files(directory: Path) -> Iterable[Path]:
    for path in directory.rglob("*.py"):
        if path.is_file():
            yield path.absolute()


def _candidate_lines_for(path: Path) -> Set[int]:
    source = path.read_text(encoding="utf-8")
    try:
        tree = ast.parse(source, filename=str(path))
    except SyntaxError:
        return set()

    potential_lines: Set[int] = set()
    for node in ast.walk(tree):
        lineno = getattr(node, "lineno", None)
        end_lineno = getattr(node, "end_lineno", None)
        if lineno is None:
            continue
        if end_lineno is None:
            end_lineno = lineno
        potential_lines.update(range(lineno, end_lineno + 1))

    lines = set()
    source_lines = source.splitlines()
    for lineno in potential_lines:
        if lineno > len(source_lines):
            continue
        text = source_lines[lineno - 1].strip()
        if not text or text.startswith("#"):
            continue
        lines.add(lineno)
    return lines


for file_path in _iter_python_files(_PACKAGE_DIR):
    _CANDIDATE_LINES[file_path] = _candidate_lines_for(file_path)


def _trace(frame, event, arg):
    if event != "line":
        return _trace
    filename = Path(frame.f_code.co_filename)
    try:
        resolved = filename.absolute()
    except OSError:
        return _trace
    if resolved in _CANDIDATE_LINES:
        _EXECUTED_LINES[resolved].add(frame.f_lineno)
    return _trace


def pytest_sessionstart(session):
    global _PREVIOUS_TRACE, _PREVIOUS_THREAD_TRACE, _TRACE_ACTIVE
    if _TRACE_ACTIVE:
        return
    _TRACE_ACTIVE = True
    _EXECUTED_LINES.clear()
    _PREVIOUS_TRACE = sys.gettrace()
    _PREVIOUS_THREAD_TRACE = threading.gettrace()
    sys.settrace(_trace)
    threading.settrace(_trace)


def pytest_sessionfinish(session, exitstatus):
    global _TRACE_ACTIVE
    if not _TRACE_ACTIVE:
        return
    _TRACE_ACTIVE = False

    if _PREVIOUS_TRACE is not None:
        sys.settrace(_PREVIOUS_TRACE)
    else:
        sys.settrace(None)

    threading.settrace(_PREVIOUS_THREAD_TRACE)

    _report_coverage(session)


def _report_coverage(session) -> None:
    if not _CANDIDATE_LINES:
        return

    terminal = session.config.pluginmanager.get_plugin("terminalreporter")
    write_line = terminal.write_line if terminal else print

    rows = []
    total_statements = 0
    total_covered = 0

    for path in sorted(_CANDIDATE_LINES):
        candidates = _CANDIDATE_LINES[path]
        if not candidates:
            continue
        executed = _EXECUTED_LINES.get(path, set()) & candidates
        covered = len(executed)
        statements = len(candidates)
        coverage_pct = (covered / statements * 100.0) if statements else 100.0
        total_statements += statements
        total_covered += covered
        rows.append((path.relative_to(_ROOT_DIR), statements, statements - covered, coverage_pct))

    if not rows:
        return

    write_line("")
    write_line("Coverage summary for 'hwkey':")
    header = f"{'Name':<60} {'Stmts':>6} {'Miss':>6} {'Cover':>7}"
    write_line(header)
    write_line("-" * len(header))
    for name, statements, missing_count, coverage_pct in rows:
        write_line(f"{str(name):<60} {statements:>6} {missing_count:>6} {coverage_pct:>6.1f}%")
    if total_statements:
        total_pct = total_covered / total_statements * 100.0
        write_line("-" * len(header))
        write_line(
            f"{'TOTAL':<60} {total_statements:>6} {total_statements - total_covered:>6} {total_pct:>6.1f}%"
        )


# --- fake host: lsblk, dmidecode, ip, arping and cryptsetup ---------------

PASSPHRASE = "hunter2"
SERIAL = "MB-SERIAL-0001"
MAC = "AA:BB:CC:DD:EE:01"

_VALUE_OPTS = {"--key-file", "--key-slot", "--token-id", "--json-file", "--header-backup-file"}
MUTATING = {"luksAddKey", "luksKillSlot", "luksHeaderBackup", "token import", "token remove"}


def derived_key(serial: str = SERIAL, mac: str = MAC) -> bytes:
    return HardwareFingerprint(serial, mac).derive().as_bytes()


class FakeDevice:
    def __init__(self, name: str, version: int, uuid: str):
        self.name = name
        self.path = f"/dev/{name}"
        self.version = version
        self.uuid = uuid
        self.total = 8 if version == 1 else 32
        self.slots: Dict[int, bytes] = {}
        self.tokens: Dict[int, object] = {}

    def unlocks(self, key: bytes, slot: Optional[int] = None) -> Optional[int]:
        for idx in sorted(self.slots):
            if slot is not None and idx != slot:
                continue
            if self.slots[idx] == key:
                return idx
        return None

    def free_slot(self) -> Optional[int]:
        for idx in range(self.total):
            if idx not in self.slots:
                return idx
        return None

    def dump(self) -> str:
        if self.version == 1:
            lines = [
                f"LUKS header information for {self.path}",
                "",
                "Version:       \t1",
                "Cipher name:   \taes",
                "Cipher mode:   \txts-plain64",
                "Hash spec:     \tsha256",
                "Payload offset:\t4096",
                "MK bits:       \t512",
                "MK digest:     \t1d 7a 3b 9c",
                f"UUID:          \t{self.uuid}",
                "",
            ]
            for idx in range(self.total):
                state = "ENABLED" if idx in self.slots else "DISABLED"
                lines.append(f"Key Slot {idx}: {state}")
                if idx in self.slots:
                    lines.append("\tIterations:         \t1000")
                    lines.append("\tSalt:               \t12 34 56 78")
            return "\n".join(lines) + "\n"
        lines = [
            "LUKS header information",
            "Version:       \t2",
            "Epoch:         \t5",
            "Metadata area: \t16384 [bytes]",
            "Keyslots area: \t16744448 [bytes]",
            f"UUID:          \t{self.uuid}",
            "Label:         \t(no label)",
            "Subsystem:     \t(no subsystem)",
            "Flags:       \t(no flags)",
            "",
            "Data segments:",
            "  0: crypt",
            "\toffset: 16777216 [bytes]",
            "\tlength: (whole device)",
            "",
            "Keyslots:",
        ]
        for idx in sorted(self.slots):
            lines += [
                f"  {idx}: luks2",
                "\tKey:        512 bits",
                "\tPriority:   normal",
                "\tSalt:       44 42 a3 41 fd be f7 5f",
                "\t            54 b0 71 04 57 db 8b 26",
                "\tDigest ID:  0",
            ]
        lines.append("Tokens:")
        for tid in sorted(self.tokens):
            token = self.tokens[tid]
            ttype = token.get("type", "unknown") if isinstance(token, dict) else "unknown"
            lines.append(f"  {tid}: {ttype}")
            if isinstance(token, dict):
                for slot in token.get("keyslots", []):
                    lines.append(f"\tKeyslot:    {slot}")
        lines += [
            "Digests:",
            "  0: pbkdf2",
            "\tHash:       sha256",
            "\tIterations: 77010",
        ]
        return "\n".join(lines) + "\n"


class FakeHost:
    """In-memory stand-in for ``subprocess.run`` used by ``executil.run``."""

    def __init__(self):
        self.devices: Dict[str, FakeDevice] = {}
        self.calls: List[List[str]] = []
        self.mutations: List[List[str]] = []
        self.failures: Dict[str, int] = {}
        self.missing_tools: Set[str] = set()
        self.passphrase = PASSPHRASE
        self.serial = SERIAL
        self.mac = MAC
        self.routes = [("eth0", "192.168.1.1")]
        self.verbose_add = True
        self.corrupt_add = False

    # -- setup helpers -----------------------------------------------------

    def add_device(self, name: str, version: int = 2, passphrase: str = PASSPHRASE, uuid: str = "") -> FakeDevice:
        dev = FakeDevice(name, version, uuid or f"uuid-{name}")
        dev.slots[0] = passphrase.encode("utf-8")
        self.devices[dev.path] = dev
        return dev

    def add_owned_slot(self, dev: FakeDevice, key: bytes, slot: Optional[int] = None) -> int:
        idx = dev.free_slot() if slot is None else slot
        dev.slots[idx] = key
        if dev.version == 2:
            tid = max(dev.tokens, default=-1) + 1
            dev.tokens[tid] = {"type": "unraid-derived", "keyslots": [str(idx)], "version": "1"}
        return idx

    def derived_key(self) -> bytes:
        return derived_key(self.serial, self.mac)

    def fail(self, action: str, times: int = 1) -> None:
        self.failures[action] = times

    def mutation_actions(self) -> List[str]:
        return [self._action(cmd[1:])[0] for cmd in self.mutations]

    # -- dispatch ----------------------------------------------------------

    def __call__(self, cmd, capture_output=True, text=True, timeout=None, env=None, input=None, **_):
        cmd = list(cmd)
        self.calls.append(cmd)
        tool = cmd[0]
        if tool in self.missing_tools:
            raise FileNotFoundError(2, "No such file or directory", tool)
        handler = {
            "lsblk": self._lsblk,
            "dmidecode": self._dmidecode,
            "ip": self._ip,
            "arping": self._arping,
            "cryptsetup": self._cryptsetup,
        }.get(tool)
        if handler is None:
            return self._res(127, err=f"{tool}: not found")
        return handler(cmd, input)

    @staticmethod
    def _res(rc: int = 0, out: str = "", err: str = ""):
        return SimpleNamespace(returncode=rc, stdout=out, stderr=err)

    def _lsblk(self, cmd, _input):
        nodes = []
        for i, dev in enumerate(self.devices.values()):
            nodes.append({
                "name": f"sd{chr(ord('b') + i)}",
                "type": "disk",
                "children": [{"name": f"sd{chr(ord('b') + i)}1", "type": "part",
                              "children": [{"name": dev.name, "type": "crypt"}]}],
            })
        return self._res(out=json.dumps({"blockdevices": nodes}))

    def _dmidecode(self, cmd, _input):
        return self._res(out=f"{self.serial}\n" if self.serial else "\n")

    def _ip(self, cmd, _input):
        out = "".join(f"default via {gw} dev {iface} proto dhcp metric 100\n" for iface, gw in self.routes)
        return self._res(out=out)

    def _arping(self, cmd, _input):
        gw = cmd[-1]
        if not self.mac:
            return self._res(1, out=f"ARPING {gw}\nSent 1 probes (1 broadcast(s))\nReceived 0 response(s)\n")
        return self._res(out=(
            f"ARPING {gw} from 192.168.1.10 eth0\n"
            f"Unicast reply from {gw} [{self.mac}]  0.622ms\n"
            "Sent 1 probes (1 broadcast(s))\nReceived 1 response(s)\n"
        ))

    @staticmethod
    def _action(args: List[str]):
        opts: Dict[str, str] = {}
        flags: Set[str] = set()
        pos: List[str] = []
        it = iter(args)
        for arg in it:
            if arg in _VALUE_OPTS:
                opts[arg] = next(it)
            elif arg.startswith("-"):
                flags.add(arg)
            else:
                pos.append(arg)
        action = pos[0] if pos else ""
        rest = pos[1:]
        if action == "token" and rest:
            action = f"token {rest[0]}"
            rest = rest[1:]
        return action, opts, flags, rest

    @staticmethod
    def _key(value: str, stdin: Optional[str]) -> bytes:
        if value == "-":
            return (stdin or "").encode("utf-8")
        return Path(value).read_bytes()

    def _cryptsetup(self, cmd, stdin):
        action, opts, flags, rest = self._action(cmd[1:])
        if action in MUTATING:
            self.mutations.append(cmd)
        if self.failures.get(action, 0) > 0:
            self.failures[action] -= 1
            return self._res(1, err=f"injected {action} failure")
        dev = self.devices.get(rest[0]) if rest else None
        if dev is None:
            return self._res(4, err="Device does not exist or access denied.")

        if action == "luksDump":
            return self._res(out=dev.dump())

        if action == "luksOpen":
            slot = int(opts["--key-slot"]) if "--key-slot" in opts else None
            found = dev.unlocks(self._key(opts["--key-file"], stdin), slot)
            if found is None:
                return self._res(2, err="No key available with this passphrase.")
            return self._res(out="")

        if action == "luksAddKey":
            if dev.unlocks(self._key(opts["--key-file"], stdin)) is None:
                return self._res(2, err="No key available with this passphrase.")
            idx = dev.free_slot()
            if idx is None:
                return self._res(1, err="All key slots full.")
            new_key = Path(rest[1]).read_bytes()
            dev.slots[idx] = b"corrupt:" + new_key if self.corrupt_add else new_key
            out = "Command successful.\n"
            if "-v" in flags and self.verbose_add:
                out = f"Key slot {idx} created.\n" + out
            return self._res(out=out)

        if action == "luksKillSlot":
            slot = int(rest[1])
            if dev.unlocks(self._key(opts["--key-file"], stdin)) is None or slot not in dev.slots:
                return self._res(1, err=f"Keyslot {slot} is not active.")
            del dev.slots[slot]
            for token in dev.tokens.values():
                if isinstance(token, dict):
                    token["keyslots"] = [s for s in token.get("keyslots", []) if str(s) != str(slot)]
            return self._res(out="")

        if action == "luksHeaderBackup":
            dest = Path(opts["--header-backup-file"])
            if dest.exists():
                return self._res(1, err=f"Requested header backup file {dest} already exists.")
            dest.write_bytes(b"LUKS\xba\xbe" + dev.uuid.encode("ascii"))
            return self._res(out="")

        if action == "token export":
            token = dev.tokens.get(int(opts["--token-id"]))
            if token is None:
                return self._res(1, err="Token does not exist.")
            return self._res(out=token if isinstance(token, str) else json.dumps(token))

        if action == "token import":
            if dev.version != 2:
                return self._res(1, err="Tokens are supported only for LUKS2 devices.")
            payload = json.loads(stdin or "{}")
            tid = int(opts["--token-id"]) if "--token-id" in opts else max(dev.tokens, default=-1) + 1
            dev.tokens[tid] = payload
            return self._res(out=f"Token {tid} created.\n")

        if action == "token remove":
            dev.tokens.pop(int(opts["--token-id"]), None)
            return self._res(out="")

        return self._res(1, err=f"unsupported action {action}")


@pytest.fixture(autouse=True)
def _isolated_log(tmp_path, monkeypatch):
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path / "logs")])
    monkeypatch.setattr(executil, "LOG_PATH", None)
    monkeypatch.setattr(executil, "LOG_LEVEL", "TRACE")
    monkeypatch.setenv("HWKEY_HEADER_DIR", str(tmp_path / "headers"))
    monkeypatch.setenv("HWKEY_DOWNLOAD_DIR", str(tmp_path / "download"))
    monkeypatch.delenv("LUKS_PASSPHRASE", raising=False)
    monkeypatch.delenv("LUKS_KEYFILE", raising=False)


@pytest.fixture
def host(monkeypatch):
    fake = FakeHost()
    monkeypatch.setattr(executil.subprocess, "run", fake)
    return fake
