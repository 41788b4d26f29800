"""Per-device keyslot lifecycle.

Each device walks the same state machine in live and dry-run mode::

    KeyCheckPending -> KeyInvalid (failed)
                    -> KeyValid -> HeaderBackup -> AlreadyCurrent (skipped)
                                                -> StaleKeyDetected -> SlotCleanup
                                                   -> SlotInstall -> TokenTag -> Done (added)

Dry-run only changes whether mutating cryptsetup calls are executed; every
decision, count and reason is computed the same way.

Safety rules enforced before anything is removed:

* slot 0 holds the original passphrase and is never removed, even when a
  token claims it;
* a cleanup that would leave fewer than one active slot is refused for the
  whole device.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set, Tuple

from . import backup, luks, provenance
from .credentials import Credential
from .errors import HeaderBackupError, HwkeyError, LuksCommandError, SafetyInvariantError, SlotInstallError
from .executil import RetryPolicy, error, info, trace, warn
from .luks_dump import LuksDump
from .model import ADDED, FAILED, SKIPPED, DeviceOutcome

PROTECTED_SLOT = 0


class State(str, enum.Enum):
    KEY_CHECK_PENDING = "KeyCheckPending"
    KEY_INVALID = "KeyInvalid"
    KEY_VALID = "KeyValid"
    HEADER_BACKUP = "HeaderBackup"
    ALREADY_CURRENT = "AlreadyCurrent"
    STALE_KEY_DETECTED = "StaleKeyDetected"
    SLOT_CLEANUP = "SlotCleanup"
    SLOT_INSTALL = "SlotInstall"
    TOKEN_TAG = "TokenTag"
    DONE = "Done"
    FAILED = "Failed"


@dataclass
class LifecycleContext:
    credential: Credential
    derived: Credential
    derived_keyfile: str
    header_dir: str
    dry_run: bool = False
    retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(attempts=2))


@dataclass(frozen=True)
class CleanupPlan:
    remove: Tuple[int, ...]
    protected: Tuple[int, ...]
    remaining: int
    credential_slots: Tuple[int, ...] = ()


def plan_cleanup(
        active_slots: Iterable[int],
        owned: Iterable[int],
        credential_slots: Iterable[int] = (),
) -> CleanupPlan:
    """Decide which owned slots to remove without touching the device.

    Slot 0 and any slot the caller credential opens are kept even when a
    token claims them. Raises :class:`SafetyInvariantError` when the
    removal would leave no active slot.
    """

    active = set(active_slots)
    owned = set(owned)
    held = set(credential_slots) & owned
    remove = tuple(sorted(s for s in owned if s != PROTECTED_SLOT and s in active and s not in held))
    protected = tuple(sorted(s for s in owned if s == PROTECTED_SLOT))
    remaining = len(active) - len(remove)
    if remaining < 1:
        raise SafetyInvariantError(
            f"refusing to remove slots {list(remove)}: no working keyslot would remain"
        )
    return CleanupPlan(
        remove=remove,
        protected=protected,
        remaining=remaining,
        credential_slots=tuple(sorted(held - {PROTECTED_SLOT})),
    )


class _Failed(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class DeviceLifecycle:
    def __init__(self, ctx: LifecycleContext, device: str):
        self.ctx = ctx
        self.device = device
        self.outcome = DeviceOutcome(device=device)
        self.state = State.KEY_CHECK_PENDING
        self.history: List[State] = []

    # -- bookkeeping -------------------------------------------------------

    def _enter(self, state: State) -> None:
        self.state = state
        self.history.append(state)
        trace("lifecycle.state", device=self.device, state=state.value, dry_run=self.ctx.dry_run)

    def _warn(self, message: str, **fields) -> None:
        self.outcome.warn(message)
        warn("lifecycle.warning", device=self.device, message=message, **fields)

    def _fail(self, reason: str) -> None:
        raise _Failed(reason)

    # -- steps -------------------------------------------------------------

    def _read_header(self) -> LuksDump:
        dump = luks.dump(self.device)
        self.outcome.luks_version = dump.version
        self.outcome.used_slots = dump.used_slots
        self.outcome.total_slots = dump.total_slots
        return dump

    def _check_credential(self) -> None:
        self._enter(State.KEY_CHECK_PENDING)
        if not self.ctx.credential.test(self.device):
            self._enter(State.KEY_INVALID)
            self._fail(f"Invalid {self.ctx.credential.kind}")
        self._enter(State.KEY_VALID)

    def _backup_header(self, dump: LuksDump) -> None:
        self._enter(State.HEADER_BACKUP)
        try:
            path = backup.backup(self.device, dump, self.ctx.header_dir, dry_run=self.ctx.dry_run)
        except HeaderBackupError as exc:
            self._fail(f"Header backup failed: {exc}")
        self.outcome.header_path = path
        self.outcome.mutations += 1

    def _cleanup(self, dump: LuksDump) -> Set[int]:
        tokens = provenance.scan(self.device, dump)
        owned = provenance.owned_slots(tokens)
        self._enter(State.SLOT_CLEANUP)
        active = set(dump.active_slots)
        held = [
            s for s in sorted(owned)
            if s != PROTECTED_SLOT and s in active and self.ctx.credential.test(self.device, key_slot=s)
        ]
        try:
            plan = plan_cleanup(dump.active_slots, owned, credential_slots=held)
        except SafetyInvariantError as exc:
            self._fail(str(exc))
        if plan.protected:
            self._warn(f"slot {PROTECTED_SLOT} is tagged as hardware-derived; left untouched")
        for slot in plan.credential_slots:
            self._warn(
                f"slot {slot} is tagged as hardware-derived but opens with the "
                f"{self.ctx.credential.kind}; left untouched"
            )
        removed: Set[int] = set()
        for slot in plan.remove:
            try:
                luks.kill_slot(self.device, slot, self.ctx.credential, dry_run=self.ctx.dry_run)
            except LuksCommandError as exc:
                self._warn(f"could not remove stale slot {slot}: {exc}")
                continue
            removed.add(slot)
            self.outcome.removed_slots.append(slot)
            self.outcome.mutations += 1
        for token in provenance.stale_tokens(tokens, removed):
            try:
                luks.token_remove(self.device, token.token_id, dry_run=self.ctx.dry_run)
            except LuksCommandError as exc:
                self._warn(f"could not remove stale token {token.token_id}: {exc}")
        info("lifecycle.cleanup", device=self.device, owned=sorted(owned), removed=sorted(removed))
        return removed

    def _install(self, dump: LuksDump, removed: Set[int]) -> Optional[int]:
        self._enter(State.SLOT_INSTALL)
        occupied = set(dump.active_slots) - removed
        if len(occupied) >= dump.total_slots:
            self._fail(f"No free keyslot ({len(occupied)}/{dump.total_slots} in use)")
        policy = self.ctx.retry
        try:
            res = policy.call(
                lambda: luks.add_key(
                    self.device, self.ctx.derived_keyfile, self.ctx.credential, dry_run=self.ctx.dry_run
                ),
                label=f"luksAddKey {self.device}",
            )
        except LuksCommandError as exc:
            self._fail(f"luksAddKey failed after {policy.attempts} attempts: {exc}")
        self.outcome.mutations += 1

        if self.ctx.dry_run:
            return dump.first_free_slot(released=removed)

        slot = luks.parse_created_slot((res.out, res.err))
        if not self.ctx.derived.test(self.device):
            self._rollback(slot)
            raise SlotInstallError("derived key does not unlock the device after luksAddKey")
        if slot is None:
            slot = self._locate_slot(dump, occupied)
        return slot

    def _locate_slot(self, dump: LuksDump, occupied: Set[int]) -> Optional[int]:
        # Linear scan; assumes no other process mutates slots during the run.
        for idx in range(dump.total_slots):
            if idx in occupied:
                continue
            if self.ctx.derived.test(self.device, key_slot=idx):
                return idx
        return None

    def _rollback(self, slot: Optional[int]) -> None:
        if slot is None or slot == PROTECTED_SLOT:
            self._warn("rollback skipped: index of the new slot is unknown")
            return
        try:
            luks.kill_slot(self.device, slot, self.ctx.credential, dry_run=self.ctx.dry_run)
        except LuksCommandError as exc:
            self._warn(f"rollback of slot {slot} failed: {exc}")
            return
        info("lifecycle.rollback", device=self.device, slot=slot)

    def _tag(self, dump: LuksDump, slot: Optional[int]) -> None:
        if not dump.supports_tokens:
            return
        self._enter(State.TOKEN_TAG)
        if slot is None:
            self._warn("could not locate the new keyslot; provenance token not written")
            return
        try:
            provenance.tag_slot(self.device, slot, dry_run=self.ctx.dry_run)
        except LuksCommandError as exc:
            self._warn(f"provenance token for slot {slot} not written: {exc}")
            return
        self.outcome.token_written = True
        self.outcome.mutations += 1

    # -- driver ------------------------------------------------------------

    def _walk(self) -> None:
        dump = self._read_header()
        self._check_credential()
        self._backup_header(dump)
        if self.ctx.derived.test(self.device):
            self._enter(State.ALREADY_CURRENT)
            self.outcome.status = SKIPPED
            return
        self._enter(State.STALE_KEY_DETECTED)
        removed = self._cleanup(dump)
        slot = self._install(dump, removed)
        self.outcome.added_slot = slot
        self._tag(dump, slot)
        self._enter(State.DONE)
        self.outcome.status = ADDED

    def run(self) -> DeviceOutcome:
        try:
            self._walk()
        except _Failed as exc:
            self._mark_failed(exc.reason)
        except (HwkeyError, OSError) as exc:
            self._mark_failed(str(exc))
        info(
            "lifecycle.outcome",
            device=self.device,
            status=self.outcome.status,
            reason=self.outcome.reason,
            dry_run=self.ctx.dry_run,
        )
        return self.outcome

    def _mark_failed(self, reason: str) -> None:
        self._enter(State.FAILED)
        self.outcome.status = FAILED
        self.outcome.reason = reason
        error("lifecycle.failed", device=self.device, reason=reason)


def process_device(ctx: LifecycleContext, device: str) -> DeviceOutcome:
    return DeviceLifecycle(ctx, device).run()
