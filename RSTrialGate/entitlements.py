"""
Entitlement state machine
-------------------------
Decides what happens to a member's access when one of three triggers arrives:

- join               (on_member_join)
- payment role diff  (on_member_update, payment role added/removed by Whop)
- trial expiry       (expiry sweeper)

The persisted record and the live roles are both inputs. Live roles win whenever
they disagree with the record (e.g. payment role present but record says unpaid).

Rules:
- trial_used never goes back to 0
- paid clears trial bookkeeping in the same write
- on expiry, the expiry timestamp is cleared BEFORE any role change so a crashed
  or retried sweep never processes the same lapsed trial twice
- role/DM failures are logged and left for the next trigger to fix
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Dict, Optional, Set

from RSTrialGate.entitlement_store import EntitlementRecord, EntitlementStore
from RSTrialGate.gate_config import GateSettings
from RSTrialGate.gate_messages import GateMessages
from RSTrialGate.gate_roles import GateRoleAllocator, MembershipUnavailable
from RSTrialGate.notifier import Notifier

log = logging.getLogger("rs-trialgate.entitlements")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class EntitlementState(str, Enum):
    NO_ACCESS = "no_access"
    TRIAL_ACTIVE = "trial_active"
    TRIAL_CONSUMED = "trial_consumed"
    PAID = "paid"


def derive_state(record: Optional[EntitlementRecord]) -> EntitlementState:
    if record is None:
        return EntitlementState.NO_ACCESS
    if record.paid:
        return EntitlementState.PAID
    if record.trial_expires_at is not None:
        return EntitlementState.TRIAL_ACTIVE
    if record.trial_used:
        return EntitlementState.TRIAL_CONSUMED
    return EntitlementState.NO_ACCESS


class Outcome(str, Enum):
    JOIN_PAID = "join_paid"
    JOIN_ALREADY_GATED = "join_already_gated"
    JOIN_ACCOUNT_TOO_NEW = "join_account_too_new"
    JOIN_TRIAL_STARTED = "join_trial_started"
    JOIN_TRIAL_USED = "join_trial_used"
    JOIN_MEMBER_GONE = "join_member_gone"
    JOIN_LOOKUP_FAILED = "join_lookup_failed"
    PAYMENT_GRANTED = "payment_granted"
    PAYMENT_REVOKED = "payment_revoked"
    ROLES_IGNORED = "roles_ignored"
    EXPIRY_STALE = "expiry_stale"
    EXPIRY_ALREADY_PAID = "expiry_already_paid"
    EXPIRY_PAYMENT_ROLE = "expiry_payment_role"
    EXPIRY_MEMBER_GONE = "expiry_member_gone"
    EXPIRY_LOOKUP_FAILED = "expiry_lookup_failed"
    TRIAL_EXPIRED = "trial_expired"


OutcomeHook = Callable[[int, Outcome, str], Awaitable[None]]


class MemberLocks:
    """One asyncio.Lock per member id; entries are dropped once nobody holds or waits."""

    def __init__(self):
        self._locks: Dict[int, asyncio.Lock] = {}
        self._users: Dict[int, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, member_id: int) -> AsyncIterator[None]:
        lock = self._locks.get(member_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[member_id] = lock
        self._users[member_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[member_id] -= 1
            if self._users[member_id] <= 0:
                self._users.pop(member_id, None)
                self._locks.pop(member_id, None)

    def __len__(self) -> int:
        return len(self._locks)


class EntitlementEngine:
    def __init__(
        self,
        settings: GateSettings,
        store: EntitlementStore,
        allocator: GateRoleAllocator,
        notifier: Notifier,
        messages: Optional[GateMessages] = None,
        clock: Callable[[], datetime] = _now_utc,
        on_outcome: Optional[OutcomeHook] = None,
    ):
        self.settings = settings
        self.store = store
        self.allocator = allocator
        self.notifier = notifier
        self.messages = messages or GateMessages.from_settings(settings)
        self.clock = clock
        self.on_outcome = on_outcome
        self.locks = MemberLocks()

    # -----------------------------
    # Helpers
    # -----------------------------
    async def _notify(self, member_id: int, key: str) -> None:
        result = await self.notifier.send(member_id, self.messages.render(key, member_id))
        if not result.ok:
            log.info(f"[DM] '{key}' not delivered to {member_id}: {result.error}")

    async def _emit(self, member_id: int, outcome: Outcome, detail: str = "") -> Outcome:
        log.info(f"[Gate] {member_id}: {outcome.value}{(' — ' + detail) if detail else ''}")
        if self.on_outcome is not None:
            await self.on_outcome(member_id, outcome, detail)
        return outcome

    async def _mark_paid(self, member_id: int, reason: str) -> Optional[int]:
        self.store.set_paid(member_id, True)
        chosen, _ = await self.allocator.enforce_single_bucket(member_id, reason=reason)
        return chosen

    # -----------------------------
    # Triggers
    # -----------------------------
    async def handle_join(self, member_id: int, account_created_at: Optional[datetime] = None) -> Outcome:
        async with self.locks.hold(member_id):
            now = self.clock()
            self.store.upsert_join(member_id, now)

            try:
                snap = await self.allocator.snapshot(member_id)
            except MembershipUnavailable as e:
                return await self._emit(member_id, Outcome.JOIN_LOOKUP_FAILED, str(e))
            if snap is None:
                return await self._emit(member_id, Outcome.JOIN_MEMBER_GONE)

            # Whop may assign the payment role before (or as) the member lands.
            if snap.has_payment_role:
                chosen = await self._mark_paid(member_id, "Payment role present on join")
                return await self._emit(member_id, Outcome.JOIN_PAID, f"gate role {chosen}")

            # Duplicate join event: access already in place.
            if snap.buckets:
                return await self._emit(member_id, Outcome.JOIN_ALREADY_GATED)

            record = self.store.get(member_id)
            if record is not None and record.paid:
                # Payment role went away while they were outside the guild.
                self.store.set_paid(member_id, False)
                log.info(f"[Gate] {member_id}: stale paid flag reset (no payment role on join)")

            min_age = self.settings.min_account_age
            if min_age.total_seconds() > 0 and account_created_at is not None:
                if now - account_created_at < min_age:
                    await self._notify(member_id, "account_too_new")
                    return await self._emit(member_id, Outcome.JOIN_ACCOUNT_TOO_NEW)

            if record is None or not record.trial_used:
                bucket = self.allocator.pick_bucket()
                expires_at = now + self.settings.trial_duration
                # Persist first: a crash after this point leaves a trial the sweeper will close.
                self.store.start_trial(member_id, expires_at, bucket, now)
                result = await self.allocator.grant_bucket(member_id, bucket, reason="Granting trial access")
                await self._notify(member_id, "welcome")
                detail = f"gate role {bucket}, expires {expires_at.isoformat()}"
                if not result.ok:
                    detail += f" (grant failed: {result.error})"
                return await self._emit(member_id, Outcome.JOIN_TRIAL_STARTED, detail)

            await self._notify(member_id, "trial_used")
            return await self._emit(member_id, Outcome.JOIN_TRIAL_USED)

    async def handle_roles_changed(self, member_id: int, before_roles: Set[int], after_roles: Set[int]) -> Outcome:
        payment_role_id = self.allocator.payment_role_id
        had = payment_role_id in before_roles
        has = payment_role_id in after_roles
        if had == has:
            return Outcome.ROLES_IGNORED

        async with self.locks.hold(member_id):
            if has:
                chosen = await self._mark_paid(member_id, "Payment role added")
                await self._notify(member_id, "purchase_confirmed")
                return await self._emit(member_id, Outcome.PAYMENT_GRANTED, f"gate role {chosen}")

            self.store.set_paid(member_id, False)
            results = await self.allocator.revoke_all_buckets(member_id, reason="Payment role removed")
            failed = [r for r in results if not r.ok]
            detail = f"{len(failed)} revoke(s) failed" if failed else ""
            return await self._emit(member_id, Outcome.PAYMENT_REVOKED, detail)

    async def handle_trial_expired(self, member_id: int, gate_role_id: Optional[int] = None) -> Outcome:
        async with self.locks.hold(member_id):
            record = self.store.get(member_id)
            if record is None or record.trial_expires_at is None:
                # Already handled (payment arrived, or an earlier pass got here first).
                return await self._emit(member_id, Outcome.EXPIRY_STALE)

            if record.paid:
                self.store.clear_trial_expiry(member_id)
                return await self._emit(member_id, Outcome.EXPIRY_ALREADY_PAID)

            self.store.clear_trial_expiry(member_id)

            try:
                snap = await self.allocator.snapshot(member_id)
            except MembershipUnavailable as e:
                # Nothing was mutated or sent yet, so the next sweep can safely retry.
                self.store.restore_trial_expiry(member_id, record.trial_expires_at)
                return await self._emit(member_id, Outcome.EXPIRY_LOOKUP_FAILED, str(e))
            if snap is None:
                self.store.clear_trial(member_id)
                return await self._emit(member_id, Outcome.EXPIRY_MEMBER_GONE)

            if snap.has_payment_role:
                # Payment role landed but the role-change event was missed or is still queued.
                chosen = await self._mark_paid(member_id, "Payment role present at trial expiry")
                return await self._emit(member_id, Outcome.EXPIRY_PAYMENT_ROLE, f"gate role {chosen}")

            bucket = record.gate_role_id if record.gate_role_id is not None else gate_role_id
            failed = 0
            if bucket is not None and bucket not in self.allocator.pool:
                log.warning(f"[Gate] {member_id}: recorded gate role {bucket} is not in the configured pool")
            elif bucket is not None and bucket in snap.buckets:
                result = await self.allocator.revoke_bucket(member_id, bucket, reason="Trial expired")
                failed += 0 if result.ok else 1

            results = await self.allocator.revoke_all_buckets(member_id, reason="Trial expired")
            failed += len([r for r in results if not r.ok])
            self.store.clear_trial(member_id)
            await self._notify(member_id, "trial_expired")
            return await self._emit(
                member_id, Outcome.TRIAL_EXPIRED, f"{failed} revoke(s) failed" if failed else ""
            )
