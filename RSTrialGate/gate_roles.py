from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Callable, FrozenSet, Iterable, List, Optional, Protocol, Sequence, Set, Tuple

log = logging.getLogger("rs-trialgate.roles")


@dataclass(frozen=True)
class RoleResult:
    """Outcome of one best-effort role mutation. Failures are values, not exceptions."""

    member_id: int
    role_id: int
    action: str  # "grant" | "revoke"
    ok: bool
    error: Optional[str] = None


class MembershipUnavailable(Exception):
    """The guild or member lookup failed for a reason other than the member being gone."""


@dataclass(frozen=True)
class GateSnapshot:
    has_payment_role: bool
    buckets: FrozenSet[int]


class MembershipGateway(Protocol):
    """Live guild membership as seen by the gate.

    held_roles returns None when the member is not in the guild and raises
    MembershipUnavailable when that cannot be told (guild not ready, API error).
    grant/revoke are idempotent and never raise for platform errors.
    """

    async def held_roles(self, member_id: int) -> Optional[Set[int]]: ...

    async def grant(self, member_id: int, role_id: int, reason: str) -> RoleResult: ...

    async def revoke(self, member_id: int, role_id: int, reason: str) -> RoleResult: ...


BucketPicker = Callable[[Sequence[int]], int]

_sysrand = random.SystemRandom()


def random_bucket_picker(pool: Sequence[int]) -> int:
    """Uniform random pick over the pool."""
    return _sysrand.choice(list(pool))


def log_role_results(results: Iterable[RoleResult]) -> List[RoleResult]:
    failed = []
    for r in results:
        if r.ok:
            continue
        failed.append(r)
        log.warning(f"[Roles] {r.action} failed for {r.member_id} role {r.role_id}: {r.error}")
    return failed


class GateRoleAllocator:
    """Keeps a member on exactly one of N interchangeable gate roles.

    The payment role is read here but never granted or removed; Whop owns it.
    """

    def __init__(
        self,
        membership: MembershipGateway,
        gate_role_ids: Sequence[int],
        payment_role_id: int,
        picker: BucketPicker = random_bucket_picker,
    ):
        if len(set(gate_role_ids)) < 2:
            raise ValueError("gate role pool needs at least 2 role IDs")
        if payment_role_id in gate_role_ids:
            raise ValueError("payment role must not be part of the gate role pool")
        self.membership = membership
        self.pool: Tuple[int, ...] = tuple(gate_role_ids)
        self.payment_role_id = payment_role_id
        self.picker = picker

    def pick_bucket(self) -> int:
        choice = self.picker(self.pool)
        if choice not in self.pool:
            raise ValueError(f"picker returned {choice}, which is not in the gate role pool")
        return choice

    async def snapshot(self, member_id: int) -> Optional[GateSnapshot]:
        """One live read: payment role presence plus held pool roles. None if not in guild.

        MembershipUnavailable propagates so callers can tell a failed lookup from a departure.
        """
        held = await self.membership.held_roles(member_id)
        if held is None:
            return None
        return GateSnapshot(
            has_payment_role=self.payment_role_id in held,
            buckets=frozenset(set(held) & set(self.pool)),
        )

    async def current_buckets(self, member_id: int) -> Optional[Set[int]]:
        try:
            held = await self.membership.held_roles(member_id)
        except MembershipUnavailable as e:
            log.warning(f"[Roles] Could not read roles for {member_id}: {e}")
            return None
        if held is None:
            return None
        return set(held) & set(self.pool)

    async def grant_bucket(self, member_id: int, role_id: int, reason: str = "Granting trial access") -> RoleResult:
        result = await self.membership.grant(member_id, role_id, reason)
        log_role_results([result])
        return result

    async def revoke_bucket(self, member_id: int, role_id: int, reason: str = "Access removed") -> RoleResult:
        result = await self.membership.revoke(member_id, role_id, reason)
        log_role_results([result])
        return result

    async def enforce_single_bucket(
        self, member_id: int, reason: str = "Paid access"
    ) -> Tuple[Optional[int], List[RoleResult]]:
        """Grant one freshly picked bucket and remove every other pool bucket.

        Returns (chosen_role_id, results). chosen is None when the member is gone.
        Each call is attempted independently; a partial result converges on the next call.
        """
        held = await self.current_buckets(member_id)
        if held is None:
            return None, []

        chosen = self.pick_bucket()
        results: List[RoleResult] = []
        if chosen not in held:
            results.append(await self.membership.grant(member_id, chosen, reason))
        for role_id in self.pool:
            if role_id != chosen and role_id in held:
                results.append(await self.membership.revoke(member_id, role_id, f"{reason} (single gate role)"))
        log_role_results(results)
        return chosen, results

    async def revoke_all_buckets(self, member_id: int, reason: str = "Access removed") -> List[RoleResult]:
        held = await self.current_buckets(member_id)
        if not held:
            return []
        results = []
        for role_id in self.pool:
            if role_id in held:
                results.append(await self.membership.revoke(member_id, role_id, reason))
        log_role_results(results)
        return results
