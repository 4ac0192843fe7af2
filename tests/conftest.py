"""
Shared fixtures: in-memory stand-ins for the Discord guild and DM sink.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set, Tuple

import pytest

from RSTrialGate.entitlement_store import EntitlementStore
from RSTrialGate.entitlements import EntitlementEngine
from RSTrialGate.expiry_sweeper import ExpirySweeper
from RSTrialGate.gate_config import GateSettings
from RSTrialGate.gate_roles import GateRoleAllocator, MembershipUnavailable, RoleResult
from RSTrialGate.notifier import DeliveryResult

GUILD_ID = 1000
PAYMENT_ROLE = 900
POOL = (2, 3, 4)
START = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
OLD_ACCOUNT = START - timedelta(days=400)


class FakeMembership:
    """Guild roles per member; None/absent means the member is not in the guild."""

    def __init__(self):
        self.roles: Dict[int, Set[int]] = {}
        self.calls: List[Tuple[str, int, int]] = []
        self.fail_grant: Set[int] = set()
        self.fail_revoke: Set[int] = set()
        self.unavailable = False

    def join(self, member_id: int, *role_ids: int) -> None:
        self.roles[member_id] = set(role_ids)

    def leave(self, member_id: int) -> None:
        self.roles.pop(member_id, None)

    async def held_roles(self, member_id: int) -> Optional[Set[int]]:
        await asyncio.sleep(0)
        if self.unavailable:
            raise MembershipUnavailable("guild not available")
        held = self.roles.get(member_id)
        return None if held is None else set(held)

    async def grant(self, member_id: int, role_id: int, reason: str) -> RoleResult:
        await asyncio.sleep(0)
        self.calls.append(("grant", member_id, role_id))
        if member_id not in self.roles:
            return RoleResult(member_id, role_id, "grant", False, "member not in guild")
        if role_id in self.fail_grant:
            return RoleResult(member_id, role_id, "grant", False, "429 Too Many Requests")
        self.roles[member_id].add(role_id)
        return RoleResult(member_id, role_id, "grant", True)

    async def revoke(self, member_id: int, role_id: int, reason: str) -> RoleResult:
        await asyncio.sleep(0)
        self.calls.append(("revoke", member_id, role_id))
        if member_id not in self.roles:
            return RoleResult(member_id, role_id, "revoke", False, "member not in guild")
        if role_id in self.fail_revoke:
            return RoleResult(member_id, role_id, "revoke", False, "429 Too Many Requests")
        self.roles[member_id].discard(role_id)
        return RoleResult(member_id, role_id, "revoke", True)


class FakeNotifier:
    def __init__(self):
        self.sent: List[Tuple[int, str]] = []
        self.fail = False

    async def send(self, member_id: int, text: str) -> DeliveryResult:
        self.sent.append((member_id, text))
        if self.fail:
            return DeliveryResult(member_id, False, "forbidden")
        return DeliveryResult(member_id, True)


class Clock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class CyclePicker:
    """Deterministic stand-in for the random picker: walks the pool in order."""

    def __init__(self):
        self.i = 0

    def __call__(self, pool):
        choice = pool[self.i % len(pool)]
        self.i += 1
        return choice


def make_settings(tmp_path, **overrides) -> GateSettings:
    values = dict(
        bot_token="test-token",
        guild_id=GUILD_ID,
        gate_role_ids=POOL,
        payment_role_id=PAYMENT_ROLE,
        payment_link="https://whop.example/checkout",
        trial_hours=48,
        db_path=tmp_path / "trial_gate.sqlite",
        brand_name="TestGate",
    )
    values.update(overrides)
    return GateSettings(**values)


@pytest.fixture
def settings(tmp_path) -> GateSettings:
    return make_settings(tmp_path)


@pytest.fixture
def store(settings):
    s = EntitlementStore(settings.db_path)
    yield s
    s.close()


@pytest.fixture
def membership() -> FakeMembership:
    return FakeMembership()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def clock() -> Clock:
    return Clock(START)


@pytest.fixture
def picker() -> CyclePicker:
    return CyclePicker()


@pytest.fixture
def allocator(membership, picker) -> GateRoleAllocator:
    return GateRoleAllocator(membership, POOL, PAYMENT_ROLE, picker=picker)


@pytest.fixture
def engine(settings, store, allocator, notifier, clock) -> EntitlementEngine:
    return EntitlementEngine(settings, store, allocator, notifier, clock=clock)


@pytest.fixture
def sweeper(engine, store) -> ExpirySweeper:
    return ExpirySweeper(engine, store, interval_seconds=60)
