from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from RSTrialGate import expiry_sweeper
from RSTrialGate.entitlements import Outcome
from RSTrialGate.expiry_sweeper import ExpirySweeper

from conftest import OLD_ACCOUNT, POOL, START


async def _trial(engine, membership, member_id):
    membership.join(member_id)
    assert await engine.handle_join(member_id, OLD_ACCOUNT) is Outcome.JOIN_TRIAL_STARTED


async def test_sweep_with_nothing_expired(engine, membership, sweeper, clock):
    await _trial(engine, membership, 1)
    clock.advance(hours=47)

    report = await sweeper.run_once()

    assert report.found == 0
    assert report.summary() == "0 expired"
    assert len(membership.roles[1] & set(POOL)) == 1


async def test_sweep_expires_due_trials(engine, membership, notifier, store, sweeper, clock):
    await _trial(engine, membership, 1)
    clock.advance(hours=1)
    await _trial(engine, membership, 2)
    notifier.sent.clear()
    clock.advance(hours=47)

    report = await sweeper.run_once()

    # Member 2's trial started an hour later and is not due yet.
    assert report.found == 1
    assert report.outcomes[Outcome.TRIAL_EXPIRED] == 1
    assert membership.roles[1] & set(POOL) == set()
    assert len(membership.roles[2] & set(POOL)) == 1
    assert store.get(1).trial_expires_at is None
    assert store.get(2).trial_expires_at is not None
    assert notifier.sent == [(1, engine.messages.render("trial_expired", 1))]
    assert sweeper.last_report is report


async def test_sweep_scenario_member_left(engine, membership, notifier, store, sweeper, clock):
    await _trial(engine, membership, 1)
    notifier.sent.clear()
    membership.leave(1)
    clock.advance(hours=48)

    report = await sweeper.run_once()

    assert report.outcomes[Outcome.EXPIRY_MEMBER_GONE] == 1
    assert report.errors == 0
    assert store.get(1).trial_expires_at is None
    assert notifier.sent == []


async def test_sweep_clears_expiry_even_when_revoke_fails(engine, membership, notifier, store, sweeper, clock):
    await _trial(engine, membership, 1)
    membership.fail_revoke = set(POOL)
    notifier.sent.clear()
    clock.advance(hours=48)

    await sweeper.run_once()
    again = await sweeper.run_once()

    assert store.get(1).trial_expires_at is None
    assert again.found == 0
    assert len(notifier.sent) == 1


async def test_sweep_continues_after_member_error(engine, membership, store, sweeper, clock, monkeypatch):
    await _trial(engine, membership, 1)
    await _trial(engine, membership, 2)
    clock.advance(hours=48)

    real = engine.handle_trial_expired

    async def flaky(member_id, gate_role_id=None):
        if member_id == 1:
            raise RuntimeError("boom")
        return await real(member_id, gate_role_id)

    monkeypatch.setattr(engine, "handle_trial_expired", flaky)

    report = await sweeper.run_once()

    assert report.found == 2
    assert report.errors == 1
    assert report.outcomes[Outcome.TRIAL_EXPIRED] == 1
    assert "errors=1" in report.summary()
    assert store.get(2).trial_expires_at is None


async def test_sweep_retries_when_guild_unavailable(engine, membership, notifier, store, sweeper, clock):
    await _trial(engine, membership, 1)
    notifier.sent.clear()
    membership.unavailable = True
    clock.advance(hours=48)

    first = await sweeper.run_once()

    assert first.outcomes[Outcome.EXPIRY_LOOKUP_FAILED] == 1
    assert store.get(1).trial_expires_at is not None

    membership.unavailable = False
    second = await sweeper.run_once()

    assert second.found == 1
    assert second.outcomes[Outcome.TRIAL_EXPIRED] == 1
    assert len(notifier.sent) == 1


async def test_overlapping_tick_is_skipped(sweeper):
    async with sweeper._running:
        assert await sweeper.run_once() is None


async def test_sweeper_uses_engine_clock_by_default(engine, store):
    sw = ExpirySweeper(engine, store, interval_seconds=30)
    assert sw.clock is engine.clock
    assert sw.interval_seconds == 30.0
    assert sw.is_running is False


async def test_sweeper_explicit_clock(engine, store, membership):
    await _trial(engine, membership, 1)
    sw = ExpirySweeper(engine, store, clock=lambda: START + timedelta(days=3))

    report = await sw.run_once()

    assert report.found == 1


async def test_loop_restarts_after_a_crashed_tick(engine, store, monkeypatch):
    monkeypatch.setattr(expiry_sweeper, "RESTART_DELAY_SECONDS", 0.01)
    calls = []
    real = store.list_expired_trials

    def flaky(now):
        calls.append(now)
        if len(calls) == 1:
            raise RuntimeError("database is locked")
        return real(now)

    monkeypatch.setattr(store, "list_expired_trials", flaky)
    sw = ExpirySweeper(engine, store, interval_seconds=0.01)

    sw.start()
    try:
        for _ in range(300):
            if len(calls) >= 3 and sw.is_running:
                break
            await asyncio.sleep(0.01)

        assert len(calls) >= 3
        assert sw.is_running
        assert sw._restart_task is not None
        assert sw._restart_task.done()
        assert sw.last_report is not None
    finally:
        sw.stop()


async def test_stop_cancels_pending_restart(engine, store, monkeypatch):
    monkeypatch.setattr(expiry_sweeper, "RESTART_DELAY_SECONDS", 60)
    sw = ExpirySweeper(engine, store, interval_seconds=60)
    sw.start()

    await sw._on_loop_error(RuntimeError("boom"))
    pending = sw._restart_task
    await sw._on_loop_error(RuntimeError("boom again"))

    # A second crash while a restart is pending does not schedule another one.
    assert sw._restart_task is pending

    sw.stop()
    with pytest.raises(asyncio.CancelledError):
        await pending
    assert pending.cancelled()
