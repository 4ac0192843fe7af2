from __future__ import annotations

from datetime import timedelta

from RSTrialGate.entitlement_store import EntitlementStore

from conftest import START


def test_unknown_member_has_no_record(store):
    assert store.get(42) is None


def test_upsert_join_creates_default_record(store):
    store.upsert_join(42, START)
    rec = store.get(42)
    assert rec is not None
    assert rec.member_id == 42
    assert rec.trial_used is False
    assert rec.trial_expires_at is None
    assert rec.gate_role_id is None
    assert rec.paid is False
    assert rec.last_join_at == START


def test_upsert_join_only_touches_last_join(store):
    store.start_trial(42, START + timedelta(hours=48), 3, START)
    later = START + timedelta(hours=1)
    store.upsert_join(42, later)
    rec = store.get(42)
    assert rec.trial_used is True
    assert rec.trial_expires_at == START + timedelta(hours=48)
    assert rec.gate_role_id == 3
    assert rec.last_join_at == later


def test_start_trial_writes_all_fields_for_new_member(store):
    store.start_trial(7, START + timedelta(hours=48), 2, START)
    rec = store.get(7)
    assert rec.trial_used is True
    assert rec.trial_expires_at == START + timedelta(hours=48)
    assert rec.gate_role_id == 2
    assert rec.last_join_at == START


def test_set_paid_clears_trial_fields(store):
    store.start_trial(7, START + timedelta(hours=48), 2, START)
    store.set_paid(7, True)
    rec = store.get(7)
    assert rec.paid is True
    assert rec.trial_expires_at is None
    assert rec.gate_role_id is None
    assert rec.trial_used is True


def test_set_paid_false_keeps_trial_used(store):
    store.start_trial(7, START + timedelta(hours=48), 2, START)
    store.set_paid(7, True)
    store.set_paid(7, False)
    rec = store.get(7)
    assert rec.paid is False
    assert rec.trial_used is True


def test_set_paid_false_clears_trial_fields(store):
    store.start_trial(7, START + timedelta(hours=48), 2, START)
    store.set_paid(7, False)
    rec = store.get(7)
    assert rec.paid is False
    assert rec.trial_expires_at is None
    assert rec.gate_role_id is None
    assert rec.trial_used is True


def test_restore_trial_expiry_keeps_gate_role(store):
    expires = START + timedelta(hours=48)
    store.start_trial(7, expires, 2, START)
    store.clear_trial_expiry(7)
    store.restore_trial_expiry(7, expires)
    rec = store.get(7)
    assert rec.trial_expires_at == expires
    assert rec.gate_role_id == 2
    assert store.list_expired_trials(expires) == [(7, 2)]


def test_set_paid_creates_missing_record(store):
    store.set_paid(99, True)
    rec = store.get(99)
    assert rec.paid is True
    assert rec.trial_used is False


def test_clear_trial_expiry_keeps_gate_role(store):
    store.start_trial(7, START + timedelta(hours=48), 4, START)
    store.clear_trial_expiry(7)
    rec = store.get(7)
    assert rec.trial_expires_at is None
    assert rec.gate_role_id == 4


def test_clear_trial_clears_both(store):
    store.start_trial(7, START + timedelta(hours=48), 4, START)
    store.clear_trial(7)
    rec = store.get(7)
    assert rec.trial_expires_at is None
    assert rec.gate_role_id is None
    assert rec.trial_used is True


def test_list_expired_trials_includes_boundary_and_orders_by_expiry(store):
    store.start_trial(1, START + timedelta(hours=2), 2, START)
    store.start_trial(2, START + timedelta(hours=1), 3, START)
    store.start_trial(3, START + timedelta(hours=5), 4, START)

    assert store.list_expired_trials(START) == []
    assert store.list_expired_trials(START + timedelta(hours=2)) == [(2, 3), (1, 2)]


def test_list_expired_trials_skips_cleared(store):
    store.start_trial(1, START + timedelta(hours=1), 2, START)
    store.clear_trial_expiry(1)
    assert store.list_expired_trials(START + timedelta(days=10)) == []


def test_counts(store):
    store.upsert_join(1, START)
    store.start_trial(2, START + timedelta(hours=48), 2, START)
    store.start_trial(3, START + timedelta(hours=48), 3, START)
    store.set_paid(3, True)
    assert store.counts() == {"records": 3, "active_trials": 1, "trials_used": 2, "paid": 1}


def test_counts_on_empty_store(store):
    assert store.counts() == {"records": 0, "active_trials": 0, "trials_used": 0, "paid": 0}


def test_records_survive_reopen(tmp_path):
    path = tmp_path / "nested" / "gate.sqlite"
    s = EntitlementStore(path)
    s.start_trial(5, START + timedelta(hours=48), 3, START)
    s.close()

    s2 = EntitlementStore(path)
    try:
        rec = s2.get(5)
        assert rec.trial_used is True
        assert rec.gate_role_id == 3
    finally:
        s2.close()
