"""Lock acquisition, expiry and release semantics."""

import threading
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from uuid import uuid4

import pytest

from salesgrid import models
from salesgrid.errors import LockNotHeld, RowLockConflict, RowNotFound
from salesgrid.services import locks, rows

from .conftest import TestingSessionLocal, create_user, row_payload


def _make_row(db, actor):
    row = rows.create_row(db, row_payload(), actor)
    db.commit()
    return row


def _activity(db, row_id, action):
    return (
        db.query(models.SalesActivityLog)
        .filter(models.SalesActivityLog.row_id == row_id, models.SalesActivityLog.action == action)
        .all()
    )


def test_lock_state_predicate():
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    holder = uuid4()
    fresh = SimpleNamespace(locked_by_id=holder, locked_at=datetime(2024, 5, 1, 11, 55))
    stale = SimpleNamespace(locked_by_id=holder, locked_at=datetime(2024, 5, 1, 11, 49))
    free = SimpleNamespace(locked_by_id=None, locked_at=None)
    assert locks.lock_state(fresh, now) == "locked"
    assert locks.lock_state(stale, now) == "expired"
    assert locks.lock_state(free, now) == "unlocked"
    assert locks.is_locked(fresh, now)
    assert not locks.is_locked(stale, now)


def test_second_actor_is_rejected_with_holder(db):
    alice = create_user(full_name="Alice")
    bob = create_user(full_name="Bob")
    row = _make_row(db, alice)

    locks.acquire_lock(db, row.id, alice)
    db.commit()

    with pytest.raises(RowLockConflict) as excinfo:
        locks.acquire_lock(db, row.id, bob)
    assert excinfo.value.holder_id == alice.id
    assert excinfo.value.holder_name == "Alice"
    assert excinfo.value.to_detail()["locked_by"] == {"id": str(alice.id), "name": "Alice"}

    db.rollback()
    assert rows.get_row(db, row.id).locked_by_id == alice.id


def test_conflict_is_seen_from_a_separate_session(db):
    alice = create_user()
    bob = create_user()
    row = _make_row(db, alice)
    locks.acquire_lock(db, row.id, alice)
    db.commit()

    with TestingSessionLocal() as other:
        with pytest.raises(RowLockConflict):
            locks.acquire_lock(other, row.id, bob)


def _race_for_lock(row_id, actors):
    barrier = threading.Barrier(len(actors))
    outcomes = []
    failures = []

    def contend(actor):
        with TestingSessionLocal() as session:
            barrier.wait()
            try:
                locks.acquire_lock(session, row_id, actor)
                session.commit()
                outcomes.append(("locked", actor.id))
            except RowLockConflict as exc:
                session.rollback()
                outcomes.append(("conflict", exc.holder_id))
            except Exception as exc:  # surfaced through the assertion below
                failures.append(exc)

    threads = [threading.Thread(target=contend, args=(actor,)) for actor in actors]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert failures == []
    return outcomes


def test_concurrent_acquires_have_exactly_one_winner(db):
    alice = create_user()
    bob = create_user()
    for _ in range(5):
        row = _make_row(db, alice)
        outcomes = _race_for_lock(row.id, [alice, bob])

        assert sorted(kind for kind, _ in outcomes) == ["conflict", "locked"]
        winner = next(holder for kind, holder in outcomes if kind == "locked")
        loser_saw = next(holder for kind, holder in outcomes if kind == "conflict")
        assert loser_saw == winner
        assert rows.get_row(db, row.id).locked_by_id == winner
        assert len(_activity(db, row.id, "locked")) == 1


def test_reacquire_by_holder_refreshes_without_new_entry(db):
    alice = create_user()
    row = _make_row(db, alice)
    start = datetime.now(timezone.utc)

    first = locks.acquire_lock(db, row.id, alice, now=start)
    first_stamp = first.locked_at
    second = locks.acquire_lock(db, row.id, alice, now=start + timedelta(minutes=3))
    db.commit()

    assert second.locked_by_id == alice.id
    assert second.locked_at > first_stamp
    assert len(_activity(db, row.id, "locked")) == 1


def test_expired_lock_can_be_taken_over(db):
    alice = create_user()
    bob = create_user()
    row = _make_row(db, alice)
    start = datetime.now(timezone.utc)

    locks.acquire_lock(db, row.id, alice, now=start)
    db.commit()
    later = start + locks.LOCK_TTL + timedelta(seconds=1)
    taken = locks.acquire_lock(db, row.id, bob, now=later)
    db.commit()
    assert taken.locked_by_id == bob.id


def test_holder_release_clears_lock(db):
    alice = create_user()
    row = _make_row(db, alice)
    locks.acquire_lock(db, row.id, alice)
    release = locks.release_lock(db, row.id, alice)
    db.commit()

    assert release.released and not release.forced
    assert release.previous_holder_id == alice.id
    refreshed = rows.get_row(db, row.id)
    assert refreshed.locked_by_id is None
    assert refreshed.locked_at is None
    assert len(_activity(db, row.id, "unlocked")) == 1


def test_third_party_cannot_release_live_lock(db):
    alice = create_user()
    mallory = create_user()
    row = _make_row(db, alice)
    locks.acquire_lock(db, row.id, alice)
    db.commit()

    with pytest.raises(LockNotHeld):
        locks.release_lock(db, row.id, mallory)
    db.rollback()
    assert rows.get_row(db, row.id).locked_by_id == alice.id


def test_third_party_clears_expired_lock(db):
    alice = create_user()
    carol = create_user()
    row = _make_row(db, alice)
    start = datetime.now(timezone.utc)
    locks.acquire_lock(db, row.id, alice, now=start)
    db.commit()

    release = locks.release_lock(db, row.id, carol, now=start + timedelta(minutes=11))
    db.commit()

    assert release.released and release.forced
    assert release.previous_holder_id == alice.id
    assert rows.get_row(db, row.id).locked_by_id is None
    entries = _activity(db, row.id, "unlocked")
    assert [e.description for e in entries] == ["Stale lock cleared"]
    assert entries[0].user_id == carol.id


def test_release_of_unlocked_row_is_a_no_op(db):
    alice = create_user()
    row = _make_row(db, alice)
    release = locks.release_lock(db, row.id, alice)
    assert release.released is False
    assert _activity(db, row.id, "unlocked") == []


def test_missing_or_deleted_rows_cannot_be_locked(db):
    alice = create_user()
    with pytest.raises(RowNotFound):
        locks.acquire_lock(db, uuid4(), alice)

    row = _make_row(db, alice)
    rows.delete_row(db, row.id, alice)
    db.commit()
    with pytest.raises(RowNotFound):
        locks.acquire_lock(db, row.id, alice)


def test_ensure_editable_blocks_other_actors_only(db):
    alice = create_user()
    bob = create_user()
    row = _make_row(db, alice)
    locks.acquire_lock(db, row.id, alice)

    locks.ensure_editable(row, alice)
    with pytest.raises(RowLockConflict):
        locks.ensure_editable(row, bob)
