"""Refresh session creation, rotation and revocation against the memory store."""

import threading
from datetime import timedelta

import pytest

from tokenward.service.errors import SessionExpired, SessionNotFound, SessionRevoked
from tokenward.service.refresh_store import RefreshTokenStore
from tokenward.storage.memory import MemoryStore
from tokenward.storage.models import utcnow


class MovableClock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def account(store):
    return store.create_account("owner@example.com", "hash", email_verified=True)


@pytest.fixture
def clock():
    return MovableClock()


@pytest.fixture
def refresh_store(store, clock):
    return RefreshTokenStore(store, ttl_minutes=60, clock=clock)


def test_create_returns_active_session(refresh_store, account):
    session = refresh_store.create(account.id)
    assert session.account_id == account.id
    assert not session.revoked
    assert session.expires_at > session.created_at
    assert refresh_store.get(session.id) is session


def test_rotate_consumes_old_session_and_links_successor(refresh_store, account):
    first = refresh_store.create(account.id)
    second = refresh_store.rotate(first.id)

    assert second.id != first.id
    assert second.account_id == account.id
    old = refresh_store.get(first.id)
    assert old.revoked
    assert old.rotated_to == second.id
    assert refresh_store.get(second.id).is_active()


def test_rotated_token_cannot_be_reused(refresh_store, account):
    first = refresh_store.create(account.id)
    refresh_store.rotate(first.id)
    with pytest.raises(SessionRevoked):
        refresh_store.rotate(first.id)


def test_rotate_unknown_session(refresh_store):
    with pytest.raises(SessionNotFound):
        refresh_store.rotate("no-such-session")
    with pytest.raises(SessionNotFound):
        refresh_store.rotate("")


def test_rotate_expired_session(refresh_store, account, clock):
    session = refresh_store.create(account.id)
    clock.advance(minutes=61)
    with pytest.raises(SessionExpired):
        refresh_store.rotate(session.id)


def test_revoke_is_idempotent(refresh_store, account):
    session = refresh_store.create(account.id)
    assert refresh_store.revoke(session.id) is True
    assert refresh_store.revoke(session.id) is False
    assert refresh_store.revoke("unknown") is False
    with pytest.raises(SessionRevoked):
        refresh_store.rotate(session.id)


def test_revoke_all_only_touches_one_account(refresh_store, store, account):
    other = store.create_account("other@example.com", "hash")
    mine = [refresh_store.create(account.id) for _ in range(3)]
    theirs = refresh_store.create(other.id)
    refresh_store.revoke(mine[0].id)

    assert refresh_store.revoke_all_for_account(account.id) == 2
    assert all(refresh_store.get(s.id).revoked for s in mine)
    assert refresh_store.get(theirs.id).is_active()
    assert refresh_store.revoke_all_for_account(account.id) == 0


def test_concurrent_rotation_has_exactly_one_winner(refresh_store, account):
    session = refresh_store.create(account.id)
    barrier = threading.Barrier(8)
    winners: list = []
    losers: list = []
    lock = threading.Lock()

    def attempt():
        barrier.wait()
        try:
            rotated = refresh_store.rotate(session.id)
        except SessionRevoked:
            with lock:
                losers.append(1)
        else:
            with lock:
                winners.append(rotated)

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(winners) == 1
    assert len(losers) == 7
    assert refresh_store.get(session.id).rotated_to == winners[0].id


def test_lost_race_leaves_no_successor(store, account, clock):
    """A conditional revoke that matches nothing must not mint a new session."""
    refresh_store = RefreshTokenStore(store, ttl_minutes=60, clock=clock)
    session = refresh_store.create(account.id)
    original = store.revoke_session_if_active

    def revoke_after_competitor(session_id, now, *, rotated_to=None):
        # A competing request wins between the read and the conditional update
        store.revoke_session(session_id, now)
        return original(session_id, now, rotated_to=rotated_to)

    store.revoke_session_if_active = revoke_after_competitor
    before = len(store.sessions)
    with pytest.raises(SessionRevoked):
        refresh_store.rotate(session.id)
    assert len(store.sessions) == before


def test_revocation_between_revoke_and_insert_leaves_no_live_session(store, account, clock):
    """An account-wide revocation racing a rotation must win."""
    refresh_store = RefreshTokenStore(store, ttl_minutes=60, clock=clock)
    session = refresh_store.create(account.id)
    original = store.create_session

    def insert_after_password_change(successor):
        # The password change runs after the parent is revoked but before the insert
        assert refresh_store.revoke_all_for_account(account.id) == 0
        return original(successor)

    store.create_session = insert_after_password_change
    with pytest.raises(SessionRevoked):
        refresh_store.rotate(session.id)

    live = [
        s for s in store.sessions.values()
        if s.account_id == account.id and s.is_active(clock())
    ]
    assert live == []
    assert refresh_store.get(session.id).rotated_to is not None


def test_session_opened_under_stale_generation_is_refused(refresh_store, account):
    generation = account.session_generation
    refresh_store.revoke_all_for_account(account.id)

    with pytest.raises(SessionRevoked):
        refresh_store.create(account.id, generation=generation)
    assert refresh_store.create(account.id).is_active()


def test_explicit_zero_ttl_is_not_replaced_by_default(refresh_store, account, clock):
    session = refresh_store.create(account.id, ttl_minutes=0)
    assert session.expires_at == clock()
    with pytest.raises(SessionExpired):
        refresh_store.rotate(session.id)


def test_sessions_are_stamped_with_the_injected_clock(refresh_store, account, clock):
    clock.advance(days=-3)
    session = refresh_store.create(account.id)
    assert session.created_at == clock()
    assert session.expires_at == clock() + timedelta(minutes=60)
