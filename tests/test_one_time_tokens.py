import threading
from datetime import timedelta

import pytest

from tokenward.service.errors import TokenAlreadyUsed, TokenExpired, TokenNotFound
from tokenward.service.one_time import OneTimeTokenManager
from tokenward.storage.common import hash_secret
from tokenward.storage.memory import MemoryStore
from tokenward.storage.models import TokenKind, utcnow


class MovableClock:
    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def account(store):
    return store.create_account("reader@example.com", "hash")


@pytest.fixture
def clock():
    return MovableClock()


@pytest.fixture
def manager(store, clock):
    return OneTimeTokenManager(
        store,
        ttl_minutes={TokenKind.VERIFY_EMAIL: 24 * 60, TokenKind.RESET_PASSWORD: 60},
        clock=clock,
    )


def test_only_the_hash_is_stored(manager, store, account):
    raw = manager.issue(account.id, TokenKind.RESET_PASSWORD)
    records = list(store.one_time_tokens.values())
    assert len(records) == 1
    assert records[0].token_hash == hash_secret(raw)
    assert raw not in records[0].token_hash


def test_consume_returns_account_once(manager, account):
    raw = manager.issue(account.id, TokenKind.VERIFY_EMAIL)
    assert manager.consume(raw, TokenKind.VERIFY_EMAIL).id == account.id
    with pytest.raises(TokenAlreadyUsed):
        manager.consume(raw, TokenKind.VERIFY_EMAIL)


def test_kind_must_match(manager, account):
    raw = manager.issue(account.id, TokenKind.VERIFY_EMAIL)
    with pytest.raises(TokenNotFound):
        manager.consume(raw, TokenKind.RESET_PASSWORD)
    # The mismatched attempt did not burn it
    assert manager.consume(raw, TokenKind.VERIFY_EMAIL).id == account.id


@pytest.mark.parametrize("raw", ["", "never-issued"])
def test_unknown_secret(manager, raw):
    with pytest.raises(TokenNotFound):
        manager.consume(raw, TokenKind.RESET_PASSWORD)


def test_expired_token(manager, account, clock):
    raw = manager.issue(account.id, TokenKind.RESET_PASSWORD)
    clock.now = utcnow() + timedelta(minutes=61)
    with pytest.raises(TokenExpired) as excinfo:
        manager.consume(raw, TokenKind.RESET_PASSWORD)
    assert excinfo.value.status_code == 400


def test_reset_token_with_day_long_ttl_expires_after_25_hours(manager, store, account, clock):
    raw = manager.issue(account.id, TokenKind.RESET_PASSWORD, ttl_minutes=24 * 60)
    record = store.get_one_time_token_by_hash(hash_secret(raw), TokenKind.RESET_PASSWORD)
    assert record.expires_at == clock() + timedelta(hours=24)

    clock.now += timedelta(hours=25)
    with pytest.raises(TokenExpired):
        manager.consume(raw, TokenKind.RESET_PASSWORD)
    assert not record.used


def test_explicit_zero_ttl_is_honoured(manager, account):
    raw = manager.issue(account.id, TokenKind.VERIFY_EMAIL, ttl_minutes=0)
    with pytest.raises(TokenExpired):
        manager.consume(raw, TokenKind.VERIFY_EMAIL)


def test_tokens_are_stamped_with_the_injected_clock(manager, store, account, clock):
    clock.now -= timedelta(days=2)
    raw = manager.issue(account.id, TokenKind.VERIFY_EMAIL)
    record = store.get_one_time_token_by_hash(hash_secret(raw), TokenKind.VERIFY_EMAIL)

    assert record.created_at == clock()
    assert record.expires_at == clock() + timedelta(hours=24)
    # Issued two days back with a one-day lifetime
    clock.now = utcnow()
    with pytest.raises(TokenExpired):
        manager.consume(raw, TokenKind.VERIFY_EMAIL)


def test_used_wins_over_expired(manager, account, clock):
    raw = manager.issue(account.id, TokenKind.RESET_PASSWORD)
    manager.consume(raw, TokenKind.RESET_PASSWORD)
    clock.now = utcnow() + timedelta(hours=2)
    with pytest.raises(TokenAlreadyUsed):
        manager.consume(raw, TokenKind.RESET_PASSWORD)


def test_expected_email_must_match_owner(manager, account):
    raw = manager.issue(account.id, TokenKind.RESET_PASSWORD)
    with pytest.raises(TokenNotFound):
        manager.consume(raw, TokenKind.RESET_PASSWORD, expected_email="other@example.com")
    account_back = manager.consume(
        raw, TokenKind.RESET_PASSWORD, expected_email="  Reader@Example.com "
    )
    assert account_back.id == account.id


def test_invalidate_for_account_filters_by_kind(manager, account):
    verify = manager.issue(account.id, TokenKind.VERIFY_EMAIL)
    reset_a = manager.issue(account.id, TokenKind.RESET_PASSWORD)
    reset_b = manager.issue(account.id, TokenKind.RESET_PASSWORD)

    assert manager.invalidate_for_account(account.id, TokenKind.RESET_PASSWORD) == 2
    for raw in (reset_a, reset_b):
        with pytest.raises(TokenAlreadyUsed):
            manager.consume(raw, TokenKind.RESET_PASSWORD)
    assert manager.consume(verify, TokenKind.VERIFY_EMAIL).id == account.id


def test_invalidate_all_kinds(manager, account):
    manager.issue(account.id, TokenKind.VERIFY_EMAIL)
    manager.issue(account.id, TokenKind.RESET_PASSWORD)
    assert manager.invalidate_for_account(account.id) == 2
    assert manager.invalidate_for_account(account.id) == 0


def test_concurrent_consume_has_exactly_one_winner(manager, account):
    raw = manager.issue(account.id, TokenKind.RESET_PASSWORD)
    barrier = threading.Barrier(10)
    outcomes: list = []
    lock = threading.Lock()

    def attempt():
        barrier.wait()
        try:
            manager.consume(raw, TokenKind.RESET_PASSWORD)
        except TokenAlreadyUsed:
            result = "used"
        else:
            result = "ok"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count("used") == 9


def test_lost_race_reports_already_used(manager, store, account):
    raw = manager.issue(account.id, TokenKind.RESET_PASSWORD)
    original = store.mark_token_used_if_valid

    def mark_after_competitor(token_id, now):
        original(token_id, now)
        return original(token_id, now)

    store.mark_token_used_if_valid = mark_after_competitor
    with pytest.raises(TokenAlreadyUsed):
        manager.consume(raw, TokenKind.RESET_PASSWORD)
