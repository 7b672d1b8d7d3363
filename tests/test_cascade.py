import pytest

from tokenward.service.cascade import RevocationCascade, RevocationReason
from tokenward.service.one_time import OneTimeTokenManager
from tokenward.service.refresh_store import RefreshTokenStore
from tokenward.storage.errors import StoreUnavailable
from tokenward.storage.memory import MemoryStore
from tokenward.storage.models import TokenKind


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def parts(store):
    refresh_store = RefreshTokenStore(store, ttl_minutes=60)
    one_time = OneTimeTokenManager(
        store,
        ttl_minutes={TokenKind.VERIFY_EMAIL: 60, TokenKind.RESET_PASSWORD: 60},
    )
    return refresh_store, one_time, RevocationCascade(refresh_store, one_time)


def _outstanding(store, account_id, kind):
    return [
        t
        for t in store.one_time_tokens.values()
        if t.account_id == account_id and t.kind == kind and not t.used
    ]


@pytest.mark.parametrize("reason", list(RevocationReason))
def test_every_reason_revokes_all_sessions(store, parts, reason):
    refresh_store, _, cascade = parts
    account = store.create_account("c@example.com", "hash")
    sessions = [refresh_store.create(account.id) for _ in range(2)]

    result = cascade.cascade(account.id, reason)

    assert result.reason == reason
    assert result.sessions_revoked == 2
    assert all(refresh_store.get(s.id).revoked for s in sessions)


def test_password_change_kills_reset_links_but_keeps_verification(store, parts):
    _, one_time, cascade = parts
    account = store.create_account("c@example.com", "hash")
    one_time.issue(account.id, TokenKind.RESET_PASSWORD)
    one_time.issue(account.id, TokenKind.VERIFY_EMAIL)

    result = cascade.cascade(account.id, RevocationReason.PASSWORD_CHANGED)

    assert result.tokens_invalidated == 1
    assert _outstanding(store, account.id, TokenKind.RESET_PASSWORD) == []
    assert len(_outstanding(store, account.id, TokenKind.VERIFY_EMAIL)) == 1


def test_account_deletion_kills_every_token(store, parts):
    _, one_time, cascade = parts
    account = store.create_account("c@example.com", "hash")
    one_time.issue(account.id, TokenKind.RESET_PASSWORD)
    one_time.issue(account.id, TokenKind.VERIFY_EMAIL)

    result = cascade.cascade(account.id, "account_deleted")

    assert result.tokens_invalidated == 2


def test_role_change_leaves_tokens(store, parts):
    _, one_time, cascade = parts
    account = store.create_account("c@example.com", "hash")
    one_time.issue(account.id, TokenKind.RESET_PASSWORD)
    assert cascade.cascade(account.id, RevocationReason.ROLE_CHANGED).tokens_invalidated == 0


def test_cascade_with_nothing_to_revoke(store, parts):
    _, _, cascade = parts
    account = store.create_account("c@example.com", "hash")
    result = cascade.cascade(account.id, RevocationReason.PASSWORD_RESET)
    assert (result.sessions_revoked, result.tokens_invalidated) == (0, 0)


def test_unknown_reason_is_rejected(store, parts):
    _, _, cascade = parts
    with pytest.raises(ValueError):
        cascade.cascade("acct", "because")


def test_store_failure_propagates(store, parts):
    _, _, cascade = parts
    account = store.create_account("c@example.com", "hash")

    def unavailable(*args, **kwargs):
        raise StoreUnavailable("database unreachable")

    store.revoke_account_sessions = unavailable
    with pytest.raises(StoreUnavailable):
        cascade.cascade(account.id, RevocationReason.PASSWORD_CHANGED)
