from datetime import timedelta

import pytest
from django.utils import timezone

from reels.errors import LockError
from reels.locks import LeaseLockManager
from reels.models import CacheLock

pytestmark = pytest.mark.django_db


def _manager(owner, attempts=3):
    return LeaseLockManager(ttl_seconds=60, max_attempts=attempts, retry_delay=0.01, owner=owner, sleep=lambda _s: None)


def _expire(key):
    CacheLock.objects.filter(key=key).update(expires_at=timezone.now() - timedelta(seconds=1))


def test_claim_and_release():
    a = _manager("a")
    token = a.try_claim("asset_k")
    assert token.startswith("a:")
    assert CacheLock.objects.get(key="asset_k").owner == token
    assert a.release("asset_k", token)
    assert not CacheLock.objects.filter(key="asset_k").exists()


def test_held_lock_rejects_other_owner_after_retries():
    a, b = _manager("a"), _manager("b", attempts=4)
    token = a.acquire("asset_k")
    with pytest.raises(LockError, match="after 4 attempts"):
        b.acquire("asset_k")
    assert CacheLock.objects.get(key="asset_k").owner == token


def test_expired_lock_is_reclaimed_by_another_owner():
    CacheLock.objects.create(key="asset_k", owner="crashed", expires_at=timezone.now() - timedelta(seconds=5))
    b = _manager("b")
    token = b.try_claim("asset_k")
    lock = CacheLock.objects.get(key="asset_k")
    assert lock.owner == token
    assert lock.expires_at > timezone.now()


def test_release_by_non_owner_keeps_lock():
    a, b = _manager("a"), _manager("b")
    token = a.acquire("asset_k")
    assert not b.release("asset_k", "b:whatever")
    assert CacheLock.objects.filter(key="asset_k", owner=token).exists()


def test_each_claim_in_one_process_gets_its_own_lease():
    shared = _manager("proc-1")
    first = shared.acquire("asset_k")
    _expire("asset_k")
    second = shared.acquire("asset_k")
    assert first != second

    # the first holder finishing late must not free the reclaimed lease
    assert not shared.release("asset_k", first)
    assert _manager("proc-2").try_claim("asset_k") is None
    assert CacheLock.objects.get(key="asset_k").owner == second

    assert shared.release("asset_k", second)
    assert _manager("proc-2").try_claim("asset_k")


def test_hold_yields_token_and_releases_on_error():
    a = _manager("a")
    with pytest.raises(RuntimeError):
        with a.hold("read_k") as token:
            assert CacheLock.objects.get(key="read_k").owner == token
            raise RuntimeError("boom")
    assert not CacheLock.objects.filter(key="read_k").exists()


def test_purge_expired_only_removes_stale_rows():
    now = timezone.now()
    CacheLock.objects.create(key="old", owner="x", expires_at=now - timedelta(minutes=1))
    CacheLock.objects.create(key="live", owner="x", expires_at=now + timedelta(minutes=1))
    assert _manager("a").purge_expired() == 1
    assert list(CacheLock.objects.values_list("key", flat=True)) == ["live"]
