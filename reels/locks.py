"""Lease locks stored as (key, owner, expiry) rows in the CacheLock table."""

from __future__ import annotations

import logging
import os
import socket
import uuid
from contextlib import contextmanager
from datetime import timedelta

from django.db import IntegrityError, transaction
from django.utils import timezone

from .errors import LockBusy, LockError
from .models import CacheLock
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


def make_owner_token() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:12]}"


class LeaseLockManager:
    """
    Claims exclusive, time-bounded leases on string keys.

    A claim inserts a row; the unique key makes a concurrent insert fail. If the
    existing row has expired it is taken over with a conditional UPDATE, which
    only one claimant can win. Failed claims are retried with a fixed delay.

    Every claim is stamped with its own token (``<owner>:<random>``) and is
    released by that token, so two holders in one process never share a lease.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 60.0,
        max_attempts: int = 10,
        retry_delay: float = 0.5,
        owner: str | None = None,
        sleep=None,
    ):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.owner = owner or make_owner_token()
        kwargs = {"retry_on": (LockBusy,)}
        if sleep is not None:
            kwargs["sleep"] = sleep
        self.retry = RetryPolicy.fixed(max_attempts, retry_delay, **kwargs)

    def _lease_token(self) -> str:
        return f"{self.owner}:{uuid.uuid4().hex[:16]}"

    def try_claim(self, lock_key: str) -> str | None:
        """Claim ``lock_key`` once. Returns the lease token, or None if it is held."""
        token = self._lease_token()
        now = timezone.now()
        expires_at = now + self.ttl
        try:
            with transaction.atomic():
                CacheLock.objects.create(key=lock_key, owner=token, expires_at=expires_at)
            return token
        except IntegrityError:
            pass
        reclaimed = CacheLock.objects.filter(key=lock_key, expires_at__lt=now).update(
            owner=token, expires_at=expires_at
        )
        if reclaimed:
            logger.info("Reclaimed expired lock %s", lock_key)
            return token
        return None

    def _claim_or_raise(self, lock_key: str) -> str:
        token = self.try_claim(lock_key)
        if token is None:
            raise LockBusy(f"Lock {lock_key} is held by another owner")
        return token

    def acquire(self, lock_key: str) -> str:
        try:
            return self.retry.call(self._claim_or_raise, lock_key, description=f"acquire lock {lock_key}")
        except LockBusy as exc:
            raise LockError(
                f"Failed to acquire lock {lock_key} after {self.retry.max_attempts} attempts"
            ) from exc

    def release(self, lock_key: str, token: str) -> bool:
        # Only the lease that was claimed with this token is removed; a holder
        # whose lease expired and was reclaimed cannot drop the new one.
        deleted, _ = CacheLock.objects.filter(key=lock_key, owner=token).delete()
        if not deleted:
            logger.warning("Lock %s was not held by %s at release", lock_key, token)
        return bool(deleted)

    @contextmanager
    def hold(self, lock_key: str):
        token = self.acquire(lock_key)
        try:
            yield token
        finally:
            self.release(lock_key, token)

    def purge_expired(self) -> int:
        deleted, _ = CacheLock.objects.filter(expires_at__lt=timezone.now()).delete()
        return deleted
