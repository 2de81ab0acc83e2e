"""Content-addressed cache for derived artifacts (segments, map clips, composed templates)."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping

from django.utils import timezone

from .errors import AssetError
from .locks import LeaseLockManager
from .models import CachedAsset
from .s3 import is_remote

logger = logging.getLogger(__name__)

WRITE_LOCK_PREFIX = "asset_"
READ_LOCK_PREFIX = "read_"


def cache_key(artifact_type: str, settings: Mapping[str, Any] | None = None) -> str:
    """Return a stable SHA-256 key; settings key order never affects it."""
    if not str(artifact_type or "").strip():
        raise ValueError("artifact_type must be non-empty")
    payload = {"type": artifact_type, "settings": dict(settings or {})}
    try:
        encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)
    except TypeError as exc:
        raise ValueError(f"cache settings must be JSON serializable: {exc}") from exc
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def file_hash(path) -> str:
    digest = hashlib.md5()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def ref_hash(ref: str) -> str:
    return hashlib.md5(str(ref).encode("utf-8")).hexdigest()


class AssetCache:
    """
    Cache rows live in CachedAsset; local artifacts are copied under `cache_dir`.

    Mutations hold the write lease `asset_<key>`; lookups hold the read lease
    `read_<key>`. A row is only written after its file is fully in place.
    """

    def __init__(self, cache_dir, locks: LeaseLockManager, *, default_ttl_seconds: float = 24 * 3600):
        self.cache_dir = Path(cache_dir)
        self.locks = locks
        self.default_ttl = timedelta(seconds=default_ttl_seconds)

    # -- lookup -----------------------------------------------------------

    def get(self, key: str) -> CachedAsset | None:
        with self.locks.hold(READ_LOCK_PREFIX + key):
            asset = CachedAsset.objects.filter(cache_key=key).first()
            if asset is None:
                return None
            problem = self._problem_with(asset)
        if problem is None:
            return asset
        logger.warning("Dropping stale cache entry %s (%s): %s", key, asset.artifact_type, problem)
        self.invalidate(asset.id)
        return None

    def _problem_with(self, asset: CachedAsset) -> str | None:
        if asset.expires_at is not None and asset.expires_at <= timezone.now():
            return "expired"
        if asset.is_remote:
            return None
        if not os.path.isfile(asset.path):
            return "file missing"
        if file_hash(asset.path) != asset.content_hash:
            return "hash mismatch"
        return None

    # -- mutation ---------------------------------------------------------

    def put(
        self,
        key: str,
        source: str,
        *,
        artifact_type: str,
        settings: Mapping[str, Any] | None = None,
        ttl_seconds: float | None = None,
    ) -> CachedAsset:
        ttl = timedelta(seconds=ttl_seconds) if ttl_seconds is not None else self.default_ttl
        with self.locks.hold(WRITE_LOCK_PREFIX + key):
            if is_remote(source):
                path, content_hash = source, ref_hash(source)
            else:
                path, content_hash = self._store_file(key, source)
            asset, created = CachedAsset.objects.update_or_create(
                cache_key=key,
                defaults={
                    "artifact_type": artifact_type,
                    "path": path,
                    "content_hash": content_hash,
                    "settings": dict(settings or {}),
                    "expires_at": timezone.now() + ttl,
                },
            )
        logger.info("Cached %s asset %s -> %s (%s)", artifact_type, key[:12], path, "new" if created else "updated")
        return asset

    def _store_file(self, key: str, source: str) -> tuple[str, str]:
        src = Path(source)
        if not src.is_file() or src.stat().st_size == 0:
            raise AssetError(f"Cannot cache missing or empty file: {source}")
        content_hash = file_hash(src)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        dest = self.cache_dir / f"{key}_{content_hash}{src.suffix}"
        if not dest.exists():
            tmp = self.cache_dir / f".{key}.{uuid.uuid4().hex}.part"
            shutil.copyfile(src, tmp)
            os.replace(tmp, dest)
        return str(dest), content_hash

    def invalidate(self, asset_id: int) -> bool:
        asset = CachedAsset.objects.filter(pk=asset_id).first()
        if asset is None:
            return False
        with self.locks.hold(WRITE_LOCK_PREFIX + asset.cache_key):
            # re-read under the lease; a writer may have replaced the row meanwhile
            asset = CachedAsset.objects.filter(pk=asset_id).first()
            if asset is None:
                return False
            self._remove_file(asset)
            asset.delete()
        logger.info("Invalidated cache entry %s (%s)", asset_id, asset.artifact_type)
        return True

    def invalidate_by_type(self, artifact_type: str) -> int:
        ids = list(CachedAsset.objects.filter(artifact_type=artifact_type).values_list("id", flat=True))
        return sum(1 for asset_id in ids if self.invalidate(asset_id))

    def cleanup_expired(self) -> int:
        ids = list(CachedAsset.objects.filter(expires_at__lt=timezone.now()).values_list("id", flat=True))
        removed = sum(1 for asset_id in ids if self.invalidate(asset_id))
        self.locks.purge_expired()
        if removed:
            logger.info("Removed %d expired cache entries", removed)
        return removed

    def _remove_file(self, asset: CachedAsset) -> None:
        if asset.is_remote:
            return
        path = Path(asset.path)
        try:
            cache_root = self.cache_dir.resolve()
            if cache_root not in path.resolve().parents:
                return
            path.unlink()
        except FileNotFoundError:
            pass
