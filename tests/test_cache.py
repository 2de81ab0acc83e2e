from pathlib import Path

import pytest

from reels.cache import cache_key, file_hash
from reels.errors import AssetError, LockError
from reels.locks import LeaseLockManager
from reels.models import CachedAsset, CacheLock


class TestCacheKey:
    def test_settings_order_does_not_matter(self):
        a = cache_key("template", {"template": "wave", "segments": ["a", "b"], "map": None})
        b = cache_key("template", {"map": None, "segments": ["a", "b"], "template": "wave"})
        assert a == b
        assert len(a) == 64

    def test_type_and_settings_change_the_key(self):
        base = cache_key("runway", {"source": "a.jpg"})
        assert base != cache_key("map", {"source": "a.jpg"})
        assert base != cache_key("runway", {"source": "b.jpg"})

    def test_empty_type_is_rejected(self):
        with pytest.raises(ValueError):
            cache_key("", {"a": 1})

    def test_unserializable_settings_are_rejected(self):
        with pytest.raises(ValueError):
            cache_key("runway", {"when": object()})


@pytest.mark.django_db
class TestAssetCache:
    def _source(self, tmp_path, name="clip.mp4", data=b"video-bytes"):
        path = tmp_path / name
        path.write_bytes(data)
        return path

    def test_put_copies_file_and_get_returns_it(self, tmp_path, asset_cache):
        source = self._source(tmp_path)
        key = cache_key("template", {"template": "wave"})
        asset = asset_cache.put(key, str(source), artifact_type="template", settings={"template": "wave"})

        assert asset.path.startswith(str(asset_cache.cache_dir))
        assert asset.path.endswith(".mp4")
        assert asset.content_hash == file_hash(source)
        assert asset_cache.get(key).path == asset.path
        # leases are released after each operation
        assert not CacheLock.objects.exists()

    def test_remote_reference_is_stored_as_is(self, asset_cache):
        key = cache_key("runway", {"source": "photo-1.jpg"})
        asset_cache.put(key, "s3://bucket/segments/photo-1.mp4", artifact_type="runway")
        assert asset_cache.get(key).path == "s3://bucket/segments/photo-1.mp4"

    def test_missing_key_is_a_miss(self, asset_cache):
        assert asset_cache.get(cache_key("runway", {"source": "nope"})) is None

    def test_corrupted_file_is_invalidated(self, tmp_path, asset_cache):
        key = cache_key("template", {"template": "wave"})
        asset = asset_cache.put(key, str(self._source(tmp_path)), artifact_type="template")
        with open(asset.path, "wb") as fh:
            fh.write(b"tampered")

        assert asset_cache.get(key) is None
        assert not CachedAsset.objects.filter(cache_key=key).exists()

    def test_deleted_file_is_a_miss(self, tmp_path, asset_cache):
        key = cache_key("template", {"template": "wave"})
        asset = asset_cache.put(key, str(self._source(tmp_path)), artifact_type="template")
        Path(asset.path).unlink()
        assert asset_cache.get(key) is None

    def test_expired_entry_is_a_miss(self, asset_cache):
        key = cache_key("map", {"lat": 1.0, "lng": 2.0})
        asset_cache.put(key, "s3://bucket/maps/m.mp4", artifact_type="map", ttl_seconds=-1)
        assert asset_cache.get(key) is None

    def test_put_overwrites_existing_entry(self, asset_cache):
        key = cache_key("runway", {"source": "photo-1.jpg"})
        asset_cache.put(key, "s3://bucket/old.mp4", artifact_type="runway")
        asset_cache.put(key, "s3://bucket/new.mp4", artifact_type="runway")
        assert CachedAsset.objects.filter(cache_key=key).count() == 1
        assert asset_cache.get(key).path == "s3://bucket/new.mp4"

    def test_empty_source_file_is_rejected(self, tmp_path, asset_cache):
        source = self._source(tmp_path, data=b"")
        with pytest.raises(AssetError):
            asset_cache.put(cache_key("template", {"t": 1}), str(source), artifact_type="template")

    def test_invalidate_by_type_removes_files(self, tmp_path, asset_cache):
        first = asset_cache.put(
            cache_key("template", {"t": 1}), str(self._source(tmp_path, "a.mp4", b"a")), artifact_type="template",
        )
        asset_cache.put(
            cache_key("template", {"t": 2}), str(self._source(tmp_path, "b.mp4", b"b")), artifact_type="template",
        )
        asset_cache.put(cache_key("map", {"m": 1}), "s3://bucket/m.mp4", artifact_type="map")

        assert asset_cache.invalidate_by_type("template") == 2
        assert list(CachedAsset.objects.values_list("artifact_type", flat=True)) == ["map"]
        assert not Path(first.path).exists()

    def test_cleanup_expired(self, asset_cache):
        asset_cache.put(cache_key("map", {"m": 1}), "s3://bucket/old.mp4", artifact_type="map", ttl_seconds=-1)
        asset_cache.put(cache_key("map", {"m": 2}), "s3://bucket/new.mp4", artifact_type="map")
        assert asset_cache.cleanup_expired() == 1
        assert CachedAsset.objects.count() == 1

    def test_put_waits_for_writer_then_gives_up(self, asset_cache):
        key = cache_key("runway", {"source": "photo-1.jpg"})
        other = LeaseLockManager(owner="other-worker", sleep=lambda _s: None)
        token = other.acquire("asset_" + key)

        with pytest.raises(LockError):
            asset_cache.put(key, "s3://bucket/a.mp4", artifact_type="runway")
        assert not CachedAsset.objects.filter(cache_key=key).exists()

        other.release("asset_" + key, token)
        asset_cache.put(key, "s3://bucket/a.mp4", artifact_type="runway")
        assert CachedAsset.objects.filter(cache_key=key).exists()
