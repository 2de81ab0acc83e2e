"""Shared fixtures: fake collaborators and a pipeline wired around them."""

from pathlib import Path

import pytest

import reels
from reels.cache import AssetCache
from reels.catalog import TemplateCatalog
from reels.cleanup import CleanupCoordinator, ResourceTracker
from reels.composer import SequenceComposer
from reels.encode_queue import EncodeQueue
from reels.errors import UpstreamError
from reels.locks import LeaseLockManager
from reels.pipeline import ProductionPipeline
from reels.retry import RetryPolicy

TEMPLATES_YAML = Path(reels.__file__).parent / "templates.yaml"


@pytest.fixture
def catalog():
    return TemplateCatalog.from_yaml(TEMPLATES_YAML)


@pytest.fixture
def locks():
    return LeaseLockManager(ttl_seconds=60, max_attempts=3, retry_delay=0.01, sleep=lambda _s: None)


@pytest.fixture
def asset_cache(tmp_path, locks):
    return AssetCache(tmp_path / "cache", locks, default_ttl_seconds=3600)


class FakeConverter:
    """Converts `photo-N.jpg` into `s3://bucket/segments/photo-N.mp4`; can fail chosen sources."""

    def __init__(self, fail=()):
        self.fail = set(fail)
        self.calls = []

    def convert(self, image_url, index, job_id):
        self.calls.append(image_url)
        if image_url in self.fail:
            raise UpstreamError(f"conversion rejected {image_url}")
        stem = Path(image_url).stem
        return f"s3://bucket/segments/{stem}.mp4"


class FakeMapRenderer:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def render(self, coordinates, job_id):
        self.calls.append(dict(coordinates))
        if self.fail:
            raise UpstreamError("map renderer down")
        return "s3://bucket/maps/flythrough.mp4"


class FakeMedia:
    """Stands in for MediaComposer; records composed clips and can fail chosen templates."""

    def __init__(self, fail=None):
        self.fail = dict(fail or {})
        self.rendered = {}

    def render(self, clips, template, watermark=None, *, job_id, output_path):
        self.rendered[template.key] = list(clips)
        if template.key in self.fail:
            raise self.fail[template.key]
        return str(output_path)


class FakeStorage:
    def __init__(self):
        self.uploads = []

    def upload_file(self, local_path, key, content_type=None):
        self.uploads.append(key)
        return f"s3://bucket/{key}"


@pytest.fixture
def converter():
    return FakeConverter()


@pytest.fixture
def map_renderer():
    return FakeMapRenderer()


@pytest.fixture
def media():
    return FakeMedia()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def encode_queue():
    queue = EncodeQueue(max_concurrent=1, default_timeout=30)
    yield queue
    queue.shutdown()


@pytest.fixture
def make_pipeline(tmp_path, catalog, asset_cache, converter, map_renderer, media, storage, encode_queue):
    def factory(**overrides):
        tracker = ResourceTracker()
        options = dict(
            catalog=catalog,
            composer=SequenceComposer(catalog),
            media=media,
            storage=storage,
            cache=asset_cache,
            converter=converter,
            map_renderer=map_renderer,
            queue=encode_queue,
            tracker=tracker,
            cleanup=CleanupCoordinator(tracker, storage),
            work_dir=tmp_path / "work",
            batch_size=2,
            conversion_workers=2,
            primary_templates=["storyteller", "crescendo", "wave"],
            upstream_retry=RetryPolicy(max_attempts=1, delays=(), retry_on=(UpstreamError,)),
            cancel_poll_interval=0.05,
        )
        options.update(overrides)
        return ProductionPipeline(**options)

    return factory
