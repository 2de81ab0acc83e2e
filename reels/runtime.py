"""Composition root: one instance of each pipeline service per process."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache

from django.conf import settings

from .assets import AssetResolver
from .cache import AssetCache
from .catalog import TemplateCatalog
from .cleanup import CleanupCoordinator, ResourceTracker
from .collaborators import HttpMapRenderer, HttpVideoConverter
from .composer import SequenceComposer
from .encode_queue import EncodeQueue
from .ffmpeg import CodecSelector, FFmpegRunner, MediaProber
from .locks import LeaseLockManager
from .pipeline import ProductionPipeline
from .render import MediaComposer
from .s3 import S3Storage

logger = logging.getLogger(__name__)


@dataclass
class Services:
    storage: S3Storage
    locks: LeaseLockManager
    cache: AssetCache
    tracker: ResourceTracker
    cleanup: CleanupCoordinator
    queue: EncodeQueue
    catalog: TemplateCatalog
    composer: SequenceComposer
    media: MediaComposer
    pipeline: ProductionPipeline


def build_services() -> Services:
    storage = S3Storage()
    locks = LeaseLockManager(
        ttl_seconds=settings.CACHE_LOCK_TTL_SECONDS,
        max_attempts=settings.CACHE_LOCK_MAX_ATTEMPTS,
        retry_delay=settings.CACHE_LOCK_RETRY_DELAY_SECONDS,
    )
    cache = AssetCache(settings.REEL_CACHE_DIR, locks, default_ttl_seconds=settings.CACHE_DEFAULT_TTL_SECONDS)
    tracker = ResourceTracker()
    cleanup = CleanupCoordinator(
        tracker,
        storage,
        interval_seconds=settings.CLEANUP_INTERVAL_SECONDS,
        task_timeout_seconds=settings.CLEANUP_TASK_TIMEOUT_SECONDS,
        max_retries=settings.CLEANUP_MAX_RETRIES,
    )
    if settings.CLEANUP_BACKGROUND_SWEEP:
        cleanup.start()

    queue = EncodeQueue(settings.FFMPEG_MAX_CONCURRENT_JOBS, default_timeout=settings.FFMPEG_TIMEOUT_SECONDS)
    catalog = get_catalog()
    composer = SequenceComposer(catalog)

    prober = MediaProber(settings.FFPROBE_BINARY)
    resolver = AssetResolver(
        storage,
        settings.REEL_WORK_DIR,
        asset_root=settings.REEL_ASSET_ROOT,
        prober=prober,
        ffmpeg_binary=settings.FFMPEG_BINARY,
    )
    media = MediaComposer(
        resolver,
        queue,
        runner=FFmpegRunner(settings.FFMPEG_BINARY),
        codecs=CodecSelector(settings.FFMPEG_BINARY),
        prober=prober,
        size=settings.REEL_OUTPUT_SIZE,
        fps=settings.REEL_OUTPUT_FPS,
        encode_timeout=settings.FFMPEG_TIMEOUT_SECONDS,
        max_retries=settings.FFMPEG_MAX_RETRIES,
        watermark_position=settings.REEL_WATERMARK_POSITION,
    )

    pipeline = ProductionPipeline(
        catalog=catalog,
        composer=composer,
        media=media,
        storage=storage,
        cache=cache,
        converter=HttpVideoConverter(
            settings.VIDEO_CONVERTER_URL,
            token=settings.VIDEO_CONVERTER_TOKEN or None,
            timeout=settings.UPSTREAM_TIMEOUT_SECONDS,
        ),
        map_renderer=HttpMapRenderer(settings.MAP_RENDERER_URL, timeout=settings.UPSTREAM_TIMEOUT_SECONDS),
        queue=queue,
        tracker=tracker,
        cleanup=cleanup,
        work_dir=settings.REEL_WORK_DIR,
        batch_size=settings.REEL_TEMPLATE_BATCH_SIZE,
        conversion_workers=settings.REEL_CONVERSION_WORKERS,
        primary_templates=settings.REEL_PRIMARY_TEMPLATES,
        watermark=settings.REEL_WATERMARK,
        cancel_poll_interval=settings.REEL_CANCEL_POLL_SECONDS,
    )
    logger.info("Pipeline services ready (templates=%s)", catalog.keys())
    return Services(
        storage=storage,
        locks=locks,
        cache=cache,
        tracker=tracker,
        cleanup=cleanup,
        queue=queue,
        catalog=catalog,
        composer=composer,
        media=media,
        pipeline=pipeline,
    )


@lru_cache(maxsize=1)
def get_catalog() -> TemplateCatalog:
    return TemplateCatalog.from_yaml(settings.REEL_TEMPLATE_CATALOG)


@lru_cache(maxsize=1)
def get_services() -> Services:
    return build_services()
