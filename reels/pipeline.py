"""
Job orchestrator: photos -> per-photo clips -> optional map clip -> templates -> upload.

Threading model: per-photo conversions and template renders run on worker
threads and never touch the database. Every Job/Photo/cache row read or write
happens on the calling thread, between or while waiting on those workers.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Sequence

from django.db.models import F
from django.utils import timezone

from .assets import normalize_url
from .cache import AssetCache, cache_key
from .catalog import TemplateCatalog
from .cleanup import CleanupCoordinator, CleanupKind, ResourceState, ResourceTracker
from .composer import SequenceComposer
from .encode_queue import EncodeQueue
from .errors import AssetError, JobCancelled, LockError, PipelineError, UpstreamError, ValidationError
from .models import Job, Photo
from .render import MediaComposer
from .retry import RetryPolicy
from .s3 import is_remote
from .utils import chunked, dedupe, guess_kind

logger = logging.getLogger(__name__)

NO_SUCCESS_MESSAGE = "no templates were successfully generated"

SEGMENT_ARTIFACT = "runway"
MAP_ARTIFACT = "map"
TEMPLATE_ARTIFACT = "template"


class TemplateStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass
class TemplateResult:
    template: str
    status: TemplateStatus
    output_url: str | None = None
    error: str | None = None
    processing_time: float = 0.0
    cached: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status is TemplateStatus.SUCCESS

    def as_dict(self) -> dict:
        data = {
            "template": self.template,
            "status": self.status.value,
            "processing_time": round(self.processing_time, 3),
        }
        if self.output_url:
            data["output_url"] = self.output_url
        if self.error:
            data["error"] = self.error
        if self.cached:
            data["cached"] = True
        return data


@dataclass(frozen=True)
class PhotoRef:
    id: str
    input_path: str
    order: int
    video_path: str = ""

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class RegenerationContext:
    photos_to_regenerate: list[PhotoRef]
    existing_photos: list[PhotoRef]
    regenerated_photo_ids: list[str]
    total_photos: int

    def as_dict(self) -> dict:
        return {
            "photos_to_regenerate": [p.as_dict() for p in self.photos_to_regenerate],
            "existing_photos": [p.as_dict() for p in self.existing_photos],
            "regenerated_photo_ids": list(self.regenerated_photo_ids),
            "total_photos": self.total_photos,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RegenerationContext":
        return cls(
            photos_to_regenerate=[PhotoRef(**p) for p in data.get("photos_to_regenerate", [])],
            existing_photos=[PhotoRef(**p) for p in data.get("existing_photos", [])],
            regenerated_photo_ids=list(data.get("regenerated_photo_ids", [])),
            total_photos=int(data.get("total_photos", 0)),
        )

    def ordered(self) -> list[PhotoRef]:
        return sorted([*self.existing_photos, *self.photos_to_regenerate], key=lambda p: p.order)


@dataclass
class PipelineOutcome:
    job_id: str
    status: str
    output_url: str = ""
    error: str = ""
    primary_template: str | None = None
    results: dict[str, TemplateResult] = field(default_factory=dict)
    segments: list[str] = field(default_factory=list)
    segments_by_photo: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == Job.Status.COMPLETED


@dataclass(frozen=True)
class _SegmentPlan:
    position: int
    source: str
    photo_id: str | None = None
    reuse: str = ""
    force: bool = False


class _Progress:
    """Monotonic job progress; every write records the stage alongside it."""

    def __init__(self, job: Job):
        self.job = job
        self.value = 0

    def update(self, value: float, stage: str, sub_stage: str | None = None, **metadata) -> None:
        self.value = max(self.value, min(100, int(value)))
        job = self.job
        job.progress = self.value
        job.metadata = {**(job.metadata or {}), "stage": stage, "sub_stage": sub_stage or "", **metadata}
        job.save(update_fields=["progress", "metadata", "updated_at"])
        logger.info("[%s] Progress %s%s (%d%%)", job.id, stage, f":{sub_stage}" if sub_stage else "", self.value)


class ProductionPipeline:
    def __init__(
        self,
        *,
        catalog: TemplateCatalog,
        composer: SequenceComposer,
        media: MediaComposer,
        storage,
        cache: AssetCache,
        converter,
        map_renderer,
        queue: EncodeQueue,
        tracker: ResourceTracker,
        cleanup: CleanupCoordinator,
        work_dir,
        batch_size: int = 2,
        conversion_workers: int = 4,
        primary_templates: Sequence[str] = (),
        watermark: str | None = None,
        upstream_retry: RetryPolicy | None = None,
        cancel_poll_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.catalog = catalog
        self.composer = composer
        self.media = media
        self.storage = storage
        self.cache = cache
        self.converter = converter
        self.map_renderer = map_renderer
        self.queue = queue
        self.tracker = tracker
        self.cleanup = cleanup
        self.work_dir = Path(work_dir)
        self.batch_size = max(1, int(batch_size))
        self.conversion_workers = max(1, int(conversion_workers))
        self.primary_templates = list(primary_templates)
        self.watermark = watermark or None
        self.upstream_retry = upstream_retry or RetryPolicy(
            max_attempts=3, delays=(2.0, 5.0), retry_on=(UpstreamError,)
        )
        self.cancel_poll_interval = cancel_poll_interval
        self.clock = clock

    # ── public API ───────────────────────────────────────────────

    def execute(
        self,
        job_id,
        input_media: Sequence[str],
        templates: Sequence[str],
        coordinates: dict | None = None,
        regeneration_context: RegenerationContext | None = None,
    ) -> PipelineOutcome:
        job = Job.objects.get(pk=job_id)
        job_id = str(job.id)
        requested = dedupe(templates or self.catalog.keys())
        progress = _Progress(job)

        workdir = self.work_dir / job_id
        self.tracker.track(workdir, ResourceState.PROCESSING)
        workdir.mkdir(parents=True, exist_ok=True)
        self.cleanup.register(workdir, CleanupKind.DIRECTORY, priority=0, job_id=job_id)

        job.status = Job.Status.PROCESSING
        job.error = ""
        job.completed_at = None
        job.save(update_fields=["status", "error", "completed_at", "updated_at"])
        start_meta = {"results": {}, "templates_requested": requested}
        if regeneration_context is not None:
            start_meta["regeneration_context"] = regeneration_context.as_dict()
        progress.update(0, "runway", "validating_inputs", **start_meta)
        logger.info(
            "[%s] Starting pipeline: %d inputs, templates=%s%s",
            job_id, len(input_media), requested, " (regeneration)" if regeneration_context else "",
        )

        try:
            media = self._validate_inputs(input_media)
            segments, by_photo = self._produce_segments(job, media, regeneration_context, progress)
            progress.update(40, "runway", "segments_ready", segments=segments)
            self._raise_if_cancelled(job_id)

            map_clip = self._map_clip(job_id, coordinates, requested, progress)
            self._raise_if_cancelled(job_id)

            progress.update(50, "template", "starting")
            results = self._run_templates(job, requested, segments, map_clip, coordinates, progress)
            outcome = self._finish(job, requested, results, progress)
            outcome.segments = segments
            outcome.segments_by_photo = by_photo
            return outcome
        except PipelineError as exc:
            return self._fail(job, str(exc), progress)
        except Exception as exc:
            logger.exception("[%s] Pipeline crashed", job_id)
            self._fail(job, f"internal error: {exc}", progress)
            raise
        finally:
            self.tracker.release(workdir)
            self.queue.forget_job(job_id)
            self.cleanup.execute_cleanup(job_id=job_id)

    def regenerate(self, job_id, photo_ids: Sequence[str]) -> PipelineOutcome:
        """Re-convert only `photo_ids`, reuse every other photo's clip, then re-render all templates."""
        job = Job.objects.get(pk=job_id)
        photo_ids = dedupe(str(p) for p in photo_ids)
        if not photo_ids:
            raise ValidationError("no photos selected for regeneration")

        targeted = {str(p.id): p for p in Photo.objects.filter(id__in=photo_ids)}
        missing = [p for p in photo_ids if p not in targeted]
        if missing:
            raise ValidationError(f"photos not found: {', '.join(missing)}")
        listings = {p.listing_id for p in targeted.values()}
        if len(listings) > 1:
            raise ValidationError(f"photos must belong to one listing, found {sorted(listings)}")
        listing_id = listings.pop()
        self._check_concurrent_regeneration(job, listing_id, photo_ids)

        listing_photos = list(
            Photo.objects.filter(listing_id=listing_id).order_by(F("order").asc(nulls_last=True), "created_at")
        )
        refs = [
            PhotoRef(id=str(p.id), input_path=p.input_path, order=i, video_path=p.video_path)
            for i, p in enumerate(listing_photos)
        ]
        context = RegenerationContext(
            photos_to_regenerate=[r for r in refs if r.id in targeted],
            existing_photos=[r for r in refs if r.id not in targeted],
            regenerated_photo_ids=photo_ids,
            total_photos=len(refs),
        )
        logger.info(
            "[%s] Regenerating %d of %d photos for listing %s",
            job.id, len(photo_ids), context.total_photos, listing_id,
        )

        Photo.objects.filter(id__in=photo_ids).update(status=Photo.Status.PROCESSING, error="")
        job.listing_id = job.listing_id or listing_id
        job.input_files = [r.input_path for r in refs]
        job.metadata = {**(job.metadata or {}), "regeneration_context": context.as_dict()}
        job.save(update_fields=["listing_id", "input_files", "metadata", "updated_at"])

        try:
            outcome = self.execute(
                job.id, job.input_files, job.templates,
                coordinates=job.coordinates, regeneration_context=context,
            )
        except Exception as exc:
            Photo.objects.filter(id__in=photo_ids).update(status=Photo.Status.FAILED, error=str(exc)[:4000])
            raise

        if outcome.succeeded:
            for photo_id in photo_ids:
                Photo.objects.filter(pk=photo_id).update(
                    status=Photo.Status.COMPLETED,
                    video_path=outcome.segments_by_photo.get(photo_id, ""),
                    error="",
                )
        else:
            Photo.objects.filter(id__in=photo_ids).update(status=Photo.Status.FAILED, error=outcome.error[:4000])
        return outcome

    def cancel(self, job_id) -> int:
        """Kill this process's queued and running encodes for the job."""
        return self.queue.cancel_job(str(job_id))

    # ── stages ───────────────────────────────────────────────────

    def _validate_inputs(self, input_media: Sequence[str]) -> list[str]:
        media = [str(m).strip() for m in input_media or []]
        if not media:
            raise ValidationError("no input media supplied")
        bad = [m for m in media if not m or guess_kind(m) not in ("image", "video")]
        if bad:
            raise ValidationError(f"unsupported input media: {bad[:5]}")
        return media

    def _check_concurrent_regeneration(self, job: Job, listing_id: str, photo_ids: list[str]) -> None:
        wanted = set(photo_ids)
        others = Job.objects.filter(status=Job.Status.PROCESSING, listing_id=listing_id).exclude(pk=job.pk)
        for other in others:
            busy = set((other.metadata or {}).get("regeneration_context", {}).get("regenerated_photo_ids", []))
            overlap = wanted & busy
            if overlap:
                raise ValidationError(
                    f"photos {sorted(overlap)} are already being regenerated in job {other.id}"
                )

    def _segment_plan(self, job: Job, media: list[str], context: RegenerationContext | None) -> list[_SegmentPlan]:
        if context is None:
            photos = self._listing_photos_by_path(job.listing_id)
            plan = []
            for i, src in enumerate(media):
                photo = photos.get(src)
                if photo is None:
                    plan.append(_SegmentPlan(position=i, source=src))
                else:
                    plan.append(_SegmentPlan(position=i, source=photo.input_path, photo_id=str(photo.id)))
            return plan
        targeted = set(context.regenerated_photo_ids)
        return [
            _SegmentPlan(
                position=i,
                source=ref.input_path,
                photo_id=ref.id,
                reuse="" if ref.id in targeted else ref.video_path,
                force=ref.id in targeted,
            )
            for i, ref in enumerate(context.ordered())
        ]

    def _listing_photos_by_path(self, listing_id: str) -> dict[str, Photo]:
        """Photo rows of the listing, addressable by either their source or processed path."""
        if not listing_id:
            return {}
        photos: dict[str, Photo] = {}
        for photo in Photo.objects.filter(listing_id=listing_id):
            photos.setdefault(photo.source_path, photo)
            if photo.processed_path:
                photos.setdefault(photo.processed_path, photo)
        return photos

    def _segment_settings(self, source: str) -> dict:
        return {"source": normalize_url(source) if is_remote(source) else source}

    def _produce_segments(
        self,
        job: Job,
        media: list[str],
        context: RegenerationContext | None,
        progress: _Progress,
    ) -> tuple[list[str], dict[str, str]]:
        job_id = str(job.id)
        plan = self._segment_plan(job, media, context)
        segments: dict[int, str] = {}
        to_convert: list[_SegmentPlan] = []

        for item in plan:
            if item.reuse:
                segments[item.position] = item.reuse
            elif guess_kind(item.source) == "video":
                segments[item.position] = item.source
            else:
                hit = None if item.force else self._cache_get(
                    cache_key(SEGMENT_ARTIFACT, self._segment_settings(item.source))
                )
                if hit:
                    segments[item.position] = hit
                else:
                    to_convert.append(item)

        logger.info(
            "[%s] Segments: %d reused/cached, %d to convert", job_id, len(segments), len(to_convert),
        )
        progress.update(5, "runway", "converting", segments_reused=len(segments), segments_to_convert=len(to_convert))

        failures: dict[int, str] = {}
        if to_convert:
            total = len(to_convert)
            done = 0

            def on_done(item: _SegmentPlan, future: Future) -> None:
                nonlocal done
                done += 1
                try:
                    url = future.result()
                except Exception as exc:
                    failures[item.position] = str(exc)
                    logger.warning("[%s] Conversion of input %d failed: %s", job_id, item.position, exc)
                else:
                    segments[item.position] = url
                    self._cache_put(
                        cache_key(SEGMENT_ARTIFACT, self._segment_settings(item.source)),
                        url, SEGMENT_ARTIFACT, self._segment_settings(item.source),
                    )
                progress.update(5 + 35 * done / total, "runway", f"converted_{done}_of_{total}")

            with ThreadPoolExecutor(max_workers=self.conversion_workers, thread_name_prefix="convert") as pool:
                futures = {
                    pool.submit(self._convert, job_id, item.position, item.source): item
                    for item in to_convert
                }
                self._drain(job_id, futures, on_done)

        forced_failures = [i for i in plan if i.force and i.position in failures]
        if forced_failures:
            first = forced_failures[0]
            raise UpstreamError(f"conversion failed for photo {first.photo_id}: {failures[first.position]}")
        if not segments:
            raise UpstreamError("no per-photo video segments could be produced")

        ordered = [segments[i] for i in sorted(segments)]
        by_photo = {item.photo_id: segments[item.position] for item in plan if item.photo_id and item.position in segments}
        for item in plan:
            if item.photo_id and not item.reuse and item.position in segments:
                Photo.objects.filter(pk=item.photo_id).update(video_path=segments[item.position])
        return ordered, by_photo

    def _convert(self, job_id: str, index: int, source: str) -> str:
        return self.upstream_retry.call(
            self.converter.convert, source, index, job_id,
            description=f"[{job_id}] convert input {index}",
        )

    def _map_clip(self, job_id: str, coordinates: dict | None, templates: list[str], progress: _Progress) -> str | None:
        if not coordinates:
            return None
        if not any(t in self.catalog and self.catalog.requires_map(t) for t in templates):
            return None
        try:
            settings = {"lat": round(float(coordinates["lat"]), 6), "lng": round(float(coordinates["lng"]), 6)}
        except (KeyError, TypeError, ValueError):
            logger.warning("[%s] Ignoring malformed coordinates %r", job_id, coordinates)
            return None

        key = cache_key(MAP_ARTIFACT, settings)
        hit = self._cache_get(key)
        if hit:
            logger.info("[%s] Map clip served from cache", job_id)
            return hit

        progress.update(42, "runway", "rendering_map")
        try:
            clip = self.upstream_retry.call(
                self.map_renderer.render, settings, job_id, description=f"[{job_id}] render map",
            )
        except UpstreamError as exc:
            logger.warning("[%s] Map render failed; map templates will fail: %s", job_id, exc)
            return None
        self._cache_put(key, clip, MAP_ARTIFACT, settings)
        return clip

    def _template_settings(self, template: str, segments: list[str], map_clip: str | None) -> dict:
        return {"template": template, "segments": segments, "map": map_clip, "watermark": self.watermark}

    def _run_templates(
        self,
        job: Job,
        templates: list[str],
        segments: list[str],
        map_clip: str | None,
        coordinates: dict | None,
        progress: _Progress,
    ) -> dict[str, TemplateResult]:
        job_id = str(job.id)
        results: dict[str, TemplateResult] = {}
        batches = list(chunked(templates, self.batch_size))

        with ThreadPoolExecutor(max_workers=self.batch_size, thread_name_prefix="template") as pool:
            for number, batch in enumerate(batches, start=1):
                logger.info("[%s] Template batch %d/%d: %s", job_id, number, len(batches), batch)
                futures = {}
                for template in batch:
                    if template in self.catalog:
                        key = cache_key(TEMPLATE_ARTIFACT, self._template_settings(template, segments, map_clip))
                        hit = self._cache_get(key)
                        if hit:
                            logger.info("[%s] %s served from cache", job_id, template)
                            results[template] = TemplateResult(template, TemplateStatus.SUCCESS, output_url=hit, cached=True)
                            continue
                    future = pool.submit(
                        self._attempt_template, job_id, job.listing_id, template, segments, map_clip, coordinates,
                    )
                    futures[future] = template

                def on_done(template: str, future: Future) -> None:
                    result = future.result()
                    results[template] = result
                    if result.succeeded and not result.cached:
                        settings = self._template_settings(template, segments, map_clip)
                        self._cache_put(
                            cache_key(TEMPLATE_ARTIFACT, settings), result.output_url, TEMPLATE_ARTIFACT, settings,
                        )

                self._drain(job_id, futures, on_done)

                merged = {**(job.metadata or {}).get("results", {}), **{k: r.as_dict() for k, r in results.items()}}
                progress.update(
                    50 + 45 * len(results) / len(templates), "template", f"batch_{number}_of_{len(batches)}",
                    results=merged,
                )
        return results

    def _attempt_template(
        self,
        job_id: str,
        listing_id: str,
        template: str,
        segments: list[str],
        map_clip: str | None,
        coordinates: dict | None,
    ) -> TemplateResult:
        started = self.clock()
        output = self.work_dir / job_id / "templates" / f"{template}.mp4"
        try:
            definition = self.catalog.get(template)
            if definition.requires_map and not map_clip:
                reason = "no coordinates supplied" if not coordinates else "map clip could not be rendered"
                raise ValidationError(f"template '{template}' requires a map clip: {reason}", template=template)
            clips = self.composer.compose(template, segments, map_clip)

            self.tracker.track(output, ResourceState.PROCESSING)
            self.cleanup.register(output, CleanupKind.FILE, priority=1, job_id=job_id)
            rendered = self.media.render(clips, definition, self.watermark, job_id=job_id, output_path=output)

            stamp = timezone.now().strftime("%Y%m%d%H%M%S")
            key = f"listings/{listing_id or job_id}/{job_id}/templates/{template}_{stamp}.mp4"
            url = self.storage.upload_file(rendered, key, content_type="video/mp4")
            self.tracker.update(output, ResourceState.UPLOADED)
        except Exception as exc:
            self.tracker.update(output, ResourceState.FAILED)
            if isinstance(exc, PipelineError):
                logger.warning("[%s] Template %s failed: %s", job_id, template, exc)
            else:
                logger.exception("[%s] Template %s crashed", job_id, template)
            return TemplateResult(template, TemplateStatus.FAILED, error=str(exc), processing_time=self.clock() - started)

        elapsed = self.clock() - started
        logger.info("[%s] Template %s done in %.1fs -> %s", job_id, template, elapsed, url)
        return TemplateResult(template, TemplateStatus.SUCCESS, output_url=url, processing_time=elapsed)

    def _finish(self, job: Job, requested: list[str], results: dict[str, TemplateResult], progress: _Progress) -> PipelineOutcome:
        successes = [t for t in requested if t in results and results[t].succeeded]
        if not successes:
            failures = "; ".join(f"{t}: {r.error}" for t, r in results.items() if r.error)
            logger.error("[%s] All templates failed: %s", job.id, failures)
            outcome = self._fail(job, NO_SUCCESS_MESSAGE, progress)
            outcome.results = results
            return outcome

        primary = next((t for t in self.primary_templates if t in successes), successes[0])
        job.status = Job.Status.COMPLETED
        job.output_file = results[primary].output_url
        job.completed_at = timezone.now()
        job.save(update_fields=["status", "output_file", "completed_at", "updated_at"])
        progress.update(100, "upload", "completed", primary_template=primary)
        logger.info(
            "[%s] Completed: %d/%d templates succeeded, primary=%s",
            job.id, len(successes), len(requested), primary,
        )
        return PipelineOutcome(
            job_id=str(job.id),
            status=Job.Status.COMPLETED,
            output_url=job.output_file,
            primary_template=primary,
            results=results,
        )

    def _fail(self, job: Job, message: str, progress: _Progress) -> PipelineOutcome:
        logger.error("[%s] Job failed: %s", job.id, message)
        job.status = Job.Status.FAILED
        job.error = message[:4000]
        job.completed_at = timezone.now()
        job.save(update_fields=["status", "error", "completed_at", "updated_at"])
        stage = (job.metadata or {}).get("stage") or "runway"
        progress.update(100, stage, "failed")
        return PipelineOutcome(job_id=str(job.id), status=Job.Status.FAILED, error=job.error)

    # ── helpers ──────────────────────────────────────────────────

    def _drain(self, job_id: str, futures: dict, on_done: Callable[[object, Future], None]) -> None:
        """Wait for worker futures, handling each on this thread and watching for cancellation."""
        pending = set(futures)
        cancelled = False
        while pending:
            done, pending = wait(pending, timeout=self.cancel_poll_interval, return_when=FIRST_COMPLETED)
            for future in done:
                if not future.cancelled():
                    on_done(futures[future], future)
            if not cancelled and self._cancel_requested(job_id):
                cancelled = True
                self.cancel(job_id)
                for future in pending:
                    future.cancel()
        if cancelled:
            raise JobCancelled("job cancelled")

    def _cancel_requested(self, job_id: str) -> bool:
        return self.queue.is_cancelled(job_id) or Job.objects.filter(pk=job_id, cancel_requested=True).exists()

    def _raise_if_cancelled(self, job_id: str) -> None:
        if self._cancel_requested(job_id):
            self.cancel(job_id)
            raise JobCancelled("job cancelled")

    def _cache_get(self, key: str) -> str | None:
        try:
            asset = self.cache.get(key)
        except LockError as exc:
            logger.warning("Cache lookup skipped for %s: %s", key[:12], exc)
            return None
        return asset.path if asset is not None else None

    def _cache_put(self, key: str, source: str, artifact_type: str, settings: dict) -> None:
        try:
            self.cache.put(key, source, artifact_type=artifact_type, settings=settings)
        except (LockError, AssetError) as exc:
            logger.warning("Proceeding without caching %s %s: %s", artifact_type, key[:12], exc)
