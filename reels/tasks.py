import logging

from celery import shared_task
from django.utils import timezone

from .errors import PipelineError
from .models import Job
from .runtime import get_services

logger = logging.getLogger(__name__)


def _update(job: Job, *, status=None, progress=None, error=None):
    fields = ["updated_at"]
    if status:
        job.status = status
        fields.append("status")
        if status in (Job.Status.COMPLETED, Job.Status.FAILED):
            job.completed_at = timezone.now()
            fields.append("completed_at")
    if progress is not None:
        job.progress = max(0, min(100, int(progress)))
        fields.append("progress")
    if error is not None:
        job.error = error[:4000]
        fields.append("error")
    job.save(update_fields=fields)


@shared_task(bind=True)
def generate_reels(self, job_id: str):
    job = Job.objects.get(pk=job_id)
    if job.cancel_requested:
        _update(job, status=Job.Status.FAILED, progress=100, error="job cancelled")
        return {"job_id": job_id, "status": job.status}

    pipeline = get_services().pipeline
    try:
        outcome = pipeline.execute(
            job.id, job.input_files, job.templates, coordinates=job.coordinates,
        )
    except Exception as e:
        job.refresh_from_db()
        if not job.is_terminal:
            _update(job, status=Job.Status.FAILED, error=str(e), progress=100)
        raise
    return {"job_id": job_id, "status": outcome.status, "output": outcome.output_url, "error": outcome.error}


@shared_task(bind=True)
def regenerate_photos(self, job_id: str, photo_ids: list):
    job = Job.objects.get(pk=job_id)
    if job.cancel_requested:
        return {"job_id": job_id, "status": job.status}

    pipeline = get_services().pipeline
    try:
        outcome = pipeline.regenerate(job.id, photo_ids)
    except PipelineError as e:
        # rejected before any work started (bad ids, concurrent regeneration)
        _update(job, status=Job.Status.FAILED, error=str(e), progress=100)
        return {"job_id": job_id, "status": Job.Status.FAILED, "error": str(e)}
    except Exception as e:
        job.refresh_from_db()
        if not job.is_terminal:
            _update(job, status=Job.Status.FAILED, error=str(e), progress=100)
        raise
    return {"job_id": job_id, "status": outcome.status, "output": outcome.output_url, "error": outcome.error}


@shared_task
def sweep_cleanup():
    report = get_services().cleanup.execute_cleanup()
    if report.completed or report.dropped:
        logger.info(
            "Cleanup sweep: %d completed, %d skipped, %d retrying, %d dropped",
            len(report.completed), len(report.skipped), len(report.retried), len(report.dropped),
        )
    return {
        "completed": len(report.completed),
        "skipped": len(report.skipped),
        "retried": len(report.retried),
        "dropped": len(report.dropped),
    }


@shared_task
def sweep_cache():
    removed = get_services().cache.cleanup_expired()
    return {"removed": removed}
