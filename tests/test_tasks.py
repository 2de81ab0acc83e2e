from types import SimpleNamespace
from unittest import mock

import pytest

from reels.cleanup import CleanupReport
from reels.errors import ValidationError
from reels.models import Job
from reels.pipeline import PipelineOutcome
from reels.tasks import generate_reels, regenerate_photos, sweep_cache, sweep_cleanup

pytestmark = pytest.mark.django_db


def _services(**parts):
    return mock.patch("reels.tasks.get_services", return_value=SimpleNamespace(**parts))


def test_generate_reels_runs_pipeline():
    job = Job.objects.create(listing_id="l", input_files=["a.jpg"], templates=["wave"])
    pipeline = mock.Mock()
    pipeline.execute.return_value = PipelineOutcome(
        job_id=str(job.id), status=Job.Status.COMPLETED, output_url="s3://reels/wave.mp4",
    )

    with _services(pipeline=pipeline):
        result = generate_reels(str(job.id))

    pipeline.execute.assert_called_once_with(job.id, ["a.jpg"], ["wave"], coordinates=None)
    assert result["status"] == Job.Status.COMPLETED
    assert result["output"] == "s3://reels/wave.mp4"


def test_generate_reels_skips_cancelled_job():
    job = Job.objects.create(listing_id="l", input_files=["a.jpg"], cancel_requested=True)
    pipeline = mock.Mock()

    with _services(pipeline=pipeline):
        generate_reels(str(job.id))

    pipeline.execute.assert_not_called()
    job.refresh_from_db()
    assert job.status == Job.Status.FAILED
    assert job.progress == 100


def test_generate_reels_marks_crash_as_failure():
    job = Job.objects.create(listing_id="l", input_files=["a.jpg"])
    pipeline = mock.Mock()
    pipeline.execute.side_effect = RuntimeError("disk full")

    with _services(pipeline=pipeline):
        with pytest.raises(RuntimeError):
            generate_reels(str(job.id))

    job.refresh_from_db()
    assert job.status == Job.Status.FAILED
    assert "disk full" in job.error


def test_rejected_regeneration_fails_job():
    job = Job.objects.create(listing_id="l", status=Job.Status.PENDING)
    pipeline = mock.Mock()
    pipeline.regenerate.side_effect = ValidationError("photos not found: x")

    with _services(pipeline=pipeline):
        result = regenerate_photos(str(job.id), ["x"])

    assert result["status"] == Job.Status.FAILED
    job.refresh_from_db()
    assert job.status == Job.Status.FAILED
    assert job.error == "photos not found: x"


def test_sweeps():
    cleanup = mock.Mock()
    cleanup.execute_cleanup.return_value = CleanupReport(completed=["/w/a"], dropped=["/w/b"])
    cache = mock.Mock()
    cache.cleanup_expired.return_value = 4

    with _services(cleanup=cleanup, cache=cache):
        assert sweep_cleanup() == {"completed": 1, "skipped": 0, "retried": 0, "dropped": 1}
        assert sweep_cache() == {"removed": 4}
