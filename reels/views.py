import logging

from django.db import transaction
from rest_framework import status, views
from rest_framework.permissions import AllowAny
from rest_framework.response import Response

from .models import Job, Photo
from .s3 import create_presigned_get, is_storage_url, parse_s3_url
from .serializers import JobCreateSerializer, JobSerializer, RegenerateSerializer
from .tasks import generate_reels, regenerate_photos

logger = logging.getLogger(__name__)


def _get_job(job_id):
    try:
        return Job.objects.get(pk=job_id)
    except Job.DoesNotExist:
        return None


def _download_url(ref: str) -> str:
    """Presigned GET for objects in our bucket; other references are returned as-is."""
    if not ref or not is_storage_url(ref):
        return ref
    try:
        bucket, key = parse_s3_url(ref)
    except ValueError:
        return ref
    return create_presigned_get(key, bucket=bucket)


class JobCreateView(views.APIView):
    """
    Creates a Job for a listing, registers its photos in order, and enqueues
    reel generation.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request):
        ser = JobCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data
        coordinates = data.get("coordinates")

        with transaction.atomic():
            job = Job.objects.create(
                listing_id=data["listing_id"],
                input_files=data["photos"],
                templates=data.get("templates") or [],
                coordinates=dict(coordinates) if coordinates else None,
            )
            # a listing's photos are shared across its jobs
            for i, path in enumerate(data["photos"]):
                Photo.objects.update_or_create(
                    listing_id=data["listing_id"], source_path=path, defaults={"order": i},
                )

        generate_reels.delay(str(job.id))  # queue background processing
        logger.info("[%s] Job created for listing %s (%d photos)", job.id, job.listing_id, len(data["photos"]))
        return Response({"job_id": str(job.id)}, status=status.HTTP_202_ACCEPTED)


class JobDetailView(views.APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def get(self, request, job_id):
        job = _get_job(job_id)
        if job is None:
            return Response({"detail": "Not found"}, status=404)

        data = JobSerializer(job).data
        # time-limited download URLs for the primary output and every successful template
        data["output_url"] = _download_url(job.output_file)
        results = {}
        for key, result in (data.get("results") or {}).items():
            entry = dict(result)
            if entry.get("output_url"):
                entry["download_url"] = _download_url(entry["output_url"])
            results[key] = entry
        data["results"] = results
        return Response(data)


class JobRegenerateView(views.APIView):
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request, job_id):
        job = _get_job(job_id)
        if job is None:
            return Response({"detail": "Not found"}, status=404)
        if job.status in (Job.Status.PENDING, Job.Status.PROCESSING):
            return Response({"detail": f"Job is {job.status}; wait for it to finish."}, status=409)

        ser = RegenerateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        photo_ids = ser.validated_data["photo_ids"]

        found = Photo.objects.filter(id__in=photo_ids).count()
        if found != len(photo_ids):
            return Response({"detail": "Some photos were not found."}, status=400)

        job.status = Job.Status.PENDING
        job.progress = 0
        job.error = ""
        job.cancel_requested = False
        job.save(update_fields=["status", "progress", "error", "cancel_requested", "updated_at"])

        regenerate_photos.delay(str(job.id), photo_ids)
        return Response({"job_id": str(job.id), "photo_ids": photo_ids}, status=status.HTTP_202_ACCEPTED)


class JobCancelView(views.APIView):
    """
    Requests cancellation. The worker running the job notices the flag, kills
    the job's encodes and marks it failed; a job still waiting in the queue is
    failed immediately.
    """
    permission_classes = [AllowAny]
    authentication_classes = []

    def post(self, request, job_id):
        job = _get_job(job_id)
        if job is None:
            return Response({"detail": "Not found"}, status=404)
        if job.is_terminal:
            return Response({"detail": f"Job already {job.status}."}, status=409)

        job.cancel_requested = True
        fields = ["cancel_requested", "updated_at"]
        if job.status == Job.Status.PENDING:
            job.status = Job.Status.FAILED
            job.error = "job cancelled"
            job.progress = 100
            fields += ["status", "error", "progress"]
        job.save(update_fields=fields)
        logger.info("[%s] Cancellation requested", job.id)
        return Response({"job_id": str(job.id), "status": job.status}, status=status.HTTP_202_ACCEPTED)
