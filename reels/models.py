import uuid
from django.db import models


class Job(models.Model):
    class Status(models.TextChoices):
        PENDING = "PENDING"
        PROCESSING = "PROCESSING"
        COMPLETED = "COMPLETED"
        FAILED = "FAILED"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    listing_id = models.CharField(max_length=64, blank=True, default="", db_index=True)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    progress = models.PositiveSmallIntegerField(default=0)  # 0..100
    input_files = models.JSONField(default=list, blank=True)  # ordered photo URLs / keys
    templates = models.JSONField(default=list, blank=True)    # requested template keys
    coordinates = models.JSONField(null=True, blank=True)     # {"lat": .., "lng": ..}
    # stage, sub_stage, results (keyed by template), regeneration_context, segments
    metadata = models.JSONField(default=dict, blank=True)
    output_file = models.CharField(max_length=1024, blank=True, default="")
    error = models.TextField(blank=True, default="")
    cancel_requested = models.BooleanField(default=False)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in (self.Status.COMPLETED, self.Status.FAILED)


class Photo(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending"
        PROCESSING = "processing"
        COMPLETED = "completed"
        FAILED = "failed"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    listing_id = models.CharField(max_length=64, db_index=True)
    order = models.PositiveIntegerField(null=True, blank=True)
    source_path = models.CharField(max_length=1024)
    processed_path = models.CharField(max_length=1024, blank=True, default="")
    video_path = models.CharField(max_length=1024, blank=True, default="")  # last per-photo segment
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    error = models.TextField(blank=True, default="")

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["order", "created_at"]

    @property
    def input_path(self) -> str:
        return self.processed_path or self.source_path


class CachedAsset(models.Model):
    cache_key = models.CharField(max_length=128, unique=True)
    artifact_type = models.CharField(max_length=32, db_index=True)  # runway | map | template | ...
    path = models.CharField(max_length=1024)
    content_hash = models.CharField(max_length=64)
    settings = models.JSONField(default=dict, blank=True)
    expires_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    @property
    def is_remote(self) -> bool:
        return self.path.startswith(("s3://", "http://", "https://"))


class CacheLock(models.Model):
    key = models.CharField(max_length=160, unique=True)
    owner = models.CharField(max_length=128)
    expires_at = models.DateTimeField()

    created_at = models.DateTimeField(auto_now_add=True)
