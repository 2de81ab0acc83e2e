from rest_framework import serializers

from .models import Job
from .runtime import get_catalog
from .utils import dedupe, guess_kind


class JobSerializer(serializers.ModelSerializer):
    stage = serializers.SerializerMethodField()
    sub_stage = serializers.SerializerMethodField()
    results = serializers.SerializerMethodField()
    primary_template = serializers.SerializerMethodField()

    class Meta:
        model = Job
        fields = [
            "id",
            "listing_id",
            "status",
            "progress",
            "stage",
            "sub_stage",
            "templates",
            "results",
            "primary_template",
            "output_file",
            "error",
            "cancel_requested",
            "created_at",
            "updated_at",
            "completed_at",
        ]

    def get_stage(self, job):
        return (job.metadata or {}).get("stage", "")

    def get_sub_stage(self, job):
        return (job.metadata or {}).get("sub_stage", "")

    def get_results(self, job):
        return (job.metadata or {}).get("results", {})

    def get_primary_template(self, job):
        return (job.metadata or {}).get("primary_template")


class CoordinatesSerializer(serializers.Serializer):
    lat = serializers.FloatField(min_value=-90, max_value=90)
    lng = serializers.FloatField(min_value=-180, max_value=180)


class JobCreateSerializer(serializers.Serializer):
    listing_id = serializers.CharField(max_length=64)
    photos = serializers.ListField(child=serializers.CharField(max_length=1024), allow_empty=False)
    templates = serializers.ListField(child=serializers.CharField(), required=False, allow_empty=True)
    coordinates = CoordinatesSerializer(required=False, allow_null=True)

    def validate_photos(self, value):
        bad = [p for p in value if guess_kind(p) not in ("image", "video")]
        if bad:
            raise serializers.ValidationError(f"Unsupported media: {bad[:5]}")
        return value

    def validate_templates(self, value):
        """
        Validate that all requested templates exist.
        De-duplicate while preserving order.
        """
        if not value:
            return value
        catalog = get_catalog()
        bad = [t for t in value if t not in catalog]
        if bad:
            raise serializers.ValidationError(
                f"Unknown templates: {bad}. Allowed: {sorted(catalog.keys())}"
            )
        return dedupe(value)


class RegenerateSerializer(serializers.Serializer):
    photo_ids = serializers.ListField(child=serializers.UUIDField(), allow_empty=False)

    def validate_photo_ids(self, value):
        return dedupe(str(v) for v in value)
