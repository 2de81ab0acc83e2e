import logging
from pathlib import Path
from urllib.parse import unquote, urlsplit

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError
from django.conf import settings

from .retry import RetryPolicy

logger = logging.getLogger(__name__)


def get_s3_client(endpoint_url: str | None = None):
    """
    SDK client for server-side upload/download.
    """
    session = boto3.session.Session(
        aws_access_key_id=settings.S3_ACCESS_KEY,
        aws_secret_access_key=settings.S3_SECRET_KEY,
        region_name=settings.S3_REGION,
    )
    endpoint = endpoint_url or settings.S3_ENDPOINT_URL
    return session.client(
        "s3",
        endpoint_url=endpoint,  # e.g. http://127.0.0.1:9000, None for AWS
        config=BotoConfig(
            s3={"addressing_style": "path" if endpoint else "virtual"},
            signature_version="s3v4",
            retries={"max_attempts": 3, "mode": "standard"},
        ),
    )


def get_presign_client():
    """
    Separate client for generating presigned URLs that the browser/curl will call.
    Uses S3_PUBLIC_ENDPOINT so the URL host matches what the client reaches.
    """
    return get_s3_client(settings.S3_PUBLIC_ENDPOINT)


def parse_s3_url(url: str) -> tuple[str, str]:
    """
    Split an object reference into (bucket, key).

    Accepts s3://bucket/key, virtual-hosted https://bucket.s3.region.amazonaws.com/key
    and path-style http://endpoint/bucket/key. Query strings (presign signatures) are dropped.
    """
    text = str(url or "").strip()
    parts = urlsplit(text)
    if parts.scheme == "s3":
        bucket = parts.netloc
        key = unquote(parts.path.lstrip("/"))
    elif parts.scheme in ("http", "https"):
        host = parts.hostname or ""
        path = unquote(parts.path.lstrip("/"))
        if ".s3." in host or ".s3-" in host or host.endswith(".s3.amazonaws.com"):
            bucket = host.split(".s3", 1)[0]
            key = path
        else:
            bucket, _, key = path.partition("/")
    else:
        raise ValueError(f"Unsupported object URL: {url!r}")
    if not bucket or not key:
        raise ValueError(f"Invalid object URL (bucket={bucket!r}, key={key!r}): {url!r}")
    return bucket, key


def is_remote(ref: str) -> bool:
    return str(ref or "").lower().startswith(("s3://", "http://", "https://"))


def is_storage_url(ref: str) -> bool:
    """True for references our object store can serve (vs. arbitrary HTTP URLs)."""
    text = str(ref or "").strip()
    if text.lower().startswith("s3://"):
        return True
    host = urlsplit(text).hostname or ""
    if ".s3." in host or ".s3-" in host or host == "s3.amazonaws.com":
        return True
    bases = [b for b in (settings.S3_ENDPOINT_URL, settings.S3_PUBLIC_ENDPOINT) if b]
    return any(text.startswith(b.rstrip("/") + "/") for b in bases)


def object_url(key: str, bucket: str | None = None) -> str:
    """
    Canonical URL for a stored object: path-style against the public endpoint when one
    is configured (MinIO), virtual-hosted AWS URL otherwise.
    """
    bucket = bucket or settings.S3_BUCKET
    base = settings.S3_PUBLIC_ENDPOINT or settings.S3_ENDPOINT_URL
    if base:
        return f"{base.rstrip('/')}/{bucket}/{key}"
    return f"https://{bucket}.s3.{settings.S3_REGION}.amazonaws.com/{key}"


def create_presigned_get(key: str, expires: int | None = None, bucket: str | None = None) -> str:
    """
    Create a presigned GET URL to download an object.
    """
    s3 = get_presign_client()
    return s3.generate_presigned_url(
        ClientMethod="get_object",
        Params={"Bucket": bucket or settings.S3_BUCKET, "Key": key},
        ExpiresIn=expires or settings.S3_PRESIGN_EXPIRE_SECONDS,
        HttpMethod="GET",
    )


class S3Storage:
    """Object storage collaborator used by the pipeline (S3 or MinIO)."""

    def __init__(self, client=None, bucket: str | None = None, retry: RetryPolicy | None = None):
        self._client = client
        self.bucket = bucket or settings.S3_BUCKET
        self.retry = retry or RetryPolicy.exponential(3, base=1.0, cap=10.0)

    @property
    def client(self):
        if self._client is None:
            self._client = get_s3_client()
        return self._client

    def upload(self, data: bytes, key: str, content_type: str | None = None) -> str:
        extra = {"ContentType": content_type} if content_type else {}
        self.retry.call(
            self.client.put_object,
            Bucket=self.bucket, Key=key, Body=bytes(data), **extra,
            description=f"upload {key}",
        )
        return object_url(key, self.bucket)

    def upload_file(self, local_path, key: str, content_type: str | None = "video/mp4") -> str:
        """
        Upload a single file to S3/MinIO with an optional Content-Type.
        """
        extra = {"ContentType": content_type} if content_type else None
        self.retry.call(
            self.client.upload_file,
            str(local_path), self.bucket, key, ExtraArgs=extra,
            description=f"upload {key}",
        )
        url = object_url(key, self.bucket)
        logger.info("Uploaded %s -> %s", local_path, url)
        return url

    def download(self, url: str, local_path) -> Path:
        bucket, key = parse_s3_url(url)
        dest = Path(local_path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        self.client.download_file(bucket, key, str(dest))
        return dest

    def exists(self, bucket: str, key: str) -> bool:
        try:
            self.client.head_object(Bucket=bucket, Key=key)
            return True
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in ("404", "NoSuchKey", "NotFound"):
                return False
            raise

    def delete(self, bucket: str, key: str) -> None:
        self.client.delete_object(Bucket=bucket, Key=key)

    def presign(self, key: str, expires: int | None = None) -> str:
        return create_presigned_get(key, expires=expires, bucket=self.bucket)
