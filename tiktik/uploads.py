import logging
import os
import time
from datetime import timedelta
from typing import Callable, Optional
from urllib.parse import quote

from google.cloud import storage as gcs

from tiktik.config import settings
from tiktik.models import UploadUrlResponse

logger = logging.getLogger(__name__)

# Object key prefix per upload kind
UPLOAD_PREFIXES = {
    "video": "videos",
    "short": "shorts",
    "livestream": "livestreams",
}


class UploadSigner:
    """Issues time-limited upload URLs plus the stable public URL of the object.

    Upload URLs are Cloud Storage V4 signed URLs for a PUT of the given
    content type. Without a bucket the signer runs in demo mode and hands
    out mock URLs that nothing accepts.
    """

    def __init__(
        self,
        bucket: Optional[gcs.Bucket] = None,
        public_base_url: str = "https://storage.googleapis.com",
        ttl_seconds: int = 900,
        clock: Callable[[], float] = time.time,
    ):
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")
        self.ttl_seconds = ttl_seconds
        self.clock = clock

    @property
    def demo_mode(self) -> bool:
        return self.bucket is None

    def build_file_key(self, kind: str, file_name: str) -> str:
        if kind not in UPLOAD_PREFIXES:
            raise ValueError(f"Unknown upload kind: {kind}")
        name = os.path.basename(file_name.replace("\\", "/")).strip()
        if not name:
            raise ValueError("File name is empty")
        return f"{UPLOAD_PREFIXES[kind]}/{int(self.clock() * 1000)}_{name}"

    def generate(self, kind: str, file_name: str, content_type: str) -> UploadUrlResponse:
        file_key = self.build_file_key(kind, file_name)
        quoted_key = quote(file_key)

        if self.demo_mode:
            logger.info("Object storage not configured, returning mock URL")
            return UploadUrlResponse(
                uploadUrl=f"{self.public_base_url}/mock-upload/{quoted_key}",
                publicUrl=f"{self.public_base_url}/demo/{quoted_key}",
                fileKey=file_key,
                message="Demo mode - upload will not persist",
            )

        upload_url = self.bucket.blob(file_key).generate_signed_url(
            version="v4",
            expiration=timedelta(seconds=self.ttl_seconds),
            method="PUT",
            content_type=content_type,
        )

        logger.info(f"Generated upload URL for {file_key}")
        return UploadUrlResponse(
            uploadUrl=upload_url,
            publicUrl=f"{self.public_base_url}/{self.bucket.name}/{quoted_key}",
            fileKey=file_key,
            expiresAt=int(self.clock()) + self.ttl_seconds,
        )


def create_upload_signer() -> UploadSigner:
    """Build the signer from settings, falling back to demo mode"""
    if not settings.STORAGE_BUCKET:
        logger.warning("STORAGE_BUCKET not set, upload URLs run in demo mode")
        return UploadSigner(
            public_base_url=settings.STORAGE_PUBLIC_BASE_URL,
            ttl_seconds=settings.UPLOAD_URL_TTL_SECONDS,
        )

    try:
        if settings.STORAGE_CREDENTIALS_FILE:
            client = gcs.Client.from_service_account_json(settings.STORAGE_CREDENTIALS_FILE)
        else:
            client = gcs.Client()
        bucket = client.bucket(settings.STORAGE_BUCKET)
        logger.info(f"Signing uploads for bucket {settings.STORAGE_BUCKET}")
    except Exception as e:
        logger.error(f"Object storage client failed, upload URLs run in demo mode: {e}")
        bucket = None

    return UploadSigner(
        bucket=bucket,
        public_base_url=settings.STORAGE_PUBLIC_BASE_URL,
        ttl_seconds=settings.UPLOAD_URL_TTL_SECONDS,
    )
