"""
Object storage for rendered certificates.

Paths are bucket-relative keys such as ``med_cert/<intake_id>/<document_id>.pdf``.
The local backend signs download URLs with an HMAC so the API can serve
them without a session; the S3 backend hands out presigned URLs.
"""
import hashlib
import hmac
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlencode

from medcert.config import Settings

logger = logging.getLogger(__name__)


def _clean_segment(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned or "object"


def build_document_path(document_type: str, intake_id: str, document_id: str) -> str:
    return f"{_clean_segment(document_type)}/{_clean_segment(intake_id)}/{_clean_segment(document_id)}.pdf"


@dataclass(frozen=True)
class ObjectStorageConfig:
    backend: str
    bucket: str
    root: str
    endpoint: str
    region: str
    signing_secret: str
    public_base_url: str

    @classmethod
    def from_settings(cls, settings: Settings) -> "ObjectStorageConfig":
        return cls(
            backend=settings.object_storage_backend,
            bucket=settings.object_storage_bucket,
            root=settings.object_storage_root,
            endpoint=settings.object_storage_endpoint,
            region=settings.object_storage_region,
            signing_secret=settings.storage_signing_secret,
            public_base_url=settings.app_url,
        )


class ObjectStorage:
    backend_name = "base"

    def upload(self, path: str, data: bytes, content_type: str = "application/pdf") -> str:
        raise NotImplementedError

    def exists(self, path: str) -> bool:
        raise NotImplementedError

    def read(self, path: str) -> bytes:
        raise NotImplementedError

    def signed_url(self, path: str, ttl_seconds: int) -> str:
        raise NotImplementedError


class LocalObjectStorage(ObjectStorage):
    backend_name = "local"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        self._bucket = config.bucket
        self._root = Path(config.root)
        self._secret = config.signing_secret.encode("utf-8")
        self._base_url = config.public_base_url.rstrip("/")
        self._root.mkdir(parents=True, exist_ok=True)

    def upload(self, path: str, data: bytes, content_type: str = "application/pdf") -> str:
        target = self._path_for(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return path

    def exists(self, path: str) -> bool:
        return self._path_for(path).is_file()

    def read(self, path: str) -> bytes:
        target = self._path_for(path)
        if not target.is_file():
            raise FileNotFoundError(path)
        return target.read_bytes()

    def signed_url(self, path: str, ttl_seconds: int) -> str:
        expires = int(time.time()) + int(ttl_seconds)
        query = urlencode({"path": path, "expires": expires, "signature": self._sign(path, expires)})
        return f"{self._base_url}/api/files?{query}"

    def verify_signature(self, path: str, expires: int, signature: str, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        if int(expires) < current:
            return False
        return hmac.compare_digest(self._sign(path, int(expires)), signature)

    def _sign(self, path: str, expires: int) -> str:
        message = f"{path}:{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def _path_for(self, path: str) -> Path:
        target = (self._root / self._bucket / path).resolve()
        bucket_root = (self._root / self._bucket).resolve()
        if bucket_root not in target.parents:
            raise ValueError("storage path escapes bucket")
        return target


class S3ObjectStorage(ObjectStorage):
    backend_name = "s3"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        try:
            import boto3  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("boto3 is required for s3 object storage backend") from exc
        self._bucket = config.bucket
        session = boto3.session.Session(region_name=config.region or None)
        self._client = session.client("s3", endpoint_url=config.endpoint or None)

    def upload(self, path: str, data: bytes, content_type: str = "application/pdf") -> str:
        self._client.put_object(Bucket=self._bucket, Key=path, Body=data, ContentType=content_type)
        return path

    def exists(self, path: str) -> bool:
        try:
            self._client.head_object(Bucket=self._bucket, Key=path)
            return True
        except Exception:
            return False

    def read(self, path: str) -> bytes:
        response = self._client.get_object(Bucket=self._bucket, Key=path)
        return response["Body"].read()

    def signed_url(self, path: str, ttl_seconds: int) -> str:
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self._bucket, "Key": path},
            ExpiresIn=int(ttl_seconds),
        )


def create_object_storage(config: ObjectStorageConfig) -> ObjectStorage:
    backend = config.backend.strip().lower()
    if backend == "s3":
        logger.info("object storage backend: s3 bucket=%s", config.bucket)
        return S3ObjectStorage(config=config)
    if backend != "local":
        raise ValueError(f"unknown object storage backend: {config.backend}")
    return LocalObjectStorage(config=config)
