"""Helpers for interacting with object storage backends used for audit overflow."""

from __future__ import annotations

import io
import os
import re
from typing import Optional
from uuid import uuid4

from minio import Minio

# purpose: keep oversized audit snapshots out of the audit tables
# status: active

_MINIO_CLIENT: Optional[Minio] = None


def _get_upload_dir() -> str:
    """Return the configured overflow directory, creating it when needed."""

    upload_dir = os.getenv("UPLOAD_DIR", "uploaded_files")
    os.makedirs(upload_dir, exist_ok=True)
    return upload_dir


def _ensure_minio_client() -> Optional[Minio]:
    """Initialize and return a MinIO client when configuration is present."""

    # outputs: Minio instance or None when not configured
    global _MINIO_CLIENT
    endpoint = os.getenv("MINIO_ENDPOINT", "").strip()
    access_key = os.getenv("MINIO_ACCESS_KEY")
    secret_key = os.getenv("MINIO_SECRET_KEY")
    bucket = os.getenv("MINIO_BUCKET", "audit-overflow")
    if not endpoint or not access_key or not secret_key:
        return None
    if _MINIO_CLIENT is None:
        client = Minio(
            endpoint,
            access_key=access_key,
            secret_key=secret_key,
            secure=os.getenv("MINIO_SECURE", "0") == "1",
        )
        if not client.bucket_exists(bucket):
            client.make_bucket(bucket)
        _MINIO_CLIENT = client
    return _MINIO_CLIENT


def _build_object_name(namespace: str | None, filename: str) -> str:
    """Construct a normalized storage object key within an optional namespace."""

    safe_name = re.sub(r"[^A-Za-z0-9_.-]", "_", filename) or "artifact.bin"
    if not namespace:
        return f"{uuid4()}_{safe_name}"
    clean_namespace = re.sub(r"[^A-Za-z0-9/_.-]", "_", namespace).strip("/")
    return f"{clean_namespace}/{uuid4()}_{safe_name}"


def save_binary_payload(
    data: bytes,
    filename: str,
    *,
    content_type: str = "application/octet-stream",
    namespace: str | None = None,
) -> tuple[str, int]:
    """Persist binary data using configured storage backend."""

    # outputs: tuple of storage path identifier and payload size in bytes
    object_suffix = _build_object_name(namespace, filename)
    client = _ensure_minio_client()
    if client:
        bucket = os.getenv("MINIO_BUCKET", "audit-overflow")
        client.put_object(
            bucket,
            object_suffix,
            io.BytesIO(data),
            length=len(data),
            content_type=content_type,
        )
        return f"s3://{bucket}/{object_suffix}", len(data)

    upload_dir = _get_upload_dir()
    if namespace:
        namespace_dir = os.path.join(upload_dir, *namespace.strip("/").split("/"))
        os.makedirs(namespace_dir, exist_ok=True)
        storage_path = os.path.join(namespace_dir, os.path.basename(object_suffix))
    else:
        storage_path = os.path.join(upload_dir, os.path.basename(object_suffix))
    with open(storage_path, "wb") as handle:
        handle.write(data)
    return storage_path, len(data)


def load_binary_payload(storage_path: str) -> bytes:
    """Retrieve binary data from object storage, returning raw bytes."""

    if storage_path.startswith("s3://"):
        client = _ensure_minio_client()
        if not client:
            raise FileNotFoundError("Object storage client unavailable for s3 path")
        _, _, bucket, object_name = storage_path.split("/", 3)
        if not object_name:
            raise FileNotFoundError("Invalid s3 storage path")
        response = client.get_object(bucket, object_name)
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    with open(storage_path, "rb") as handle:
        return handle.read()
