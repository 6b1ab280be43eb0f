from __future__ import annotations

from datetime import datetime
from threading import Lock
from typing import Any, Dict, List
from uuid import UUID

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError


class S3StorageClient:
    """Blob store for per-video assets, laid out as ``{prefix}/{video_id}/{name}``.

    Every upload returns the object's public URL and ``fetch`` accepts those
    URLs back. Without bucket credentials objects live in process memory,
    which is what local runs and the test-suite use.
    """

    def __init__(
        self,
        bucket: str,
        access_key: str | None,
        secret_key: str | None,
        endpoint_url: str | None = None,
        region_name: str | None = None,
        public_url: str | None = None,
        timeout: float = 30.0,
        addressing_style: str | None = None,
        folder_prefix: str = "videos",
    ) -> None:
        self.bucket = (bucket or "").strip()
        self.endpoint_url = (endpoint_url or "").rstrip("/") or None
        self.public_url_base = (public_url or "").rstrip("/")
        self.folder_prefix = _clean_key(folder_prefix) or "videos"
        self._objects: Dict[str, tuple[bytes, str, datetime]] = {}
        self._lock = Lock()
        self._client = None
        access_key = (access_key or "").strip()
        secret_key = (secret_key or "").strip()
        if self.bucket and access_key and secret_key:
            session = boto3.session.Session(
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=(region_name or "").strip() or None,
            )
            self._client = session.client(
                "s3",
                endpoint_url=self.endpoint_url,
                config=BotoConfig(
                    s3={"addressing_style": (addressing_style or "virtual").lower()},
                    connect_timeout=timeout,
                    read_timeout=timeout,
                ),
            )

    @property
    def in_memory(self) -> bool:
        return self._client is None

    # --- video assets -----------------------------------------------------------------

    def video_key(self, video_id: UUID, *parts: str) -> str:
        return _clean_key("/".join([self.folder_prefix, str(video_id), *parts]))

    def put_video_asset(self, video_id: UUID, name: str, content: bytes, content_type: str) -> str:
        """Store ``name`` under the video's folder, overwriting any previous object."""
        return self.upload_bytes(self.video_key(video_id, name), content, content_type=content_type)

    def fetch(self, url: str) -> bytes:
        key = self.key_for_url(url)
        if key is None:
            raise ValueError(f"{url} was not issued by this store")
        return self.download_bytes(key)

    def delete_video_asset(self, video_id: UUID, name: str) -> bool:
        return self.delete_file(self.video_key(video_id, name))

    def list_video_assets(self, video_id: UUID) -> List[str]:
        return sorted(item["key"] for item in self.list_files(self.video_key(video_id)))

    # --- raw objects ------------------------------------------------------------------

    def upload_bytes(self, path: str, content: bytes, content_type: str = "application/octet-stream") -> str:
        key = _clean_key(path)
        if not key:
            raise ValueError("storage path is required")
        if self.in_memory:
            with self._lock:
                self._objects[key] = (content, content_type, datetime.utcnow())
        else:
            self._call("upload", self._client.put_object, Bucket=self.bucket, Key=key, Body=content, ContentType=content_type)
        return self.public_url(key)

    def download_bytes(self, path: str) -> bytes:
        key = _clean_key(path)
        if self.in_memory:
            with self._lock:
                stored = self._objects.get(key)
            if stored is None:
                raise ValueError(f"object {key} not found")
            return stored[0]
        response = self._call("download", self._client.get_object, Bucket=self.bucket, Key=key)
        body = response.get("Body")
        return body.read() if body is not None else b""

    def delete_file(self, path: str) -> bool:
        """Remove one object; returns False when there was nothing to remove."""
        key = _clean_key(path)
        if not key:
            raise ValueError("storage path is required")
        if self.in_memory:
            with self._lock:
                return self._objects.pop(key, None) is not None
        self._call("delete", self._client.delete_object, Bucket=self.bucket, Key=key)
        return True

    def list_files(self, prefix: str | None = None) -> List[dict[str, Any]]:
        key_prefix = _clean_key(prefix)
        if self.in_memory:
            with self._lock:
                snapshot = list(self._objects.items())
            return [
                {"key": key, "size": len(data), "last_modified": stamp, "url": self.public_url(key)}
                for key, (data, _, stamp) in snapshot
                if key.startswith(key_prefix)
            ]
        paginator = self._client.get_paginator("list_objects_v2")
        items: List[dict[str, Any]] = []
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=key_prefix):
                for obj in page.get("Contents", []):
                    items.append(
                        {
                            "key": obj["Key"],
                            "size": obj.get("Size"),
                            "last_modified": obj.get("LastModified"),
                            "url": self.public_url(obj["Key"]),
                        }
                    )
        except (BotoCoreError, ClientError) as exc:  # pragma: no cover - AWS error surface
            raise ValueError(f"S3 list failed: {exc}") from exc
        return items

    def public_url(self, path: str) -> str:
        return f"{self._url_base()}/{_clean_key(path)}"

    def key_for_url(self, url: str | None) -> str | None:
        """Map a public URL issued by this store back to its object key."""
        base = self._url_base() + "/"
        if not url or not url.startswith(base):
            return None
        return _clean_key(url[len(base) :].split("?", 1)[0])

    def _url_base(self) -> str:
        if self.public_url_base:
            return self.public_url_base
        if self.endpoint_url:
            return f"{self.endpoint_url}/{self.bucket}"
        return f"/{self.bucket}"

    def _call(self, action: str, method, **kwargs: Any) -> Any:
        try:
            return method(**kwargs)
        except (BotoCoreError, ClientError) as exc:  # pragma: no cover - AWS error surface
            raise ValueError(f"S3 {action} failed: {exc}") from exc


def _clean_key(path: str | None) -> str:
    if not path:
        return ""
    return "/".join(part for part in path.strip().split("/") if part and part not in (".", ".."))
