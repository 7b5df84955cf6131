from pathlib import Path
from typing import Optional, Protocol

from google.cloud import storage as gcs


class ObjectStore(Protocol):
    bucket_name: str

    def exists(self, key: str) -> bool: ...

    def get(self, key: str) -> Optional[bytes]: ...

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None: ...


class GCSObjectStore:
    """Google Cloud Storage bucket, the home of generated masterpieces"""

    def __init__(self, bucket_name: str, timeout: float = 30, client: Optional[gcs.Client] = None):
        self.bucket_name = bucket_name
        self.timeout = timeout
        self._client = client or gcs.Client()
        self._bucket = self._client.bucket(bucket_name)

    def exists(self, key: str) -> bool:
        return self._bucket.blob(key).exists(timeout=self.timeout)

    def get(self, key: str) -> Optional[bytes]:
        blob = self._bucket.blob(key)
        if not blob.exists(timeout=self.timeout):
            return None
        return blob.download_as_bytes(timeout=self.timeout)

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        self._bucket.blob(key).upload_from_string(data, content_type=content_type, timeout=self.timeout)


class LocalObjectStore:
    """Directory-backed store for local development"""

    def __init__(self, root: str, bucket_name: str = "local"):
        self.root = Path(root)
        self.bucket_name = bucket_name

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Storage key escapes the store root: {key}")
        return path

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.is_file():
            return None
        return path.read_bytes()

    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)


def build_object_store(settings) -> ObjectStore:
    if settings.storage_backend == "local":
        return LocalObjectStore(settings.local_storage_dir, bucket_name=settings.gcs_bucket_name)
    return GCSObjectStore(settings.gcs_bucket_name, timeout=settings.http_timeout_seconds)
