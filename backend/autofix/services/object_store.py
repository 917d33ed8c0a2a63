"""
Local filesystem object storage used by the development backend.
"""
from pathlib import Path
from typing import Optional
from urllib.parse import quote


class ObjectStore:
    def __init__(self, base_dir: str, public_base_url: str) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.public_base_url = public_base_url.rstrip("/")

    def _get_path(self, bucket: str, key: str) -> Path:
        clean_bucket = bucket.strip("/").replace("..", "").replace("\\", "/")
        clean_key = key.lstrip("/").replace("..", "").replace("\\", "/")
        if not clean_bucket or not clean_key:
            raise ValueError("bucket and key are required")
        return self.base_dir / clean_bucket / clean_key

    def public_url(self, bucket: str, key: str) -> str:
        return f"{self.public_base_url}/storage/{quote(bucket.strip('/'))}/{quote(key.lstrip('/'))}"

    def put(self, bucket: str, key: str, data: bytes) -> str:
        path = self._get_path(bucket, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return self.public_url(bucket, key)

    def path_for(self, bucket: str, key: str) -> Optional[Path]:
        path = self._get_path(bucket, key)
        return path if path.is_file() else None
