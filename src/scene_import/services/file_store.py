"""
File store adapters — read access to uploaded blobs keyed by "<owner_id>/<name>".
Local disk for development, Supabase Storage for production.
"""
import os
import logging
import mimetypes
from pathlib import Path

from supabase import create_client, Client
from scene_import.config import Settings
from scene_import.errors import DownloadError, ValidationError
from scene_import.states.state import StoredFile

logger = logging.getLogger(__name__)

mimetypes.add_type("image/webp", ".webp")


def guess_content_type(name: str) -> str:
    content_type, _ = mimetypes.guess_type(name)
    return content_type or "application/octet-stream"


class FileStore:
    """Interface: `download(path) -> StoredFile`, raising DownloadError on failure."""

    def download(self, path: str) -> StoredFile:
        raise NotImplementedError

    def upload(self, path: str, data: bytes, content_type: str | None = None) -> str:
        raise NotImplementedError


class LocalFileStore(FileStore):
    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir).resolve()
        os.makedirs(self.base_dir, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        target = (self.base_dir / path).resolve()
        if not target.is_relative_to(self.base_dir):
            raise ValidationError(f"Invalid file path '{path}' (access denied).")
        return target

    def download(self, path: str) -> StoredFile:
        target = self._resolve(path)
        try:
            data = target.read_bytes()
        except OSError as e:
            raise DownloadError(f"Download failed for {path}: {e.strerror or e}") from e
        return StoredFile(path=path, name=target.name, content_type=guess_content_type(target.name), data=data)

    def upload(self, path: str, data: bytes, content_type: str | None = None) -> str:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return path


class SupabaseFileStore(FileStore):
    def __init__(self, url: str, key: str, bucket: str):
        self.client: Client = create_client(url, key)
        self.bucket = bucket

    def download(self, path: str) -> StoredFile:
        try:
            data = self.client.storage.from_(self.bucket).download(path)
        except Exception as e:
            logger.error("[Storage] download failed bucket=%s path=%s: %s", self.bucket, path, e)
            raise DownloadError(f"Download failed for {path}: {e}") from e
        if not data:
            raise DownloadError(f"Download failed for {path}: empty object")
        name = path.rsplit("/", 1)[-1] or "file"
        return StoredFile(path=path, name=name, content_type=guess_content_type(name), data=data)

    def upload(self, path: str, data: bytes, content_type: str | None = None) -> str:
        try:
            self.client.storage.from_(self.bucket).upload(
                path, data, {"content-type": content_type or guess_content_type(path)},
            )
        except Exception as e:
            logger.error("[Storage] upload failed bucket=%s path=%s: %s", self.bucket, path, e)
            raise DownloadError(f"Upload failed for {path}: {e}") from e
        return path


def build_file_store(settings: Settings) -> FileStore:
    if settings.storage_backend == "supabase":
        if not settings.supabase_url or not settings.supabase_service_role_key:
            raise RuntimeError("STORAGE_BACKEND=supabase requires SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY")
        return SupabaseFileStore(settings.supabase_url, settings.supabase_service_role_key, settings.storage_bucket)
    return LocalFileStore(settings.upload_dir)
