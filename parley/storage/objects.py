from __future__ import annotations

import base64
import mimetypes
import os
import shutil
import time
import uuid
from pathlib import Path
from urllib.parse import quote, urlencode

from parley.core.config import settings
from parley.core.errors import NotFoundError, ValidationError
from parley.core.security import sign_object_url, verify_object_url


def _is_within_dir(path: Path, root: Path) -> bool:
    try:
        _ = path.relative_to(root)
        return True
    except ValueError:
        return False


def guess_content_type(key: str) -> str:
    guessed, _ = mimetypes.guess_type(key)
    return guessed or "application/octet-stream"


def session_prefix(owner_id: str, session_id: str) -> str:
    return f"{owner_id}/{session_id}/"


class ObjectStore:
    """Filesystem-backed blob store addressed by slash-separated keys."""

    def __init__(self, root: str | Path | None = None, *, signing_secret: str | None = None):
        self.root: Path = Path(root or settings.object_store_dir).resolve()
        self._secret: str = signing_secret or settings.auth_jwt_secret

    def _path(self, key: str) -> Path:
        k = key.strip().lstrip("/")
        if k == "" or "\\" in k or any(part in ("", ".", "..") for part in k.split("/")):
            raise ValidationError(f"invalid object key: {key!r}")
        path = (self.root / k).resolve()
        if not _is_within_dir(path, self.root):
            raise ValidationError(f"invalid object key: {key!r}")
        return path

    def put(self, key: str, data: bytes) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.parent / f".upload-tmp-{uuid.uuid4().hex}"
        try:
            _ = tmp_path.write_bytes(data)
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)
        return key

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise NotFoundError(f"object {key} not found")
        return path.read_bytes()

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def local_path(self, key: str) -> Path:
        path = self._path(key)
        if not path.is_file():
            raise NotFoundError(f"object {key} not found")
        return path

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def delete_prefix(self, prefix: str) -> None:
        """Remove every object under a `owner/session/` style prefix."""
        path = self._path(prefix.rstrip("/"))
        if path.is_dir():
            shutil.rmtree(path, ignore_errors=True)

    def data_url(self, key: str, content_type: str | None = None) -> str:
        ct = content_type or guess_content_type(key)
        encoded = base64.b64encode(self.get(key)).decode("ascii")
        return f"data:{ct};base64,{encoded}"

    def signed_url(self, key: str, *, ttl_seconds: int | None = None, now: int | None = None) -> str:
        ttl = ttl_seconds if ttl_seconds is not None else settings.object_url_ttl_seconds
        expires_at = int(now if now is not None else time.time()) + int(ttl)
        sig = sign_object_url(key, expires_at, self._secret)
        base = settings.public_base_url.rstrip("/") + settings.api_v1_prefix
        return f"{base}/files/{quote(key)}?{urlencode({'exp': expires_at, 'sig': sig})}"

    def verify(self, key: str, expires_at: int, sig: str) -> bool:
        return verify_object_url(key, expires_at, sig, self._secret)


def new_object_key(owner_id: str, session_id: str, filename: str) -> str:
    name = Path(filename).name.strip().replace(" ", "_") or "file"
    return f"{session_prefix(owner_id, session_id)}{uuid.uuid4().hex}-{name}"


def get_object_store() -> ObjectStore:
    return ObjectStore()
