"""
Blob Storage
============

Content storage for person files (signatures, photos, documents) and
issued case file PDFs.

Backends:
- local: filesystem under STORAGE_ROOT, signed links carry a short-lived JWT
- s3: any S3-compatible bucket, presigned GET URLs

Every backend failure is raised as StorageError so callers can decide which
failures are fatal.
"""

import logging
from datetime import datetime, timedelta
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import quote

import boto3
import jwt
from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified

from .config import Settings, get_settings
from .db.models import Person
from .errors import AccessDeniedError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

SIGNED_URL_ALGORITHM = "HS256"

PERSON_FILE_KINDS = ("signature", "photo", "document")


class StorageError(Exception):
    """Raised when a blob store operation fails."""


class BlobExistsError(StorageError):
    """Raised by a write-once put whose target already exists."""


def _normalize_key(path: str) -> str:
    key = PurePosixPath(str(path).replace("\\", "/").lstrip("/"))
    if not key.parts or ".." in key.parts:
        raise StorageError(f"Invalid storage path: {path!r}")
    return str(key)


class LocalBlobStore:
    """Filesystem blob store with JWT-signed download links."""

    def __init__(self, root: str, base_url: str, signing_secret: str):
        self.root = Path(root).resolve()
        self.base_url = base_url.rstrip("/")
        self.signing_secret = signing_secret

    def _full_path(self, path: str) -> Path:
        return self.root / _normalize_key(path)

    def put(self, path: str, data: bytes, content_type: str, overwrite: bool = True) -> str:
        key = _normalize_key(path)
        target = self.root / key
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "wb" if overwrite else "xb") as f:
                f.write(data)
        except FileExistsError as exc:
            raise BlobExistsError(f"Blob already exists: {key}") from exc
        except OSError as exc:
            raise StorageError(f"Unable to write blob {key}: {exc}") from exc
        logger.debug("Stored %d bytes at %s (%s)", len(data), key, content_type)
        return key

    def get(self, path: str) -> bytes:
        target = self._full_path(path)
        try:
            return target.read_bytes()
        except OSError as exc:
            raise StorageError(f"Unable to read blob {path}: {exc}") from exc

    def exists(self, path: str) -> bool:
        return self._full_path(path).is_file()

    def delete(self, path: str) -> None:
        target = self._full_path(path)
        try:
            target.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StorageError(f"Unable to delete blob {path}: {exc}") from exc

    def signed_url(self, path: str, ttl_seconds: int) -> str:
        key = _normalize_key(path)
        if not (self.root / key).is_file():
            raise StorageError(f"Blob not found: {key}")
        expire = datetime.utcnow() + timedelta(seconds=ttl_seconds)
        token = jwt.encode({"path": key, "exp": expire}, self.signing_secret, algorithm=SIGNED_URL_ALGORITHM)
        return f"{self.base_url}/{quote(key)}?token={token}"

    def verify_signed_token(self, token: str, path: str) -> bool:
        """Check that a signed link token is unexpired and issued for `path`."""
        try:
            payload = jwt.decode(token, self.signing_secret, algorithms=[SIGNED_URL_ALGORITHM])
        except jwt.PyJWTError as exc:
            logger.info("Rejected signed URL token: %s", exc)
            return False
        try:
            return payload.get("path") == _normalize_key(path)
        except StorageError:
            return False

    def open_signed(self, path: str, token: str) -> Path:
        """Return the local file behind a signed link, or raise AccessDeniedError."""
        if not token or not self.verify_signed_token(token, path):
            raise AccessDeniedError("Invalid or expired link")
        target = self._full_path(path)
        if not target.is_file():
            raise NotFoundError("File not found")
        return target


class S3BlobStore:
    """S3-compatible blob store."""

    def __init__(self, bucket: str, client=None, endpoint_url: Optional[str] = None,
                 access_key: Optional[str] = None, secret_key: Optional[str] = None,
                 region: Optional[str] = None):
        if not bucket:
            raise StorageError("S3 not configured")
        self.bucket = bucket
        self.client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )

    def put(self, path: str, data: bytes, content_type: str, overwrite: bool = True) -> str:
        key = _normalize_key(path)
        params = {"Bucket": self.bucket, "Key": key, "Body": data, "ContentType": content_type}
        if not overwrite:
            params["IfNoneMatch"] = "*"
        try:
            self.client.put_object(**params)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in ("PreconditionFailed", "ConditionalRequestConflict"):
                raise BlobExistsError(f"Blob already exists: {key}") from exc
            raise StorageError(f"Unable to write blob {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Unable to write blob {key}: {exc}") from exc
        return key

    def get(self, path: str) -> bytes:
        key = _normalize_key(path)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Unable to read blob {key}: {exc}") from exc

    def exists(self, path: str) -> bool:
        key = _normalize_key(path)
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise StorageError(f"Unable to stat blob {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Unable to stat blob {key}: {exc}") from exc

    def delete(self, path: str) -> None:
        key = _normalize_key(path)
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Unable to delete blob {key}: {exc}") from exc

    def signed_url(self, path: str, ttl_seconds: int) -> str:
        key = _normalize_key(path)
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=ttl_seconds,
            )
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Unable to sign URL for {key}: {exc}") from exc


def get_blob_store(settings: Optional[Settings] = None):
    """Build the configured blob store backend."""
    settings = settings or get_settings()
    backend = (settings.storage_backend or "local").strip().lower()
    if backend == "s3":
        return S3BlobStore(
            bucket=settings.s3_bucket,
            endpoint_url=settings.s3_endpoint,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
            region=settings.s3_region,
        )
    if backend != "local":
        raise StorageError(f"Unknown storage backend: {backend}")
    return LocalBlobStore(
        root=settings.storage_root,
        base_url=settings.storage_base_url,
        signing_secret=settings.signing_secret,
    )


_DEFAULT_EXTENSIONS = {"signature": "png", "photo": "jpg", "document": "pdf"}

_CONTENT_TYPE_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/svg+xml": "svg",
    "image/tiff": "tif",
    "application/pdf": "pdf",
}


def _extension_for(kind: str, content_type: str) -> str:
    mime = (content_type or "").split(";")[0].strip().lower()
    return _CONTENT_TYPE_EXTENSIONS.get(mime, _DEFAULT_EXTENSIONS[kind])


def _check_kind(kind: str) -> None:
    if kind not in PERSON_FILE_KINDS:
        raise ValidationError(f"Invalid file type: {kind}")


def _get_person(db: Session, person_id: str) -> Person:
    person = db.query(Person).filter(Person.id == person_id).first()
    if not person:
        raise NotFoundError("Person not found")
    return person


def store_person_file(db: Session, store, person_id: str, kind: str, data: bytes, content_type: str) -> str:
    """
    Upload a person's signature/photo/document and record its storage path.

    The path, not a URL, is stored on the person; URLs are signed on demand.
    """
    _check_kind(kind)
    if not data:
        raise ValidationError(f"{kind.capitalize()} missing")

    person = _get_person(db, person_id)

    path = f"persons/{kind}s/{person_id}.{_extension_for(kind, content_type)}"
    store.put(path, data, content_type)

    files = dict(person.files or {})
    files[kind] = path
    person.files = files
    flag_modified(person, "files")
    db.commit()
    return path


def get_person_file_url(db: Session, store, person_id: str, kind: str, ttl_seconds: int) -> str:
    """Sign a short-lived download URL for a stored person file."""
    _check_kind(kind)
    person = _get_person(db, person_id)

    path = (person.files or {}).get(kind)
    if not path:
        raise NotFoundError("File not found")
    try:
        return store.signed_url(path, ttl_seconds)
    except StorageError as exc:
        logger.warning("Could not sign %s for person %s: %s", kind, person_id, exc)
        raise NotFoundError("File not found") from exc
