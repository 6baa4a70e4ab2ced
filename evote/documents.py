"""
Document store for nomination photos and manifestos.

Files live under ``UPLOAD_DIR`` and are referenced by URL only; the
nomination row never holds file content.  The nomination service mounts the
directory read-only at ``UPLOAD_URL_PREFIX``.
"""
import asyncio
import logging
import secrets
from dataclasses import dataclass
from pathlib import Path

from .config import Settings
from .errors import InvalidDocument, MissingDocument

logger = logging.getLogger(__name__)

PHOTO_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}


@dataclass(frozen=True)
class Document:
    filename: str
    content_type: str
    data: bytes


class DocumentStore:

    def __init__(self, settings: Settings):
        self.root = Path(settings.upload_dir)
        self.url_prefix = settings.upload_url_prefix
        self.max_bytes = settings.max_upload_bytes

    def check_photo(self, doc: Document | None) -> str:
        self._check_present(doc, "photo")
        ext = PHOTO_EXTENSIONS.get((doc.content_type or "").lower())
        if ext is None:
            raise InvalidDocument("Photo must be a JPEG, PNG, GIF or WebP image")
        return ext

    def check_manifesto(self, doc: Document | None) -> str:
        self._check_present(doc, "manifesto")
        is_pdf = (doc.content_type or "").lower() == "application/pdf" \
            or doc.filename.lower().endswith(".pdf")
        if not is_pdf or not doc.data.startswith(b"%PDF"):
            raise InvalidDocument("Manifesto must be a PDF document")
        return ".pdf"

    def _check_present(self, doc: Document | None, label: str) -> None:
        if doc is None or not doc.data:
            raise MissingDocument()
        if len(doc.data) > self.max_bytes:
            raise InvalidDocument(f"The {label} exceeds the {self.max_bytes // 1024} KB limit")

    async def save(self, kind: str, doc: Document, ext: str) -> str:
        """Write ``doc`` and return its public URL."""
        folder = self.root / kind
        name = f"{secrets.token_hex(12)}{ext}"
        await asyncio.to_thread(self._write, folder, name, doc.data)
        logger.info(f"Stored {kind} document {name} ({len(doc.data)} bytes)")
        return f"{self.url_prefix}/{kind}/{name}"

    @staticmethod
    def _write(folder: Path, name: str, data: bytes) -> None:
        folder.mkdir(parents=True, exist_ok=True)
        (folder / name).write_bytes(data)

    async def discard(self, url: str) -> None:
        """Best-effort removal of a stored document (used when a submission aborts)."""
        relative = url[len(self.url_prefix):].lstrip("/")
        path = self.root / relative
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            pass
