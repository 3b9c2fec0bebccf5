"""
Proof Store

This module owns the on-disk layout of alert proofs:
- per-kind folders (photos, videos, audio, thumbnails) under UPLOAD_DIR
- the upload acceptance filter (MIME allow-list and size limit)
- collision-resistant file naming
- deletion by public URL, including the sibling thumbnail
"""

import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import urlparse

import aiofiles
import structlog
from PIL import Image

from app.core.config import settings
from app.core.exceptions import (
    FileSizeExceededError,
    UnrecognizedAssetKindError,
    UnsupportedMediaError,
)

# =============================================================================
# Logger Setup
# =============================================================================

logger = structlog.get_logger(__name__)

# =============================================================================
# Layout
# =============================================================================

PHOTOS_FOLDER = "photos"
VIDEOS_FOLDER = "videos"
AUDIO_FOLDER = "audio"
THUMBNAILS_FOLDER = "thumbnails"

PROOF_FOLDERS = (PHOTOS_FOLDER, VIDEOS_FOLDER, AUDIO_FOLDER, THUMBNAILS_FOLDER)

AUDIO_PLACEHOLDER_NAME = "audio_default.png"
THUMBNAIL_PREFIX = "thumb_"

CHUNK_SIZE = 1024 * 1024


@dataclass
class StoredFile:
    """An accepted upload written to its destination folder."""
    path: Path
    folder: str
    mime_type: str
    original_name: str

    @property
    def name(self) -> str:
        return self.path.name


class ProofStore:
    """
    Local filesystem store for proof assets.

    Folder creation is explicit: call ensure_folders() once at startup.
    """

    def __init__(
        self,
        base_path: Optional[Path] = None,
        url_prefix: Optional[str] = None,
        allowed_types: Optional[Iterable[str]] = None,
        max_size_bytes: Optional[int] = None,
    ):
        self.base_path = Path(base_path or settings.UPLOAD_DIR)
        self.url_prefix = "/" + (url_prefix or settings.UPLOAD_URL_PREFIX).strip("/")
        self.allowed_types = frozenset(allowed_types or settings.ALLOWED_FILE_TYPES)
        self.max_size_bytes = max_size_bytes or settings.MAX_FILE_SIZE_BYTES

    # -------------------------------------------------------------------------
    # Layout helpers
    # -------------------------------------------------------------------------

    def ensure_folders(self) -> None:
        """Create the storage folders and the audio placeholder if missing."""
        for folder in PROOF_FOLDERS:
            (self.base_path / folder).mkdir(parents=True, exist_ok=True)

        placeholder = self.folder_path(THUMBNAILS_FOLDER) / AUDIO_PLACEHOLDER_NAME
        if not placeholder.exists():
            Image.new("RGB", (300, 300), (96, 108, 118)).save(placeholder, format="PNG")
            logger.info("Audio placeholder created", path=str(placeholder))

        logger.info("Proof storage ready", base_path=str(self.base_path))

    def folder_path(self, folder: str) -> Path:
        return self.base_path / folder

    @staticmethod
    def destination_for(mime_type: Optional[str]) -> str:
        """Storage folder for a MIME type; photos is the fallback."""
        mime_type = (mime_type or "").lower()
        if mime_type.startswith("video/"):
            return VIDEOS_FOLDER
        if mime_type.startswith("audio/"):
            return AUDIO_FOLDER
        return PHOTOS_FOLDER

    @staticmethod
    def name_for(original_name: Optional[str]) -> str:
        """Millisecond timestamp, random suffix, original extension."""
        extension = Path(original_name or "").suffix.lower()
        return f"{int(time.time() * 1000)}-{secrets.token_hex(6)}{extension}"

    def public_url(self, folder: str, name: str) -> str:
        return f"{self.url_prefix}/{folder}/{name}"

    @staticmethod
    def thumbnail_name(asset_name: str, folder: str) -> str:
        """Thumbnail naming convention: videos get an extra .jpg suffix."""
        if folder == VIDEOS_FOLDER:
            return f"{THUMBNAIL_PREFIX}{asset_name}.jpg"
        return f"{THUMBNAIL_PREFIX}{asset_name}"

    def thumbnail_path(self, asset_name: str, folder: str) -> Path:
        return self.folder_path(THUMBNAILS_FOLDER) / self.thumbnail_name(asset_name, folder)

    @property
    def audio_placeholder_url(self) -> str:
        return self.public_url(THUMBNAILS_FOLDER, AUDIO_PLACEHOLDER_NAME)

    # -------------------------------------------------------------------------
    # Acceptance and persistence
    # -------------------------------------------------------------------------

    def accept(
        self,
        mime_type: Optional[str],
        size: Optional[int] = None,
        file_name: Optional[str] = None,
    ) -> None:
        """
        Upload acceptance filter.

        Raises:
            UnsupportedMediaError: MIME type not in the allow-list
            FileSizeExceededError: declared size above the limit
        """
        if mime_type not in self.allowed_types:
            raise UnsupportedMediaError(
                mime_type,
                supported_types=sorted(self.allowed_types),
                file_name=file_name,
            )
        if size is not None and size > self.max_size_bytes:
            raise FileSizeExceededError(self.max_size_bytes, file_name=file_name)

    async def save_upload(self, upload) -> StoredFile:
        """
        Stream an incoming upload into its destination folder.

        ``upload`` is anything with ``filename``, ``content_type`` and an
        async ``read(size)``, such as FastAPI's UploadFile.
        """
        mime_type = upload.content_type
        self.accept(mime_type, getattr(upload, "size", None), upload.filename)

        folder = self.destination_for(mime_type)
        target = self.folder_path(folder) / self.name_for(upload.filename)

        written = 0
        try:
            async with aiofiles.open(target, "wb") as out:
                while True:
                    chunk = await upload.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    written += len(chunk)
                    if written > self.max_size_bytes:
                        raise FileSizeExceededError(self.max_size_bytes, file_name=upload.filename)
                    await out.write(chunk)
        except BaseException:
            target.unlink(missing_ok=True)
            raise

        logger.debug(
            "Upload stored",
            filename=upload.filename,
            folder=folder,
            stored_as=target.name,
            size=written,
        )

        return StoredFile(
            path=target,
            folder=folder,
            mime_type=mime_type,
            original_name=upload.filename or target.name,
        )

    def discard(self, stored: StoredFile) -> None:
        """Remove a stored upload and its thumbnail, ignoring missing files."""
        for path in (stored.path, self.thumbnail_path(stored.name, stored.folder)):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Failed to discard stored file", path=str(path), error=str(e))

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------

    async def delete(self, file_url: str) -> bool:
        """
        Delete a proof asset by its public URL.

        Returns False when the primary file does not exist. The thumbnail is
        removed best-effort.

        Raises:
            UnrecognizedAssetKindError: URL is not under photos, videos or audio
        """
        url_path = urlparse(file_url or "").path

        if f"/{PHOTOS_FOLDER}/" in url_path:
            folder = PHOTOS_FOLDER
        elif f"/{VIDEOS_FOLDER}/" in url_path:
            folder = VIDEOS_FOLDER
        elif f"/{AUDIO_FOLDER}/" in url_path:
            folder = AUDIO_FOLDER
        else:
            raise UnrecognizedAssetKindError(file_url)

        # Only the basename is trusted
        file_name = Path(url_path).name
        if not file_name or file_name in (".", ".."):
            return False

        if folder != AUDIO_FOLDER:
            thumbnail = self.thumbnail_path(file_name, folder)
            try:
                thumbnail.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Failed to delete thumbnail", path=str(thumbnail), error=str(e))

        file_path = self.folder_path(folder) / file_name
        if not file_path.is_file():
            logger.info("Proof file not found for deletion", file_url=file_url)
            return False

        file_path.unlink()
        logger.info("Proof file deleted", file_url=file_url, folder=folder)
        return True


__all__ = [
    "ProofStore",
    "StoredFile",
    "PROOF_FOLDERS",
    "PHOTOS_FOLDER",
    "VIDEOS_FOLDER",
    "AUDIO_FOLDER",
    "THUMBNAILS_FOLDER",
    "AUDIO_PLACEHOLDER_NAME",
]
