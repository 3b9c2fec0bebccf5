"""
Proof Processor

Turns one stored upload into a normalized proof record. The media kind is
selected once from the MIME type and each kind carries its own strategy:

- images: bounded thumbnail plus an optimized primary asset swapped in place
- videos: one representative frame as thumbnail, degrading to no thumbnail
- audio: shared placeholder thumbnail, no processing
"""

import abc
import asyncio
import enum
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import structlog
from PIL import Image, ImageOps

from app.core.config import settings
from app.core.exceptions import ProcessingError, UnsupportedMediaError
from app.core.metrics import PROOFS_PROCESSED
from app.models.database import ProofType
from app.services.proof_store import (
    AUDIO_FOLDER,
    PHOTOS_FOLDER,
    THUMBNAILS_FOLDER,
    VIDEOS_FOLDER,
    ProofStore,
    StoredFile,
)

# =============================================================================
# Logger Setup
# =============================================================================

logger = structlog.get_logger(__name__)

# =============================================================================
# Types
# =============================================================================

class MediaKind(str, enum.Enum):
    """Media kinds with a processing strategy."""
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"

    @classmethod
    def from_mime_type(cls, mime_type: Optional[str]) -> "MediaKind":
        major = (mime_type or "").split("/", 1)[0].lower()
        try:
            return cls(major)
        except ValueError:
            raise UnsupportedMediaError(mime_type)


@dataclass
class Proof:
    """Normalized proof record as stored on the alert."""
    type: str
    url: str
    thumbnail: Optional[str]
    size: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# Strategies
# =============================================================================

class ProofStrategy(abc.ABC):
    """Common capability of all media strategies."""

    kind: MediaKind
    proof_type: ProofType
    folder: str

    def __init__(self, store: ProofStore):
        self.store = store

    @abc.abstractmethod
    async def process(self, stored: StoredFile) -> Proof:
        """Turn a stored upload into its proof record."""

    def _url(self, stored: StoredFile) -> str:
        return self.store.public_url(self.folder, stored.name)


class ImageProofStrategy(ProofStrategy):
    """Thumbnail and in-place optimization with Pillow."""

    kind = MediaKind.IMAGE
    proof_type = ProofType.PHOTO
    folder = PHOTOS_FOLDER

    THUMBNAIL_SIZE = (300, 300)
    THUMBNAIL_QUALITY = 80
    OPTIMIZED_SIZE = (1200, 1200)
    OPTIMIZED_QUALITY = 85

    async def process(self, stored: StoredFile) -> Proof:
        thumbnail_path = self.store.thumbnail_path(stored.name, self.folder)
        temp_path = stored.path.with_name(stored.path.name + ".tmp")

        loop = asyncio.get_running_loop()
        render = loop.run_in_executor(
            None, self._render, stored.path, thumbnail_path, temp_path
        )
        try:
            await asyncio.shield(render)
        except asyncio.CancelledError:
            # The worker thread cannot be interrupted; let it finish so
            # nothing is written after the caller cleans up
            try:
                await render
            except Exception as e:
                logger.debug("Cancelled image render failed", file=stored.name, error=str(e))
            for leftover in (thumbnail_path, temp_path):
                leftover.unlink(missing_ok=True)
            raise
        except Exception as e:
            logger.error("Image processing failed", file=stored.name, error=str(e))
            for leftover in (thumbnail_path, temp_path):
                leftover.unlink(missing_ok=True)
            raise ProcessingError(f"Failed to process image: {e}", file_name=stored.original_name)

        return Proof(
            type=self.proof_type.value,
            url=self._url(stored),
            thumbnail=self.store.public_url(THUMBNAILS_FOLDER, thumbnail_path.name),
            size=stored.path.stat().st_size,
        )

    @classmethod
    def _render(cls, source: Path, thumbnail_path: Path, temp_path: Path) -> None:
        with Image.open(source) as image:
            image.load()
            rgb = image.convert("RGB") if image.mode != "RGB" else image.copy()

        # Thumbnail fits inside the box, scaling small images up as well
        thumbnail = ImageOps.contain(rgb, cls.THUMBNAIL_SIZE, Image.Resampling.LANCZOS)
        thumbnail.save(thumbnail_path, format="JPEG", quality=cls.THUMBNAIL_QUALITY)

        # Image.thumbnail never enlarges
        optimized = rgb.copy()
        optimized.thumbnail(cls.OPTIMIZED_SIZE, Image.Resampling.LANCZOS)
        optimized.save(temp_path, format="JPEG", quality=cls.OPTIMIZED_QUALITY, optimize=True)

        os.replace(temp_path, source)


class VideoProofStrategy(ProofStrategy):
    """Frame extraction with ffmpeg; a failed frame never fails the proof."""

    kind = MediaKind.VIDEO
    proof_type = ProofType.VIDEO
    folder = VIDEOS_FOLDER

    FRAME_SIZE = (320, 240)

    def __init__(
        self,
        store: ProofStore,
        ffmpeg_binary: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        super().__init__(store)
        self.ffmpeg_binary = ffmpeg_binary or settings.FFMPEG_BINARY
        self.timeout_seconds = timeout_seconds or settings.VIDEO_THUMBNAIL_TIMEOUT_SECONDS

    async def process(self, stored: StoredFile) -> Proof:
        thumbnail_path = self.store.thumbnail_path(stored.name, self.folder)

        thumbnail_url = None
        if await self.extract_frame(stored.path, thumbnail_path):
            thumbnail_url = self.store.public_url(THUMBNAILS_FOLDER, thumbnail_path.name)

        return Proof(
            type=self.proof_type.value,
            url=self._url(stored),
            thumbnail=thumbnail_url,
            size=stored.path.stat().st_size,
        )

    def build_command(self, source: Path, target: Path) -> list:
        width, height = self.FRAME_SIZE
        return [
            self.ffmpeg_binary,
            "-hide_banner",
            "-loglevel", "error",
            "-y",
            "-i", str(source),
            "-vf", f"thumbnail,scale={width}:{height}",
            "-frames:v", "1",
            str(target),
        ]

    async def extract_frame(self, source: Path, target: Path) -> bool:
        """Write one 320x240 frame to ``target``; False on any failure."""
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(source, target),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.warning("ffmpeg could not be started", binary=self.ffmpeg_binary, error=str(e))
            return False

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), self.timeout_seconds)
        except asyncio.TimeoutError:
            await self._terminate(process)
            logger.warning("Video thumbnail timed out", file=source.name, timeout=self.timeout_seconds)
            target.unlink(missing_ok=True)
            return False
        except asyncio.CancelledError:
            await self._terminate(process)
            target.unlink(missing_ok=True)
            raise

        if process.returncode != 0 or not target.exists():
            logger.warning(
                "Video thumbnail generation failed",
                file=source.name,
                returncode=process.returncode,
                stderr=(stderr or b"").decode(errors="ignore")[-500:],
            )
            target.unlink(missing_ok=True)
            return False

        return True

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()


class AudioProofStrategy(ProofStrategy):
    """Audio needs no processing; every clip shares the placeholder."""

    kind = MediaKind.AUDIO
    proof_type = ProofType.AUDIO
    folder = AUDIO_FOLDER

    async def process(self, stored: StoredFile) -> Proof:
        return Proof(
            type=self.proof_type.value,
            url=self._url(stored),
            thumbnail=self.store.audio_placeholder_url,
            size=stored.path.stat().st_size,
        )


# =============================================================================
# Processor
# =============================================================================

class ProofProcessor:
    """Dispatches stored uploads to the strategy of their media kind."""

    def __init__(self, store: ProofStore, video_strategy: Optional[VideoProofStrategy] = None):
        self.store = store
        self.strategies: Dict[MediaKind, ProofStrategy] = {
            MediaKind.IMAGE: ImageProofStrategy(store),
            MediaKind.VIDEO: video_strategy or VideoProofStrategy(store),
            MediaKind.AUDIO: AudioProofStrategy(store),
        }

    def strategy_for(self, mime_type: Optional[str]) -> ProofStrategy:
        return self.strategies[MediaKind.from_mime_type(mime_type)]

    async def process_file(self, stored: StoredFile) -> Proof:
        """
        Process one stored upload.

        Raises:
            UnsupportedMediaError: MIME type is not image, video or audio
            ProcessingError: the primary asset could not be encoded
        """
        strategy = self.strategy_for(stored.mime_type)
        try:
            proof = await strategy.process(stored)
        except ProcessingError:
            PROOFS_PROCESSED.labels(kind=strategy.kind.value, outcome="failed").inc()
            raise

        # A video whose frame could not be extracted is kept without thumbnail
        degraded = strategy.kind is MediaKind.VIDEO and proof.thumbnail is None
        outcome = "degraded" if degraded else "processed"
        PROOFS_PROCESSED.labels(kind=strategy.kind.value, outcome=outcome).inc()
        logger.info(
            "Proof processed",
            kind=strategy.kind.value,
            url=proof.url,
            has_thumbnail=proof.thumbnail is not None,
            size=proof.size,
        )
        return proof

    @staticmethod
    def processing_timeout(file_count: int) -> float:
        return (
            settings.PROOF_PROCESSING_TIMEOUT_SECONDS
            + settings.PROOF_PROCESSING_TIMEOUT_PER_FILE_SECONDS * file_count
        )

    async def process_uploads(self, uploads: Sequence[Any]) -> List[Proof]:
        """
        Store and process uploads in submission order.

        Either every upload yields a proof or none is kept: on any failure the
        files already written for this batch are removed.

        Raises:
            UnsupportedMediaError / FileSizeExceededError: rejected upload
            ProcessingError: encoding failure or batch timeout
        """
        stored: List[StoredFile] = []
        timeout = self.processing_timeout(len(uploads))
        try:
            return await asyncio.wait_for(self._process_in_order(uploads, stored), timeout)
        except asyncio.TimeoutError:
            self._discard(stored)
            logger.error("Proof processing timed out", files=len(uploads), timeout=timeout)
            raise ProcessingError("Proof processing timed out")
        except Exception:
            self._discard(stored)
            raise

    async def _process_in_order(self, uploads: Sequence[Any], stored: List[StoredFile]) -> List[Proof]:
        proofs = []
        for upload in uploads:
            stored_file = await self.store.save_upload(upload)
            stored.append(stored_file)
            proofs.append(await self.process_file(stored_file))
        return proofs

    def _discard(self, stored: Sequence[StoredFile]) -> None:
        for stored_file in stored:
            self.store.discard(stored_file)


__all__ = [
    "MediaKind",
    "Proof",
    "ProofStrategy",
    "ImageProofStrategy",
    "VideoProofStrategy",
    "AudioProofStrategy",
    "ProofProcessor",
]
