"""Abstract extraction client definition."""

from __future__ import annotations

import base64
import logging
import mimetypes
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import httpx

from ..cataloging.cataloging_models import ExtractedMetadata, ImageRef
from ..exceptions import UpstreamError

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 20 * 1024 * 1024


@dataclass(slots=True)
class LoadedImage:
    """Image bytes ready to be sent inline."""

    slot: str
    mime_type: str
    data: bytes

    @property
    def data_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


class ExtractionClient(ABC):
    """Base interface for extraction adapters.

    Adapters make one attempt: any failure is raised as
    :class:`~src.booksphere.exceptions.UpstreamError` and the caller decides
    what happens to the job.
    """

    @abstractmethod
    async def extract(self, images: Sequence[ImageRef]) -> ExtractedMetadata:
        """Read bibliographic metadata off the given images."""


@dataclass(slots=True)
class ImageLoader:
    """Resolve image references (http(s) URLs or storage keys) to bytes."""

    storage_root: Path
    timeout_seconds: float = 30.0

    async def load_all(self, images: Sequence[ImageRef]) -> list[LoadedImage]:
        return [await self.load(image) for image in images]

    async def load(self, image: ImageRef) -> LoadedImage:
        if image.ref.startswith(("http://", "https://")):
            data, mime = await self._download(image)
        else:
            data, mime = self._read_local(image)
        if not data:
            raise UpstreamError(f"image {image.slot.value} is empty")
        if len(data) > MAX_IMAGE_BYTES:
            raise UpstreamError(f"image {image.slot.value} is too large")
        return LoadedImage(slot=image.slot.value, mime_type=mime, data=data)

    async def _download(self, image: ImageRef) -> tuple[bytes, str]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.get(image.ref)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"could not fetch image {image.slot.value}: {exc}") from exc
        if response.status_code != 200:
            raise UpstreamError(
                f"could not fetch image {image.slot.value} (status={response.status_code})"
            )
        content_type = (response.headers.get("content-type") or "").split(";")[0].strip()
        return response.content, content_type or "image/jpeg"

    def _read_local(self, image: ImageRef) -> tuple[bytes, str]:
        root = self.storage_root.resolve()
        path = (root / image.ref).resolve()
        if root not in path.parents:
            raise UpstreamError(f"image {image.slot.value} is outside the image storage")
        try:
            data = path.read_bytes()
        except OSError as exc:
            logger.warning(
                "providers.image.read_failed",
                extra={"slot": image.slot.value, "error": exc.__class__.__name__},
            )
            raise UpstreamError(f"could not read image {image.slot.value}") from exc
        mime, _ = mimetypes.guess_type(path.name)
        return data, mime or "image/jpeg"


__all__ = ["ExtractionClient", "ImageLoader", "LoadedImage"]
