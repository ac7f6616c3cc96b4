"""Gemini extraction adapter."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from ..cataloging.cataloging_models import ExtractedMetadata, ImageRef
from ..exceptions import UpstreamError, UpstreamTimeoutError
from .extraction_schema import EXTRACTION_FIELDS_HINT, EXTRACTION_PROMPT, parse_extraction_text
from .providers_base import ExtractionClient, ImageLoader

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class GeminiExtractionClient(ExtractionClient):
    """Send the book images to Gemini ``generateContent`` in JSON mode."""

    api_key: str
    image_loader: ImageLoader
    model: str = "gemini-2.5-pro"
    api_url_base: str = "https://generativelanguage.googleapis.com/v1beta"
    timeout_seconds: float = 55.0
    log: logging.Logger = field(default_factory=lambda: logger)

    async def extract(self, images: Sequence[ImageRef]) -> ExtractedMetadata:
        if not self.api_key:
            raise UpstreamError("Gemini API key is not configured")
        if not images:
            raise UpstreamError("no images to extract from")

        loaded = await self.image_loader.load_all(images)
        parts: list[dict[str, Any]] = [
            {"text": EXTRACTION_PROMPT},
            {"text": EXTRACTION_FIELDS_HINT},
        ]
        for image in loaded:
            parts.append({"text": f"Image: {image.slot}"})
            parts.append({"inline_data": {"mime_type": image.mime_type, "data": image.data_base64}})

        body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {"responseMimeType": "application/json", "temperature": 0},
        }
        url = f"{self.api_url_base}/models/{self.model}:generateContent"
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

        self.log.info(
            "gemini.request.start",
            extra={
                "model": self.model,
                "images": len(loaded),
                "payload_bytes": sum(len(image.data) for image in loaded),
            },
        )
        try:
            response = await self._post(url, headers=headers, json=body)
        except httpx.TimeoutException as exc:
            raise UpstreamTimeoutError("Gemini request timed out") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Gemini HTTP error: {exc.__class__.__name__}") from exc

        if response.status_code != 200:
            detail = _extract_error(response)
            self.log.error(
                "gemini.response.error",
                extra={"status_code": response.status_code, "error_detail": detail},
            )
            raise UpstreamError(f"Gemini request failed (status={response.status_code}): {detail}")

        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamError("Gemini returned a non-JSON body") from exc
        text = _first_text(data)
        if text is None:
            reason = _finish_reason(data)
            self.log.warning("gemini.response.no_text", extra={"finish_reason": reason})
            if reason:
                raise UpstreamError(f"Gemini returned no content (finish_reason={reason})")
            raise UpstreamError("Gemini returned an unexpected response structure")

        metadata = parse_extraction_text(text)
        self.log.info(
            "gemini.request.success",
            extra={"authors": len(metadata.authors), "has_title": metadata.title is not None},
        )
        return metadata

    async def _post(
        self, url: str, *, headers: dict[str, str], json: dict[str, Any]
    ) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.post(url, headers=headers, json=json)


def _first_text(data: dict[str, Any]) -> str | None:
    for candidate in data.get("candidates") or []:
        content = candidate.get("content") or {}
        for part in content.get("parts") or []:
            text = part.get("text")
            if isinstance(text, str) and text.strip():
                return text
    return None


def _finish_reason(data: dict[str, Any]) -> str | None:
    candidates = data.get("candidates") or []
    if candidates:
        first = candidates[0] or {}
        return first.get("finishReason") or first.get("finish_reason")
    feedback = data.get("promptFeedback") or {}
    return feedback.get("blockReason")


def _extract_error(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        message = (error.get("message") or "").strip()
        status = (error.get("status") or "").strip()
        return " ".join(part for part in (status, message) if part)
    return str(data)[:200]


__all__ = ["GeminiExtractionClient"]
