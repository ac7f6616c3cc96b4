"""Factory for extraction clients."""

from pathlib import Path

from ..config import PipelineSettings
from .providers_base import ExtractionClient, ImageLoader
from .providers_gemini import GeminiExtractionClient


def create_extraction_client(settings: PipelineSettings) -> ExtractionClient:
    """Instantiate the extraction adapter named in the settings."""
    name = settings.extraction_provider.lower()
    if name == "gemini":
        if not settings.gemini_api_key:
            raise ValueError("BOOKSPHERE_GEMINI_API_KEY is required for the gemini extraction provider")
        return GeminiExtractionClient(
            api_key=settings.gemini_api_key,
            image_loader=ImageLoader(
                storage_root=Path(settings.image_storage_root),
                timeout_seconds=settings.extraction_timeout_seconds,
            ),
            model=settings.gemini_model,
            api_url_base=settings.gemini_api_url_base,
            timeout_seconds=settings.extraction_timeout_seconds,
        )
    raise ValueError(f"Unsupported extraction provider '{settings.extraction_provider}'")
