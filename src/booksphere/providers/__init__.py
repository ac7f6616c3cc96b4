"""Adapters for the external bibliographic extraction service."""

from .providers_base import ExtractionClient, ImageLoader, LoadedImage
from .providers_gemini import GeminiExtractionClient

__all__ = [
    "ExtractionClient",
    "GeminiExtractionClient",
    "ImageLoader",
    "LoadedImage",
]
