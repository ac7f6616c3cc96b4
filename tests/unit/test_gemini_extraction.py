import json

import httpx
import pytest

from src.booksphere.cataloging.cataloging_models import ImageRef, ImageSlot
from src.booksphere.config import PipelineSettings
from src.booksphere.exceptions import UpstreamError, UpstreamTimeoutError
from src.booksphere.providers.providers_base import ImageLoader
from src.booksphere.providers.providers_factory import create_extraction_client
from src.booksphere.providers.providers_gemini import GeminiExtractionClient


class DummyResponse:
    def __init__(self, status_code: int, json_data: dict):
        self.status_code = status_code
        self._json_data = json_data
        self.text = json.dumps(json_data)

    def json(self):
        return self._json_data


class DummyAsyncClient:
    def __init__(self, response=None, error: Exception | None = None):
        self.response = response
        self.error = error
        self.requests: list[dict] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        pass

    async def post(self, url, headers, json):
        self.requests.append({"url": url, "headers": headers, "json": json})
        if self.error is not None:
            raise self.error
        return self.response


@pytest.fixture
def images(tmp_path):
    (tmp_path / "t1").mkdir()
    (tmp_path / "t1" / "cover.jpg").write_bytes(b"cover-bytes")
    (tmp_path / "t1" / "title.png").write_bytes(b"title-bytes")
    return [
        ImageRef(slot=ImageSlot.COVER, ref="t1/cover.jpg"),
        ImageRef(slot=ImageSlot.TITLE_PAGE, ref="t1/title.png"),
    ]


@pytest.fixture
def gemini(tmp_path):
    return GeminiExtractionClient(
        api_key="test-key",
        image_loader=ImageLoader(storage_root=tmp_path),
        model="gemini-test",
        api_url_base="https://gemini.invalid/v1beta",
    )


def _reply(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}, "finishReason": "STOP"}]}


@pytest.mark.asyncio
async def test_successful_extraction_sends_images_inline(monkeypatch, gemini, images):
    client = DummyAsyncClient(DummyResponse(200, _reply('{"title": "Dune", "publication_year": 1965}')))
    monkeypatch.setattr("httpx.AsyncClient", lambda timeout: client)

    metadata = await gemini.extract(images)

    assert metadata.title == "Dune"
    assert metadata.publication_year == 1965
    request = client.requests[0]
    assert request["url"] == "https://gemini.invalid/v1beta/models/gemini-test:generateContent"
    assert request["headers"]["x-goog-api-key"] == "test-key"
    parts = request["json"]["contents"][0]["parts"]
    inline = [part["inline_data"] for part in parts if "inline_data" in part]
    assert [item["mime_type"] for item in inline] == ["image/jpeg", "image/png"]
    assert request["json"]["generationConfig"]["responseMimeType"] == "application/json"


@pytest.mark.asyncio
async def test_non_200_status_is_upstream_error(monkeypatch, gemini, images):
    client = DummyAsyncClient(
        DummyResponse(429, {"error": {"status": "RESOURCE_EXHAUSTED", "message": "quota"}})
    )
    monkeypatch.setattr("httpx.AsyncClient", lambda timeout: client)

    with pytest.raises(UpstreamError) as excinfo:
        await gemini.extract(images)

    assert "status=429" in str(excinfo.value)
    assert "RESOURCE_EXHAUSTED quota" in str(excinfo.value)


@pytest.mark.asyncio
async def test_blocked_reply_reports_finish_reason(monkeypatch, gemini, images):
    client = DummyAsyncClient(DummyResponse(200, {"candidates": [{"finishReason": "SAFETY"}]}))
    monkeypatch.setattr("httpx.AsyncClient", lambda timeout: client)

    with pytest.raises(UpstreamError, match="finish_reason=SAFETY"):
        await gemini.extract(images)


@pytest.mark.asyncio
async def test_http_timeout_is_upstream_timeout(monkeypatch, gemini, images):
    client = DummyAsyncClient(error=httpx.ReadTimeout("slow"))
    monkeypatch.setattr("httpx.AsyncClient", lambda timeout: client)

    with pytest.raises(UpstreamTimeoutError):
        await gemini.extract(images)


@pytest.mark.asyncio
async def test_image_outside_storage_is_refused(gemini):
    with pytest.raises(UpstreamError, match="outside the image storage"):
        await gemini.extract([ImageRef(slot=ImageSlot.COVER, ref="../secret.jpg")])


def test_factory_requires_api_key(tmp_path):
    settings = PipelineSettings(database_url="sqlite://", gemini_api_key=None)

    with pytest.raises(ValueError, match="GEMINI_API_KEY"):
        create_extraction_client(settings)

    client = create_extraction_client(
        PipelineSettings(database_url="sqlite://", gemini_api_key="k", image_storage_root=str(tmp_path))
    )
    assert isinstance(client, GeminiExtractionClient)
    assert client.timeout_seconds == 55.0
