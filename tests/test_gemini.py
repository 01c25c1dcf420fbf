"""Gemini streamGenerateContent adapter."""

import json

import httpx
import pytest

from conftest import Recorder, make_model, make_provider, sse_body
from genrelay.errors import NoImageInResponseError
from genrelay.schemas.generation import GenerationRequest
from genrelay.services.providers.gemini import GeminiAdapter, resolve_stream_endpoint


def _parts(*parts) -> str:
    return json.dumps({"candidates": [{"content": {"role": "model", "parts": list(parts)}}]})


def test_resolve_stream_endpoint():
    assert resolve_stream_endpoint("", "g-1") == (
        "https://generativelanguage.googleapis.com/v1beta/models/g-1:streamGenerateContent?alt=sse"
    )
    assert resolve_stream_endpoint("https://proxy/{model}/stream", "g-1") == "https://proxy/g-1/stream"
    assert resolve_stream_endpoint("https://proxy/m/%s", "g-1") == "https://proxy/m/g-1"
    assert resolve_stream_endpoint("https://proxy/", "g-1") == (
        "https://proxy/v1beta/models/g-1:streamGenerateContent?alt=sse"
    )


@pytest.mark.asyncio
async def test_inline_image_and_text_parts():
    recorder = Recorder(httpx.Response(200, content=sse_body(
        _parts({"text": "Sure."}),
        _parts({"inlineData": {"mimeType": "image/png", "data": "QUJD"}}),
        _parts({"fileData": {"fileUri": "https://files.example.com/x.png"}}),
        done=False,
    )))
    adapter = GeminiAdapter(make_provider("gemini"), http_client=recorder.client())

    request = GenerationRequest(prompt="paint", input_media=[{"content": "QUJD"}, {"content": "!!bad!!"}])
    result = await adapter.generate_content(request, make_model("gemini-img"))

    assert result.urls() == ["data:image/png;base64,QUJD", "https://files.example.com/x.png"]
    assert result.text == "Sure."

    sent = recorder.requests[0]
    assert sent.headers["x-goog-api-key"] == "sk-test"
    body = json.loads(sent.content)
    parts = body["contents"][0]["parts"]
    # the malformed reference is skipped
    assert parts == [{"text": "paint"}, {"inlineData": {"mimeType": "image/jpeg", "data": "QUJD"}}]


@pytest.mark.asyncio
async def test_no_image_keeps_text_and_errors():
    recorder = Recorder(httpx.Response(200, content=sse_body(
        _parts({"text": "I cannot"}),
        json.dumps({"error": {"message": "blocked"}}),
    )))
    adapter = GeminiAdapter(make_provider("gemini"), http_client=recorder.client())

    with pytest.raises(NoImageInResponseError) as exc_info:
        await adapter.generate_content(GenerationRequest(prompt="x"), make_model())
    assert exc_info.value.text == "I cannot\nblocked"
