"""OpenRouter chat-completions stream adapter."""

import json

import httpx
import pytest

from conftest import Recorder, make_model, make_provider, sse_body
from genrelay.errors import NoImageInResponseError, ProviderError
from genrelay.schemas.generation import GenerationRequest
from genrelay.services.providers.openrouter import (
    OpenRouterAdapter,
    build_chat_body,
    resolve_chat_endpoint,
)


def _chunk(**delta) -> str:
    return json.dumps({"choices": [{"index": 0, "delta": delta}]})


def _adapter(recorder: Recorder, **provider) -> OpenRouterAdapter:
    return OpenRouterAdapter(make_provider("openrouter", **provider), http_client=recorder.client())


def test_resolve_chat_endpoint():
    assert resolve_chat_endpoint("") == "https://openrouter.ai/api/v1/chat/completions"
    assert resolve_chat_endpoint("https://proxy.local/v1/") == "https://proxy.local/v1/chat/completions"
    assert resolve_chat_endpoint("https://proxy.local/v1/chat/completions") == "https://proxy.local/v1/chat/completions"


def test_build_chat_body_parts_and_modalities():
    body = build_chat_body("m", "draw", ["QUJD", "https://x/a.png"], ["https://x/v.mp4"])
    parts = body["messages"][0]["content"]
    assert parts[0] == {"type": "text", "text": "draw"}
    assert parts[1]["image_url"]["url"] == "data:image/jpeg;base64,QUJD"
    assert parts[2]["image_url"]["url"] == "https://x/a.png"
    assert parts[3] == {"type": "video_url", "video_url": {"url": "https://x/v.mp4"}}
    assert body["modalities"] == ["image", "text", "video"]
    assert body["stream"] is True


@pytest.mark.asyncio
async def test_stream_collects_images_and_text():
    recorder = Recorder(httpx.Response(
        200,
        headers={"x-request-id": "req-1"},
        content=sse_body(
            _chunk(content="Here you go"),
            _chunk(images=[{"type": "image_url", "image_url": {"url": "data:image/png;base64,QUJD"}}]),
            _chunk(images=[{"type": "image_url", "image_url": {"url": "data:image/png;base64,QUJD"}}]),
            json.dumps({"choices": [{"delta": {}, "finish_reason": "stop"}]}),
        ),
    ))
    adapter = _adapter(recorder, base_url="https://proxy.local/v1")

    result = await adapter.generate_content(GenerationRequest(prompt="a cat"), make_model("img-model"))

    assert result.urls() == ["data:image/png;base64,QUJD"]
    assert result.outputs[0].mime_type == "image/png"
    assert result.text == "Here you go"
    assert result.request_id == "req-1"
    sent = recorder.requests[0]
    assert str(sent.url) == "https://proxy.local/v1/chat/completions"
    assert sent.headers["authorization"] == "Bearer sk-test"


@pytest.mark.asyncio
async def test_text_only_chunks_fail_with_joined_text():
    recorder = Recorder(httpx.Response(200, content=sse_body(
        _chunk(content="one"), _chunk(content="two"), _chunk(content="three"),
    )))

    with pytest.raises(NoImageInResponseError) as exc_info:
        await _adapter(recorder).generate_content(GenerationRequest(prompt="x"), make_model())

    assert exc_info.value.text == "one\ntwo\nthree"


@pytest.mark.asyncio
async def test_url_in_text_is_not_an_image():
    recorder = Recorder(httpx.Response(200, content=sse_body(
        _chunk(content="I cannot draw that, see https://openrouter.ai/docs for policy"),
    )))

    with pytest.raises(NoImageInResponseError) as exc_info:
        await _adapter(recorder).generate_content(GenerationRequest(prompt="x"), make_model())

    assert exc_info.value.text == "I cannot draw that, see https://openrouter.ai/docs for policy"


@pytest.mark.asyncio
async def test_url_split_across_deltas_stays_text():
    recorder = Recorder(httpx.Response(200, content=sse_body(
        _chunk(content="https://exa"), _chunk(content="mple.com/cat.png"),
    )))

    with pytest.raises(NoImageInResponseError) as exc_info:
        await _adapter(recorder).generate_content(GenerationRequest(prompt="x"), make_model())

    assert exc_info.value.text == "https://exa\nmple.com/cat.png"


@pytest.mark.asyncio
async def test_typed_image_parts_in_content_list():
    recorder = Recorder(httpx.Response(200, content=sse_body(_chunk(content=[
        {"type": "text", "text": "see https://x/not-an-image"},
        {"type": "image_url", "image_url": {"url": "https://cdn.example.com/out.png"}},
    ]))))

    result = await _adapter(recorder).generate_content(GenerationRequest(prompt="x"), make_model())

    assert result.urls() == ["https://cdn.example.com/out.png"]
    assert result.text == "see https://x/not-an-image"


@pytest.mark.asyncio
async def test_empty_stream_reports_finish_reason():
    recorder = Recorder(httpx.Response(200, content=sse_body(
        json.dumps({"choices": [{"delta": {}, "finish_reason": "content_filter"}]}),
    )))
    with pytest.raises(ProviderError, match="content_filter"):
        await _adapter(recorder).generate_content(GenerationRequest(prompt="x"), make_model())


@pytest.mark.asyncio
async def test_http_error_is_provider_error():
    recorder = Recorder(httpx.Response(429, content=b'{"error":"slow down"}'))
    with pytest.raises(ProviderError) as exc_info:
        await _adapter(recorder).generate_content(GenerationRequest(prompt="x"), make_model())
    assert exc_info.value.status_code == 429
    assert exc_info.value.retriable
