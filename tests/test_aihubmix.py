"""AiHubMix Responses-API stream adapter and its protocol switch."""

import json

import httpx
import pytest

from conftest import Recorder, make_model, make_provider, sse_body
from genrelay.errors import NoImageInResponseError, ProviderError
from genrelay.schemas.generation import GenerationRequest
from genrelay.services.providers.aihubmix import (
    AiHubMixAdapter,
    ResponsesStreamState,
    build_responses_body,
    handle_responses_event,
)


def _events(*pairs) -> bytes:
    return "".join(f"event: {name}\ndata: {json.dumps(data)}\n\n" for name, data in pairs).encode()


def _adapter(recorder: Recorder) -> AiHubMixAdapter:
    return AiHubMixAdapter(make_provider("aihubmix"), http_client=recorder.client())


def test_build_responses_body():
    body = build_responses_body("gpt-image", "draw", ["QUJD", " "])
    content = body["input"][0]["content"]
    assert content == [
        {"type": "input_text", "text": "draw"},
        {"type": "input_image", "image_url": "data:image/jpeg;base64,QUJD"},
    ]
    assert body["tools"] == [{"type": "image_generation"}]


@pytest.mark.asyncio
async def test_fragments_stitched_per_index_lowest_first():
    recorder = Recorder(httpx.Response(200, headers={"x-request-id": "r-7"}, content=_events(
        ("response.output_text.delta", {"delta": "Drawing"}),
        ("response.output_image.begin", {"output_index": 1, "output_format": "jpeg"}),
        ("response.output_image.delta", {"output_index": 1, "delta": "QUJ"}),
        ("response.output_image.delta", {"output_index": 1, "delta": "D"}),
        ("response.output_image.begin", {"output_index": 0, "mime_type": "image/png"}),
        ("response.output_image.delta", {"output_index": 0, "delta": "WFla"}),
        ("response.completed", {"response": {"output": []}}),
    )))

    result = await _adapter(recorder).generate_content(GenerationRequest(prompt="x"), make_model("gpt-image"))

    assert result.urls() == ["data:image/png;base64,WFla", "data:image/jpeg;base64,QUJD"]
    assert result.text == "Drawing"
    assert result.request_id == "r-7"
    assert str(recorder.requests[0].url) == "https://aihubmix.com/v1/responses"


def test_partial_images_replace_previous_buffer():
    state = ResponsesStreamState()
    event = "response.image_generation_call.partial_image"
    handle_responses_event(state, event, {"output_index": 0, "partial_image_b64": "AAAA"})
    handle_responses_event(state, event, {"output_index": 0, "partial_image_b64": "QUJD"})
    assert state.images() == ["data:image/png;base64,QUJD"]


@pytest.mark.asyncio
async def test_completed_event_falls_back_to_final_output():
    recorder = Recorder(httpx.Response(200, content=_events(
        ("response.completed", {"response": {"output": [{"type": "image_generation_call", "result": "QUJD"}]}}),
    )))
    result = await _adapter(recorder).generate_content(GenerationRequest(prompt="x"), make_model())
    assert result.urls() == ["data:image/png;base64,QUJD"]


@pytest.mark.asyncio
async def test_data_url_in_text_is_used_when_no_image_events():
    recorder = Recorder(httpx.Response(200, content=_events(
        ("response.output_text.delta", {"delta": "result: data:image/png;base64,QUJD"}),
    )))
    result = await _adapter(recorder).generate_content(GenerationRequest(prompt="x"), make_model())
    assert result.urls() == ["data:image/png;base64,QUJD"]


@pytest.mark.asyncio
async def test_failure_event_raises_with_text():
    recorder = Recorder(httpx.Response(200, headers={"x-request-id": "r-1"}, content=_events(
        ("response.output_text.delta", {"delta": "working"}),
        ("response.failed", {"response": {"error": {"message": "moderation blocked"}}}),
    )))
    with pytest.raises(ProviderError, match="moderation blocked") as exc_info:
        await _adapter(recorder).generate_content(GenerationRequest(prompt="x"), make_model())
    assert exc_info.value.text == "working"
    assert exc_info.value.request_id == "r-1"


@pytest.mark.asyncio
async def test_no_image_in_stream():
    recorder = Recorder(httpx.Response(200, content=_events(
        ("response.output_text.delta", {"delta": "no can do"}),
        ("response.completed", {"response": {"output": []}}),
    )))
    with pytest.raises(NoImageInResponseError, match="did not return an image") as exc_info:
        await _adapter(recorder).generate_content(GenerationRequest(prompt="x"), make_model())
    assert exc_info.value.text == "no can do"


@pytest.mark.asyncio
async def test_gemini_protocol_switch():
    recorder = Recorder(httpx.Response(200, content=sse_body(
        json.dumps({"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": "QUJD"}}]}}]}),
    )))
    model = make_model("gemini-flash-image", settings={"protocol": "gemini"})

    result = await _adapter(recorder).generate_content(GenerationRequest(prompt="x"), model)

    assert result.urls() == ["data:image/png;base64,QUJD"]
    assert str(recorder.requests[0].url) == (
        "https://aihubmix.com/v1/gemini/v1beta/models/gemini-flash-image:streamGenerateContent?alt=sse"
    )


@pytest.mark.asyncio
async def test_openai_protocol_switch():
    recorder = Recorder(httpx.Response(200, content=sse_body(
        json.dumps({"choices": [{"delta": {"images": [{"image_url": {"url": "https://x/o.png"}}]}}]}),
    )))
    model = make_model("chat-image", settings={"protocol": "openai"})

    result = await _adapter(recorder).generate_content(GenerationRequest(prompt="x"), model)

    assert result.urls() == ["https://x/o.png"]
    assert str(recorder.requests[0].url) == "https://aihubmix.com/v1/chat/completions"
