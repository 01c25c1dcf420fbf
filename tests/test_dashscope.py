"""DashScope synchronous multimodal generation and async video tasks."""

import json

import httpx
import pytest

from conftest import Recorder, make_model, make_provider
from genrelay.errors import InvalidRequestError, ProviderError, TaskFailedError
from genrelay.schemas.generation import GenerationRequest
from genrelay.services.providers.dashscope import (
    DashScopeAdapter,
    is_video_model,
    normalize_duration,
    normalize_resolution,
    use_keyframe,
)


def _adapter(recorder: Recorder) -> DashScopeAdapter:
    return DashScopeAdapter(make_provider("dashscope"), http_client=recorder.client())


def test_video_model_detection():
    assert is_video_model(make_model("wan2.2-i2v-plus"))
    assert is_video_model(make_model("wanx-kf2v"))
    assert is_video_model(make_model("anything", output_modalities=["video"]))
    assert is_video_model(make_model("anything", input_modalities=["Video"]))
    assert not is_video_model(make_model("qwen-image-edit"))


def test_keyframe_selection():
    assert use_keyframe("wan2.1-kf2v-plus", 1)
    assert use_keyframe("wan2.2-i2v", 2)
    assert not use_keyframe("wan2.2-i2v", 1)


def test_normalize_resolution_and_duration():
    model = make_model("v", supported_sizes=["480P", "1080P"], default_size="1080p", supported_durations=[5, 10])
    assert normalize_resolution(model, "480p") == "480P"
    assert normalize_resolution(model, "4K") == "1080P"
    assert normalize_resolution(make_model("v"), "") == "720P"
    assert normalize_duration(model, 10) == 10
    assert normalize_duration(model, 7) == 5
    assert normalize_duration(make_model("v"), 0) == 5


@pytest.mark.asyncio
async def test_sync_generation_collects_assets():
    recorder = Recorder(httpx.Response(200, json={
        "request_id": "rq-1",
        "output": {"choices": [{"message": {"content": [
            {"image": "https://oss.example.com/1.png"},
            {"text": "edited"},
        ]}}]},
    }))
    request = GenerationRequest(prompt="make it blue", input_media=[{"content": "QUJD"}])

    result = await _adapter(recorder).generate_content(request, make_model("qwen-image-edit"))

    assert result.urls() == ["https://oss.example.com/1.png"]
    assert result.text == "edited"
    assert result.request_id == "rq-1"

    sent = recorder.requests[0]
    assert str(sent.url) == "https://dashscope.aliyuncs.com/api/v1/services/aigc/multimodal-generation/generation"
    body = json.loads(sent.content)
    content = body["input"]["messages"][0]["content"]
    assert content == [{"image": "data:image/jpeg;base64,QUJD"}, {"text": "make it blue"}]
    assert body["parameters"] == {"watermark": False}


@pytest.mark.asyncio
async def test_sync_generation_parses_string_content():
    recorder = Recorder(httpx.Response(200, json={
        "output": {"choices": [{"message": {"content": "Done: data:image/png;base64,QUJD enjoy"}}]},
    }))

    result = await _adapter(recorder).generate_content(GenerationRequest(prompt="x"), make_model("qwen-image"))

    assert result.urls() == ["data:image/png;base64,QUJD"]
    assert result.text == "Done:  enjoy"


@pytest.mark.asyncio
async def test_sync_generation_api_error_code():
    recorder = Recorder(httpx.Response(200, json={"code": "InvalidParameter", "message": "bad size"}))
    with pytest.raises(ProviderError, match="bad size"):
        await _adapter(recorder).generate_content(GenerationRequest(prompt="x"), make_model("qwen-image"))


@pytest.mark.asyncio
async def test_video_task_is_polled_until_succeeded(fast_polls):
    recorder = Recorder(
        httpx.Response(200, json={"request_id": "rq-v", "output": {"task_id": "task-1", "task_status": "PENDING"}}),
        httpx.Response(200, json={"output": {"task_id": "task-1", "task_status": "RUNNING"}}),
        httpx.Response(200, json={"output": {"task_id": "task-1", "task_status": "SUCCEEDED",
                                             "video_url": "https://oss.example.com/v.mp4"}}),
    )
    request = GenerationRequest(prompt="fly", input_media=[{"content": "QUJD"}], output={"duration": 10})
    model = make_model("wan2.2-i2v-plus", supported_durations=[5, 10])

    result = await _adapter(recorder).generate_content(request, model)

    assert result.urls() == ["https://oss.example.com/v.mp4"]
    assert result.outputs[0].type == "video"
    assert result.task_id == "task-1"
    assert result.request_id == "rq-v"

    submit = recorder.requests[0]
    assert submit.headers["x-dashscope-async"] == "enable"
    assert str(submit.url).endswith("/services/aigc/video-generation/video-synthesis")
    body = json.loads(submit.content)
    assert body["input"]["img_url"] == "data:image/jpeg;base64,QUJD"
    assert body["parameters"]["duration"] == 10
    assert body["parameters"]["resolution"] == "720P"
    assert str(recorder.requests[1].url) == "https://dashscope.aliyuncs.com/api/v1/tasks/task-1"


@pytest.mark.asyncio
async def test_video_task_failure_carries_task_id(fast_polls):
    recorder = Recorder(
        httpx.Response(200, json={"output": {"task_id": "task-2", "task_status": "PENDING"}}),
        httpx.Response(200, json={"output": {"task_status": "FAILED", "message": "image rejected"}}),
    )
    request = GenerationRequest(prompt="fly", input_media=[{"content": "QUJD"}, {"content": "WFla"}])

    with pytest.raises(TaskFailedError, match="image rejected") as exc_info:
        await _adapter(recorder).generate_content(request, make_model("wan2.1-kf2v-plus"))

    assert exc_info.value.task_id == "task-2"
    body = json.loads(recorder.requests[0].content)
    assert body["input"]["first_frame_url"] == "data:image/jpeg;base64,QUJD"
    assert body["input"]["last_frame_url"] == "data:image/jpeg;base64,WFla"


def test_video_model_requires_reference_image():
    adapter = DashScopeAdapter(make_provider("dashscope"))
    with pytest.raises(InvalidRequestError):
        adapter.validate(GenerationRequest(prompt="x"), make_model("wan2.2-i2v-plus"))
