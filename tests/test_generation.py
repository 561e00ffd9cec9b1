"""Tests for the generation invoker and the Replicate client."""

from __future__ import annotations

import json
from dataclasses import replace

import httpx
import pytest

from batchgen_service.generation import (
    PREDICTION_TIMEOUT_MESSAGE,
    BackendResult,
    EmptyInput,
    Failed,
    GenerationInvoker,
    Ok,
    ReplicateBackend,
)
from tests.stubs import BASE_IMAGE, StubBackend, make_jobs

API = "https://api.test/v1"


async def _no_sleep(_seconds: float) -> None:
    return None


def _backend(handler) -> ReplicateBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ReplicateBackend("tok", base_url=API, max_attempts=5, client=client, sleep=_no_sleep)


# ------------------------------------------------------------------------------
# Invoker
# ------------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_blank_prompt_skips_backend():
    backend = StubBackend()
    (job,) = make_jobs({"id": "a", "prompt": " "})
    outcome = await GenerationInvoker(backend).invoke(job)
    assert outcome == EmptyInput()
    assert backend.calls == []


@pytest.mark.asyncio
async def test_success_maps_to_ok():
    backend = StubBackend()
    (job,) = make_jobs({"id": "a", "prompt": "cozy room"})
    outcome = await GenerationInvoker(backend).invoke(job)
    assert outcome == Ok(output_url="https://img.example/cozy-room.png")
    assert backend.calls == [{"prompt": "cozy room", "image_url": BASE_IMAGE, "model": "test-model"}]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "result,message",
    [
        (BackendResult(status="error", message="quota exceeded"), "quota exceeded"),
        (BackendResult(status="error"), "Unknown error"),
        (BackendResult(status="ok", url=None), "Unknown error"),
        (TimeoutError("read timed out"), "read timed out"),
        (RuntimeError(), "Unknown error"),
    ],
)
async def test_failures_map_to_failed(result, message):
    backend = StubBackend(results={"p": result})
    (job,) = make_jobs({"id": "a", "prompt": "p"})
    outcome = await GenerationInvoker(backend).invoke(job)
    assert outcome == Failed(message=message)


@pytest.mark.asyncio
async def test_batch_base_image_used_when_job_has_none():
    backend = StubBackend()
    (job,) = make_jobs({"id": "a", "prompt": "p"})
    job = replace(job, reference_image_url=None)
    await GenerationInvoker(backend, base_image_url="https://base/other.png").invoke(job)
    assert backend.calls[0]["image_url"] == "https://base/other.png"


# ------------------------------------------------------------------------------
# Replicate client
# ------------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_replicate_polls_until_succeeded():
    requests_seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests_seen.append(request)
        if request.method == "POST":
            return httpx.Response(201, json={"status": "starting", "urls": {"get": f"{API}/predictions/p1"}})
        polls = sum(1 for r in requests_seen if r.method == "GET")
        if polls < 2:
            return httpx.Response(200, json={"status": "processing"})
        return httpx.Response(200, json={"status": "succeeded", "output": ["https://out.test/1.png"]})

    result = await _backend(handler).generate("a cabin", "https://ref/1.png", "owner/model")

    assert result == BackendResult(status="ok", url="https://out.test/1.png")
    create = requests_seen[0]
    assert create.headers["Authorization"] == "Token tok"
    body = json.loads(create.content)
    assert body["version"] == "owner/model"
    assert body["input"]["prompt"] == "a cabin"
    assert body["input"]["image"] == "https://ref/1.png"
    assert body["input"]["image_input"] == ["https://ref/1.png"]
    assert len(requests_seen) == 3


@pytest.mark.asyncio
async def test_replicate_gives_up_after_max_attempts():
    polls = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(201, json={"status": "starting", "urls": {"get": f"{API}/predictions/p1"}})
        polls.append(request)
        return httpx.Response(200, json={"status": "processing"})

    result = await _backend(handler).generate("a cabin", None, "owner/model")

    assert result == BackendResult(status="error", message=PREDICTION_TIMEOUT_MESSAGE)
    assert len(polls) == 5


@pytest.mark.asyncio
async def test_replicate_create_error_detail():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"detail": "Invalid version"})

    result = await _backend(handler).generate("p", None, "bad")
    assert result == BackendResult(status="error", message="Invalid version")


@pytest.mark.asyncio
async def test_replicate_missing_poll_url():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(201, json={"status": "starting"})

    result = await _backend(handler).generate("p", None, "m")
    assert result.message == "Replicate did not return a polling URL."


@pytest.mark.asyncio
async def test_replicate_failed_prediction():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(201, json={"status": "starting", "urls": {"get": f"{API}/predictions/p1"}})
        return httpx.Response(200, json={"status": "failed", "error": "NSFW content detected"})

    result = await _backend(handler).generate("p", None, "m")
    assert result == BackendResult(status="error", message="NSFW content detected")


@pytest.mark.asyncio
async def test_replicate_succeeded_without_output():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(201, json={"status": "succeeded", "output": None, "urls": {"get": f"{API}/p"}})

    result = await _backend(handler).generate("p", None, "m")
    assert result.message == "Replicate succeeded but no image URL was returned."


@pytest.mark.asyncio
async def test_replicate_reads_object_output():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            201,
            json={"status": "succeeded", "output": {"images": ["https://out.test/a.webp"]}, "urls": {"get": f"{API}/p"}},
        )

    result = await _backend(handler).generate("p", None, "m")
    assert result.url == "https://out.test/a.webp"


def test_request_body_without_reference_image():
    body = ReplicateBackend.build_request_body("p", None, "m")
    assert body == {"version": "m", "input": {"prompt": "p"}}
