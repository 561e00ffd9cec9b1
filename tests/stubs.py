"""Test doubles for the generation backend and persistence collaborators."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple

from batchgen_service.events import BatchFinished, NdjsonEmitter, PreviewWireFormat, WireFormat
from batchgen_service.generation import BackendResult
from batchgen_service.jobs import BatchRun, Job, normalize_templates
from batchgen_service.records import NewImageRecord

BASE_IMAGE = "https://base.example/room.png"


class StubBackend:
    """Deterministic backend that records calls and observed parallelism."""

    def __init__(self, results: Optional[Dict[str, Any]] = None, delay: float = 0.01) -> None:
        self.results = results or {}
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self.in_flight = 0
        self.peak = 0

    async def generate(self, prompt: str, image_url: Optional[str], model: str) -> BackendResult:
        self.calls.append({"prompt": prompt, "image_url": image_url, "model": model})
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            result = self.results.get(prompt)
            if isinstance(result, Exception):
                raise result
            if result is None:
                slug = prompt.replace(" ", "-")
                return BackendResult(status="ok", url=f"https://img.example/{slug}.png")
            return result
        finally:
            self.in_flight -= 1


class FakeRecordStore:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.records: List[NewImageRecord] = []

    async def create_image(self, record: NewImageRecord) -> str:
        if self.fail:
            raise RuntimeError("database is down")
        self.records.append(record)
        return f"rec-{len(self.records)}"


class FakeStorage:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.copies: List[Tuple[str, str]] = []

    def copy_from_url(self, source_url: str, key_prefix: str) -> str:
        if self.fail:
            raise ConnectionError("bucket unreachable")
        self.copies.append((source_url, key_prefix))
        return f"https://cdn.example/{key_prefix}/{len(self.copies)}.png"


class RecordingThumbnails:
    def __init__(self) -> None:
        self.requests: List[Tuple[str, str]] = []

    def request(self, image_url: str, image_id: str) -> None:
        self.requests.append((image_url, image_id))


def make_jobs(*templates: Dict[str, Any], model: str = "test-model") -> List[Job]:
    return normalize_templates(list(templates), default_model=model, base_image_url=BASE_IMAGE)


async def run_batch(
    orchestrator, jobs: List[Job], wire_format: Optional[WireFormat] = None
) -> Tuple[BatchFinished, List[Dict[str, Any]]]:
    emitter = NdjsonEmitter(wire_format or PreviewWireFormat())
    finished = await orchestrator.run(BatchRun(jobs=jobs), emitter)
    lines = [line async for line in emitter.lines()]
    assert all(line.endswith("\n") for line in lines)
    return finished, [json.loads(line) for line in lines]
