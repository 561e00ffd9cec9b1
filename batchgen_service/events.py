"""
Progress events and the NDJSON emitter.

The orchestrator produces one internal event model; a wire format adapter
decides how (and whether) each event appears on the stream for a given
entry point. Lines are queued as they are produced and drained by the
HTTP response, one JSON object per line.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Optional, Protocol, Tuple, Union

logger = logging.getLogger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"

STATUS_GENERATING = "generating"
STATUS_DONE = "done"
STATUS_ERROR = "error"


@dataclass(frozen=True)
class JobProgress:
    job_id: str
    display_name: str
    index: int
    status: str
    current: int
    total: int
    output_url: Optional[str] = None
    error: Optional[str] = None
    http_status: Optional[int] = None


@dataclass(frozen=True)
class ResultRecord:
    template_id: str
    template_name: str
    image_url: str
    prompt: str
    model: str
    saved: bool = False
    image_record_id: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "templateId": self.template_id,
            "templateName": self.template_name,
            "imageUrl": self.image_url,
            "prompt": self.prompt,
            "model": self.model,
            "saved": self.saved,
        }
        if self.image_record_id:
            payload["imageRecordId"] = self.image_record_id
        return payload


@dataclass(frozen=True)
class BatchStarted:
    total: int


@dataclass(frozen=True)
class BatchFinished:
    completed: int
    succeeded: int
    failed: int
    results: Tuple[ResultRecord, ...] = field(default_factory=tuple)


BatchEvent = Union[JobProgress, BatchStarted, BatchFinished]


class WireFormat(Protocol):
    def encode(self, event: BatchEvent) -> Optional[Dict[str, Any]]:
        """Return the wire object for `event`, or None to leave it off the stream."""
        ...


class PreviewWireFormat:
    """Wire shape used by the preview entry point: `progress` events then `complete`."""

    def encode(self, event: BatchEvent) -> Optional[Dict[str, Any]]:
        if isinstance(event, BatchStarted):
            return None
        if isinstance(event, BatchFinished):
            return {"type": "complete", "results": [r.to_wire() for r in event.results]}

        payload: Dict[str, Any] = {
            "type": "progress",
            "templateId": event.job_id,
            "templateName": event.display_name,
            "status": event.status,
            "current": event.current,
            "total": event.total,
        }
        if event.status == STATUS_DONE:
            payload["imageUrl"] = event.output_url
        elif event.status == STATUS_ERROR:
            payload["error"] = event.error
        return payload


class CollectionWireFormat:
    """
    Wire shape used by the collection entry point.

    Progress is indexed by submission position and reports `ok`/`error`;
    `generating` transitions are not part of this shape.
    """

    def __init__(self, collection_id: Optional[str] = None) -> None:
        self.collection_id = collection_id

    def encode(self, event: BatchEvent) -> Optional[Dict[str, Any]]:
        if isinstance(event, BatchStarted):
            return {"type": "start", "collectionId": self.collection_id, "total": event.total}
        if isinstance(event, BatchFinished):
            return {
                "type": "done",
                "collectionId": self.collection_id,
                "completed": event.completed,
                "succeeded": event.succeeded,
                "failed": event.failed,
            }
        if event.status == STATUS_GENERATING:
            return None

        payload: Dict[str, Any] = {
            "type": "progress",
            "index": event.index,
            "collectionId": self.collection_id,
            "templateId": event.job_id,
            "status": "ok" if event.status == STATUS_DONE else STATUS_ERROR,
            "url": event.output_url,
        }
        if event.status == STATUS_ERROR:
            payload["error"] = event.error
            if event.http_status is not None:
                payload["httpStatus"] = event.http_status
        return payload


def encode_line(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":")) + "\n"


_CLOSED = object()


class NdjsonEmitter:
    """Append-only NDJSON stream fed by `emit` and drained by `lines`."""

    def __init__(self, wire_format: WireFormat) -> None:
        self.wire_format = wire_format
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self.closed = False
        self.lines_written = 0

    def emit(self, event: BatchEvent) -> None:
        if self.closed:
            raise RuntimeError("Cannot emit on a closed stream")
        payload = self.wire_format.encode(event)
        if payload is None:
            return
        self._queue.put_nowait(encode_line(payload))
        self.lines_written += 1

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(_CLOSED)

    async def lines(self) -> AsyncIterator[str]:
        while True:
            line = await self._queue.get()
            if line is _CLOSED:
                return
            yield line
