"""
Client helpers for consuming the NDJSON progress stream.

`NdjsonDecoder` buffers a trailing partial line until its newline arrives
and skips lines that are not valid JSON objects instead of aborting.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

import requests

logger = logging.getLogger(__name__)


class NdjsonDecoder:
    def __init__(self) -> None:
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.skipped = 0

    def feed(self, chunk: Union[str, bytes]) -> List[Dict[str, Any]]:
        if isinstance(chunk, bytes):
            # A multibyte character may be split across network chunks.
            chunk = self._utf8.decode(chunk)
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")

        events: List[Dict[str, Any]] = []
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                self.skipped += 1
                logger.debug("Skipping unparseable line: %r", line[:200])
                continue
            if isinstance(event, dict):
                events.append(event)
            else:
                self.skipped += 1
        return events

    def flush(self) -> List[Dict[str, Any]]:
        """Decode any bytes held back by the UTF-8 decoder at end of stream."""
        tail = self._utf8.decode(b"", final=True)
        return self.feed(tail) if tail else []

    @property
    def pending(self) -> str:
        """Bytes received after the last newline (an incomplete event)."""
        return self._buffer


def iter_events(chunks: Iterable[Union[str, bytes]]) -> Iterator[Dict[str, Any]]:
    decoder = NdjsonDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)
    yield from decoder.flush()
    if decoder.pending.strip():
        logger.warning("Stream ended with an incomplete line; discarding it")


def stream_batch(
    base_url: str,
    payload: Dict[str, Any],
    *,
    token: str,
    preview: bool = True,
    timeout: Optional[float] = None,
) -> Iterator[Dict[str, Any]]:
    """POST a batch and yield its progress events as they arrive."""
    path = "/generate/collection-preview" if preview else "/generate/collection"
    resp = requests.post(
        base_url.rstrip("/") + path,
        json=payload,
        headers={"Authorization": f"Bearer {token}"},
        stream=True,
        timeout=timeout,
    )
    with resp:
        if resp.status_code != 200:
            try:
                detail = resp.json().get("error")
            except ValueError:
                detail = resp.text
            raise RuntimeError(f"Batch request failed ({resp.status_code}): {detail}")
        yield from iter_events(resp.iter_content(chunk_size=None))
