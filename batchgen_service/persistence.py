"""
Persistence sidecar: runs after a successful generation.

Steps, in order:
 1. copy the backend output into R2 (collection runs, when storage is
    configured; otherwise the backend URL is recorded),
 2. write the image metadata record,
 3. request a thumbnail without waiting for it.

Failures in 1 or 2 raise `PersistenceError`; the orchestrator decides what
that means for the job. Step 3 can never fail the job.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

from .errors import PersistenceError
from .generation import Ok
from .jobs import Job
from .records import NewImageRecord
from .storage import R2Storage
from .thumbnails import ThumbnailRequester

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PersistContext:
    user_id: str
    batch_id: str
    collection_id: Optional[str] = None
    collection_name: Optional[str] = None
    reference_url: Optional[str] = None
    # When set, outputs are copied into storage under this key prefix;
    # otherwise the backend URL is recorded as-is.
    storage_prefix: Optional[str] = None


class RecordWriter(Protocol):
    async def create_image(self, record: NewImageRecord) -> str:
        ...


def transform_thumbnail_url(url: str) -> str:
    return f"{url}?width=512&quality=80&format=webp"


class PersistenceSidecar:
    def __init__(
        self,
        records: RecordWriter,
        storage: Optional[R2Storage] = None,
        thumbnails: Optional[ThumbnailRequester] = None,
    ) -> None:
        self.records = records
        self.storage = storage
        self.thumbnails = thumbnails

    async def _store_output(self, url: str, prefix: str) -> str:
        try:
            return await asyncio.to_thread(self.storage.copy_from_url, url, prefix)
        except PersistenceError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise PersistenceError(f"Failed to store output: {exc}") from exc

    async def persist(self, job: Job, outcome: Ok, context: PersistContext) -> Ok:
        url = outcome.output_url
        if context.storage_prefix and self.storage is not None:
            url = await self._store_output(url, context.storage_prefix)
        elif context.storage_prefix:
            logger.debug("No storage configured; recording backend URL for template=%s", job.id)

        record = NewImageRecord(
            user_id=context.user_id,
            name=f"{context.collection_name or 'Batch'} - {job.display_name}",
            prompt=job.prompt,
            url=url,
            thumbnail_url=transform_thumbnail_url(url),
            reference_url=context.reference_url,
            collection_id=context.collection_id,
            batch_id=context.batch_id,
            model=job.model,
            created_at=datetime.now(timezone.utc),
        )
        try:
            record_id = await self.records.create_image(record)
        except Exception as exc:  # noqa: BLE001
            raise PersistenceError(f"Failed to save image record: {exc}") from exc
        logger.info("Saved image record %s for template=%s batch=%s", record_id, job.id, context.batch_id)

        if self.thumbnails is not None:
            try:
                self.thumbnails.request(url, record_id)
            except Exception:  # noqa: BLE001
                logger.exception("Could not schedule thumbnail for image=%s", record_id)

        return outcome.saved(record_id, url)
