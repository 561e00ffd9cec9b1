"""
Image metadata records (SQLAlchemy async).

One row per saved generation. The engine isn't connected until first use,
so importing this module won't fail if the database isn't reachable yet.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from functools import lru_cache
from typing import Optional

from sqlalchemy import DateTime, String, Text, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from . import config

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class ImageRecord(Base):
    __tablename__ = "images"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    thumbnail_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    thumb_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reference_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    collection_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    batch_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    model: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


@dataclass(frozen=True)
class NewImageRecord:
    user_id: str
    name: str
    prompt: str
    url: str
    model: str
    created_at: datetime
    thumbnail_url: Optional[str] = None
    reference_url: Optional[str] = None
    collection_id: Optional[str] = None
    batch_id: Optional[str] = None


class SqlRecordStore:
    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self._sessions = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    @classmethod
    def from_url(cls, database_url: str) -> "SqlRecordStore":
        return cls(create_async_engine(database_url, future=True, echo=False))

    async def init_models(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def create_image(self, record: NewImageRecord) -> str:
        async with self._sessions() as session:
            row = ImageRecord(id=str(uuid.uuid4()), **asdict(record))
            session.add(row)
            await session.commit()
            return row.id

    async def get_image(self, image_id: str) -> Optional[ImageRecord]:
        async with self._sessions() as session:
            return await session.get(ImageRecord, image_id)

    async def set_thumb_url(self, image_id: str, thumb_url: str) -> bool:
        async with self._sessions() as session:
            result = await session.execute(
                update(ImageRecord).where(ImageRecord.id == image_id).values(thumb_url=thumb_url)
            )
            await session.commit()
            return result.rowcount > 0

    async def dispose(self) -> None:
        await self.engine.dispose()


@lru_cache()
def get_record_store() -> SqlRecordStore:
    return SqlRecordStore.from_url(config.get_settings().database_url)
