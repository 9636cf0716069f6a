"""
Database model definitions
SQLAlchemy 2.0 declarative mapping
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models"""

    pass


class CacheInvalidationDB(Base):
    """Durable cache invalidation queue.

    Rows are written by any process that changes cached data and consumed by
    every process's invalidation poller. The schema is owned by migrations;
    the application only reads and updates it.
    """

    __tablename__ = "cache_invalidation"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cache_key: Mapped[str] = mapped_column(Text, nullable=False)
    resource: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.now, nullable=False
    )

    __table_args__ = (Index("idx_cache_invalidation_processed", "processed", "id"),)

    def __repr__(self) -> str:
        return f"<CacheInvalidation(id={self.id}, key={self.cache_key[:50]})>"
