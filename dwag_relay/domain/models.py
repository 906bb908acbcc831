"""
User, tag and record domain models and schemas.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Index,
    JSON,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship
from pydantic import BaseModel

Base = declarative_base()

UNTAGGED = "untagged"

# Created for every new user, in addition to UNTAGGED
DEFAULT_TAGS = ("meme", "skit", "audio")


class User(Base):
    """SQLAlchemy model for a conversation counterpart."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    external_username = Column(String(255), nullable=False, unique=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username={self.external_username})>"


class Tag(Base):
    """SQLAlchemy model for a user-scoped category label."""

    __tablename__ = "tags"
    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_tags_user_name"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<Tag(id={self.id}, user_id={self.user_id}, name={self.name})>"


class Record(Base):
    """SQLAlchemy model for a saved media reference plus idea."""

    __tablename__ = "records"
    __table_args__ = (
        # At most one live record per (user, source)
        Index(
            "uq_records_live_source",
            "user_id",
            "source_url",
            unique=True,
            sqlite_where=text("is_deleted = 0"),
            postgresql_where=text("is_deleted = false"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    source_url = Column(String(1024), nullable=False)
    record_metadata = Column("metadata", JSON, nullable=True)
    idea = Column(String(2000), nullable=False, default="")
    tag_id = Column(Integer, ForeignKey("tags.id"), nullable=False, index=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Read after the session closes
    tag = relationship("Tag", lazy="selectin")

    def __repr__(self) -> str:
        return f"<Record(id={self.id}, source={self.source_url}, deleted={self.is_deleted})>"


# Pydantic Schemas

class TagCount(BaseModel):
    """Tag name with its number of live records."""
    id: int
    name: str
    count: int


class RecordResponse(BaseModel):
    """Schema for record response."""
    id: int
    source_url: str
    idea: str
    tag: Optional[str] = None
    metadata: Optional[dict] = None
    is_deleted: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: Record) -> "RecordResponse":
        return cls(
            id=record.id,
            source_url=record.source_url,
            idea=record.idea,
            tag=record.tag.name if record.tag is not None else None,
            metadata=record.record_metadata,
            is_deleted=record.is_deleted,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
