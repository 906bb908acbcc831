"""
Dedup ledger models.
Tracks evaluated inbound items, dispatched (media, idea) pairs and the
last successful polling cycle so restarts do not re-send anything.
"""

from datetime import datetime

from sqlalchemy import Column, String, DateTime, Integer, BigInteger, Text

from dwag_relay.domain.models import Base


class ProcessedItem(Base):
    """SQLAlchemy model for inbound items that were already evaluated."""

    __tablename__ = "processed_items"

    id = Column(Integer, primary_key=True, autoincrement=True)  # Insertion order for eviction
    item_id = Column(String(255), nullable=False, unique=True)
    processed_at = Column(DateTime, default=datetime.utcnow, index=True)

    def __repr__(self) -> str:
        return f"<ProcessedItem(id={self.item_id}, at={self.processed_at})>"


class SentPair(Base):
    """SQLAlchemy model for the append-only log of dispatched pairs."""

    __tablename__ = "sent_pairs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    fingerprint = Column(String(64), nullable=False, unique=True)
    media_ref = Column(String(1024), nullable=False)
    idea = Column(Text, nullable=False)
    sent_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<SentPair(media={self.media_ref}, at={self.sent_at})>"


class CycleState(Base):
    """Key/value row for polling cursors (e.g. the last successful cycle)."""

    __tablename__ = "cycle_state"

    key = Column(String(64), primary_key=True)
    value = Column(BigInteger, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
