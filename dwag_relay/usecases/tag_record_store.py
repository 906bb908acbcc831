"""
Tag and record store for all user, tag and record operations.
"""

import asyncio
import functools
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update, delete, func, and_
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dwag_relay.domain.errors import StorageUnavailable
from dwag_relay.domain.models import (
    DEFAULT_TAGS,
    UNTAGGED,
    Record,
    Tag,
    TagCount,
    User,
)
from dwag_relay.infrastructure.database import DatabaseSession

logger = logging.getLogger(__name__)


def normalize_tag_name(name: Optional[str]) -> str:
    """Lower-case a tag name, falling back to the untagged tag."""
    normalized = (name or "").strip().lower()
    return normalized or UNTAGGED


def _storage_call(method):
    """Translate driver connectivity failures into StorageUnavailable."""

    @functools.wraps(method)
    async def wrapper(*args, **kwargs):
        try:
            return await method(*args, **kwargs)
        except (OperationalError, InterfaceError) as e:
            logger.error(f"Storage unavailable during {method.__name__}: {e}")
            raise StorageUnavailable(str(e)) from e

    return wrapper


class TagRecordStore:
    """Store for users, their tags and their saved records.

    Every public method runs in its own session so callers on concurrent
    conversation workers never share one. Mutating units of work are
    serialized by a store-wide lock because SQLite allows a single writer.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory
        self._write_lock = asyncio.Lock()

    def _session(self) -> DatabaseSession:
        return DatabaseSession(self.session_factory)

    # Users

    @_storage_call
    async def find_or_create_user(self, external_username: str) -> User:
        """
        Return the user for an external username, creating it with its
        default tags on first sight.

        Args:
            external_username: Stable username of the conversation counterpart

        Returns:
            The existing or newly created User
        """
        username = external_username.strip()

        async with self._session() as session:
            user = await self._get_user(session, username)
            if user:
                return user

        async with self._write_lock:
            async with self._session() as session:
                user = await self._get_user(session, username)
                if user:
                    return user

                user = User(external_username=username)
                session.add(user)
                try:
                    await session.flush()
                    session.add_all(
                        [Tag(user_id=user.id, name=name) for name in (*DEFAULT_TAGS, UNTAGGED)]
                    )
                    await session.commit()
                except IntegrityError:
                    # Another writer created the same username first
                    await session.rollback()
                    existing = await self._get_user(session, username)
                    if existing is None:
                        raise
                    return existing

                logger.info(f"Created new user: {username}")
                return user

    @_storage_call
    async def get_user(self, external_username: str) -> Optional[User]:
        """Look up a user without creating it."""
        async with self._session() as session:
            return await self._get_user(session, external_username.strip())

    # Tags

    @_storage_call
    async def find_or_create_tag(self, user_id: int, name: Optional[str] = None) -> Tag:
        """Return the user's tag with this name, creating it if needed."""
        tag_name = normalize_tag_name(name)

        async with self._session() as session:
            tag = await self._get_tag(session, user_id, tag_name)
            if tag:
                return tag

        async with self._write_lock:
            async with self._session() as session:
                tag = await self._find_or_create_tag(session, user_id, tag_name)
                await session.commit()
                return tag

    @_storage_call
    async def get_tag_by_name(self, user_id: int, name: str) -> Optional[Tag]:
        """Look up a tag by case-insensitive name."""
        async with self._session() as session:
            return await self._get_tag(session, user_id, normalize_tag_name(name))

    @_storage_call
    async def list_tags(self, user_id: int) -> List[Tag]:
        """All tags of a user, alphabetically."""
        async with self._session() as session:
            result = await session.execute(
                select(Tag).where(Tag.user_id == user_id).order_by(Tag.name)
            )
            return list(result.scalars().all())

    @_storage_call
    async def list_tags_with_counts(self, user_id: int) -> List[TagCount]:
        """All tags of a user with their number of live records."""
        async with self._session() as session:
            result = await session.execute(
                select(Tag.id, Tag.name, func.count(Record.id))
                .outerjoin(
                    Record,
                    and_(Record.tag_id == Tag.id, Record.is_deleted == False),  # noqa: E712
                )
                .where(Tag.user_id == user_id)
                .group_by(Tag.id, Tag.name)
                .order_by(Tag.name)
            )
            return [
                TagCount(id=tag_id, name=name, count=count)
                for tag_id, name, count in result.all()
            ]

    @_storage_call
    async def delete_tag(self, user_id: int, tag_id: int) -> bool:
        """
        Delete a tag, moving its records to the untagged tag first.

        Args:
            user_id: Owner of the tag
            tag_id: Tag to delete

        Returns:
            False when the tag does not exist or is the untagged tag
        """
        async with self._write_lock:
            async with self._session() as session:
                result = await session.execute(
                    select(Tag).where(Tag.id == tag_id, Tag.user_id == user_id)
                )
                tag = result.scalar_one_or_none()
                if tag is None:
                    logger.warning(f"Tag {tag_id} not found for user {user_id}")
                    return False
                if tag.name == UNTAGGED:
                    logger.warning(f"Refusing to delete the {UNTAGGED} tag for user {user_id}")
                    return False

                untagged = await self._find_or_create_tag(session, user_id, UNTAGGED)

                await session.execute(
                    update(Record)
                    .where(Record.user_id == user_id, Record.tag_id == tag_id)
                    .values(tag_id=untagged.id, updated_at=datetime.utcnow())
                )
                await session.execute(
                    delete(Tag).where(Tag.id == tag_id, Tag.user_id == user_id)
                )
                await session.commit()

        logger.info(f"Deleted tag {tag_id} for user {user_id}")
        return True

    # Records

    @_storage_call
    async def save_record(
        self,
        user_id: int,
        source_url: str,
        idea: str,
        tag_name: Optional[str] = None,
        metadata: Optional[dict] = None
    ) -> Record:
        """
        Save a record, updating the live record for the same source if any.

        Args:
            user_id: Owner of the record
            source_url: Paired media reference
            idea: Free text supplied with the command
            tag_name: Tag to file the record under (defaults to untagged)
            metadata: Opaque provider metadata

        Returns:
            The created or updated Record
        """
        async with self._write_lock:
            async with self._session() as session:
                tag = await self._find_or_create_tag(session, user_id, normalize_tag_name(tag_name))

                result = await session.execute(
                    select(Record).where(
                        Record.user_id == user_id,
                        Record.source_url == source_url,
                        Record.is_deleted == False,  # noqa: E712
                    )
                )
                record = result.scalar_one_or_none()

                if record:
                    record.idea = idea
                    record.tag_id = tag.id
                    if metadata:
                        record.record_metadata = metadata
                    record.updated_at = datetime.utcnow()
                    action = "Updated existing"
                else:
                    record = Record(
                        user_id=user_id,
                        source_url=source_url,
                        record_metadata=metadata,
                        idea=idea,
                        tag_id=tag.id,
                        is_deleted=False,
                    )
                    session.add(record)
                    action = "Saved new"

                record.tag = tag
                await session.commit()

        logger.info(f"{action} record {record.id} for user {user_id}")
        return record

    @_storage_call
    async def get_record(
        self,
        user_id: int,
        record_id: int,
        include_deleted: bool = False
    ) -> Optional[Record]:
        """Fetch one record by id; soft-deleted rows only when asked for."""
        async with self._session() as session:
            query = select(Record).where(Record.id == record_id, Record.user_id == user_id)
            if not include_deleted:
                query = query.where(Record.is_deleted == False)  # noqa: E712
            result = await session.execute(query)
            return result.scalar_one_or_none()

    @_storage_call
    async def retag_record(self, user_id: int, record_id: int, tag_name: str) -> bool:
        """Move a live record to another tag. False when no such record."""
        async with self._write_lock:
            async with self._session() as session:
                record = await self._get_live_record(session, user_id, record_id)
                if record is None:
                    logger.warning(f"Record {record_id} not found for user {user_id}")
                    return False

                # Resolved inside this transaction so the tag cannot vanish underneath
                tag = await self._find_or_create_tag(session, user_id, normalize_tag_name(tag_name))
                record.tag_id = tag.id
                record.tag = tag
                record.updated_at = datetime.utcnow()
                await session.commit()

        logger.info(f"Updated record {record_id} tag to {tag.name}")
        return True

    @_storage_call
    async def soft_delete_record(self, user_id: int, record_id: int) -> bool:
        """Mark a live record deleted. False when no such record."""
        async with self._write_lock:
            async with self._session() as session:
                record = await self._get_live_record(session, user_id, record_id)
                if record is None:
                    logger.warning(f"Record {record_id} not found for user {user_id}")
                    return False

                record.is_deleted = True
                record.updated_at = datetime.utcnow()
                await session.commit()

        logger.info(f"Soft deleted record {record_id}")
        return True

    @_storage_call
    async def list_by_tag(self, user_id: int, tag_name: str) -> List[Record]:
        """Live records under a tag, newest first. Empty for an unknown tag."""
        async with self._session() as session:
            tag = await self._get_tag(session, user_id, normalize_tag_name(tag_name))
            if tag is None:
                return []

            result = await session.execute(
                select(Record)
                .where(
                    Record.user_id == user_id,
                    Record.tag_id == tag.id,
                    Record.is_deleted == False,  # noqa: E712
                )
                .order_by(Record.created_at.desc(), Record.id.desc())
            )
            return list(result.scalars().all())

    @_storage_call
    async def list_recent(self, user_id: int, limit: int = 10) -> List[Record]:
        """Most recent live records."""
        async with self._session() as session:
            result = await session.execute(
                select(Record)
                .where(Record.user_id == user_id, Record.is_deleted == False)  # noqa: E712
                .order_by(Record.created_at.desc(), Record.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    @_storage_call
    async def search_records(self, user_id: int, term: str) -> List[Record]:
        """Live records whose idea contains the term, case-insensitively."""
        term = (term or "").strip()
        if not term:
            return []

        async with self._session() as session:
            result = await session.execute(
                select(Record)
                .where(
                    Record.user_id == user_id,
                    Record.is_deleted == False,  # noqa: E712
                    func.lower(Record.idea).contains(term.lower(), autoescape=True),
                )
                .order_by(Record.created_at.desc(), Record.id.desc())
            )
            return list(result.scalars().all())

    # Helpers

    async def _get_user(self, session: AsyncSession, username: str) -> Optional[User]:
        result = await session.execute(
            select(User).where(User.external_username == username)
        )
        return result.scalar_one_or_none()

    async def _get_tag(self, session: AsyncSession, user_id: int, name: str) -> Optional[Tag]:
        result = await session.execute(
            select(Tag).where(Tag.user_id == user_id, Tag.name == name)
        )
        return result.scalar_one_or_none()

    async def _find_or_create_tag(self, session: AsyncSession, user_id: int, name: str) -> Tag:
        tag = await self._get_tag(session, user_id, name)
        if tag:
            return tag

        tag = Tag(user_id=user_id, name=name)
        session.add(tag)
        await session.flush()
        logger.info(f"Created new tag: {name} for user {user_id}")
        return tag

    async def _get_live_record(
        self,
        session: AsyncSession,
        user_id: int,
        record_id: int
    ) -> Optional[Record]:
        result = await session.execute(
            select(Record).where(
                Record.id == record_id,
                Record.user_id == user_id,
                Record.is_deleted == False,  # noqa: E712
            )
        )
        return result.scalar_one_or_none()
