"""
Command service turning parsed commands into reply messages.
"""

import logging
from typing import List

from dwag_relay.domain.commands import (
    Command,
    DeleteCommand,
    ShowCommand,
    TagCommand,
    UnknownCommand,
    UsageError,
)
from dwag_relay.domain.errors import StorageUnavailable
from dwag_relay.domain.models import Record, TagCount, User
from dwag_relay.parsing.command_parser import DEFAULT_PREFIX, help_text
from dwag_relay.usecases.tag_record_store import TagRecordStore

logger = logging.getLogger(__name__)

SHOW_LIMIT = 10
IDEA_PREVIEW_CHARS = 50


class CommandService:
    """Service class for non-add commands."""

    def __init__(self, store: TagRecordStore, prefix: str = DEFAULT_PREFIX):
        self.store = store
        self.prefix = prefix

    async def handle_command(self, command: Command, user: User) -> str:
        """
        Handle a parsed command and return a response message.

        Args:
            command: Parsed command (anything but "add")
            user: The user who sent it

        Returns:
            Response message to send back to the conversation
        """
        command_handlers = {
            "list": self._handle_list,
            "show": self._handle_show,
            "tag": self._handle_tag,
            "delete": self._handle_delete,
            "tags": self._handle_tags,
            "help": self._handle_help,
            "unknown": self._handle_unknown,
            "usage_error": self._handle_usage_error,
        }

        handler = command_handlers.get(command.command)
        if handler is None:
            return f"❌ Unsupported command: {command.command}"

        try:
            return await handler(command, user)
        except StorageUnavailable as e:
            logger.error(f"Storage unavailable for command {command.command}: {e}")
            return "❌ Command failed. Please try again."

    async def _handle_list(self, command: Command, user: User) -> str:
        tag_counts = await self.store.list_tags_with_counts(user.id)
        return format_tag_list(tag_counts)

    async def _handle_show(self, command: ShowCommand, user: User) -> str:
        records = await self.store.list_by_tag(user.id, command.tag_name)
        return format_record_list(records, command.tag_name)

    async def _handle_tag(self, command: TagCommand, user: User) -> str:
        tagged = await self.store.retag_record(user.id, command.record_id, command.tag_name)
        if tagged:
            return f"✅ Idea {command.record_id} tagged as '{command.tag_name.lower()}'"
        return f"❌ Failed to tag idea {command.record_id}"

    async def _handle_delete(self, command: DeleteCommand, user: User) -> str:
        deleted = await self.store.soft_delete_record(user.id, command.record_id)
        if deleted:
            return f"🗑️ Deleted idea {command.record_id}"
        return f"❌ Failed to delete idea {command.record_id}"

    async def _handle_tags(self, command: Command, user: User) -> str:
        tags = await self.store.list_tags(user.id)
        return "📋 Available tags:\n" + "\n".join(f"• {tag.name}" for tag in tags)

    async def _handle_help(self, command: Command, user: User) -> str:
        return help_text(self.prefix)

    async def _handle_unknown(self, command: UnknownCommand, user: User) -> str:
        if not command.verb:
            return f"❌ Missing command. Type \"{self.prefix} help\" for available commands."
        return f"❌ Unknown command: {command.verb}. Type \"{self.prefix} help\" for available commands."

    async def _handle_usage_error(self, command: UsageError, user: User) -> str:
        return f"❌ {command.message}"


def format_tag_list(tag_counts: List[TagCount]) -> str:
    if not tag_counts:
        return "📊 No tags yet. Start saving ideas!"

    lines = "\n".join(f"• {tag.name} ({tag.count})" for tag in tag_counts)
    return f"📊 Your tags:\n{lines}"


def format_record_list(records: List[Record], tag_name: str) -> str:
    if not records:
        return f"📂 No ideas in '{tag_name}'"

    lines = []
    for record in records[:SHOW_LIMIT]:
        idea = record.idea
        if len(idea) > IDEA_PREVIEW_CHARS:
            idea = idea[:IDEA_PREVIEW_CHARS] + "..."
        lines.append(f"ID {record.id}: {idea}")

    header = f"🎬 {tag_name} ideas ({len(records)} total, showing recent {SHOW_LIMIT}):"
    return header + "\n" + "\n".join(lines)
