#!/usr/bin/env python3
# apps/classroom/chat_service.py

import logging
from typing import Iterable, List, Optional

from django.utils import timezone

from apps.sync.backend import BackendClient
from apps.sync.commands import OptimisticCommands
from apps.sync.events import ChatHistoryCleared, MessagesRead
from apps.sync.listener import NETWORK_ERRORS
from apps.sync.store import ClassroomStore
from apps.sync.tasks import schedule_asset_cleanup

from .profile_service import Cleanup, replace_avatar
from .serializers import CHAT_GROUPS, CHAT_MESSAGES, ReadReceiptSerializer

logger = logging.getLogger(__name__)


class ChatService:
    """Group chats: groups, messages and read receipts."""

    def __init__(self, store: ClassroomStore, backend: BackendClient,
                 commands: Optional[OptimisticCommands] = None,
                 cleanup: Optional[Cleanup] = None):
        self.store = store
        self.backend = backend
        self.commands = commands or OptimisticCommands(store)
        self.cleanup = cleanup or schedule_asset_cleanup

    # ------------------------------------------------------------------
    # groups
    # ------------------------------------------------------------------

    async def create_group(self, creator_id: str, name: str, member_ids: Iterable[str]):
        """
        Create a group chat. The creator is always a member.

        Raises:
            ValueError: empty name or fewer than two distinct members
        """
        name = (name or '').strip()
        if not name:
            raise ValueError("Group name cannot be empty")
        members = list(dict.fromkeys([creator_id, *member_ids]))
        if len(members) < 2:
            raise ValueError("A group needs at least two members")

        logger.info(f"Creating chat group {name!r} with {len(members)} members")
        return await self.backend.insert(CHAT_GROUPS, {'name': name, 'members': members})

    async def rename_group(self, group_id: str, name: str):
        name = (name or '').strip()
        if not name:
            raise ValueError("Group name cannot be empty")
        await self.commands.run(
            CHAT_GROUPS, group_id, {'name': name},
            lambda: self.backend.update(CHAT_GROUPS, group_id, {'name': name}),
            error_message='Failed to rename the group.',
        )

    async def change_group_avatar(self, group_id: str, content: bytes, filename: str = '',
                                  content_type: Optional[str] = None) -> str:
        return await replace_avatar(
            self.store, self.backend, self.commands, self.cleanup,
            CHAT_GROUPS, group_id, content, filename, content_type,
        )

    async def delete_group(self, group_id: str):
        await self.backend.delete(CHAT_GROUPS, id=group_id)
        logger.info(f"Deleted chat group {group_id}")

    async def clear_history(self, group_id: str):
        """Delete every message of a group; local copies go once the delete succeeded."""
        await self.backend.delete(CHAT_MESSAGES, chat_group_id=group_id)
        self.store.dispatch(ChatHistoryCleared(group_id))

    # ------------------------------------------------------------------
    # messages
    # ------------------------------------------------------------------

    async def send_message(self, group_id: str, sender_id: str, content: str):
        content = (content or '').strip()
        if not content:
            raise ValueError("Message cannot be empty")
        return await self.backend.insert(CHAT_MESSAGES, {
            'chat_group_id': group_id,
            'sender_id': sender_id,
            'content': content,
            'read_by': [],
        })

    async def edit_message(self, message_id: str, content: str):
        content = (content or '').strip()
        if not content:
            raise ValueError("Message cannot be empty")
        await self.commands.run(
            CHAT_MESSAGES, message_id, {'content': content},
            lambda: self.backend.update(CHAT_MESSAGES, message_id, {'content': content}),
            error_message='Failed to edit the message.',
        )

    async def delete_message(self, message_id: str):
        await self.backend.delete(CHAT_MESSAGES, id=message_id)

    async def mark_read(self, message_ids: Iterable[str], user_id: str) -> List[str]:
        """
        Add ``user_id``'s read receipt to messages that lack it.

        The receipts show up locally right away. Each message is then written
        separately and a failed write is only logged: a missing receipt is
        re-sent the next time the chat is opened.

        Returns:
            Ids of the messages that got a new receipt
        """
        messages = self.store.state.chat_messages
        pending = [
            message_id for message_id in dict.fromkeys(message_ids)
            if message_id in messages
            and messages[message_id].sender_id != user_id
            and not messages[message_id].is_read_by(user_id)
        ]
        if not pending:
            return []

        read_at = timezone.now().isoformat()
        self.store.dispatch(MessagesRead(tuple(pending), user_id, read_at))

        for message_id in pending:
            message = self.store.state.chat_messages.get(message_id)
            if message is None:
                continue
            receipts = ReadReceiptSerializer(message.read_by, many=True).data
            try:
                await self.backend.update(CHAT_MESSAGES, message_id, {'read_by': receipts})
            except NETWORK_ERRORS as e:
                logger.warning(f"Could not save read receipt on {message_id}: {str(e)}")
        return pending
