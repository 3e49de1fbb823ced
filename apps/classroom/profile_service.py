#!/usr/bin/env python3
# apps/classroom/profile_service.py

import logging
import mimetypes
import time
from typing import Awaitable, Callable, Optional

from django.conf import settings

from apps.sync.backend import BackendClient
from apps.sync.commands import OptimisticCommands
from apps.sync.events import AvatarChanged
from apps.sync.store import ClassroomStore
from apps.sync.tasks import schedule_asset_cleanup

from .serializers import PROFILES

logger = logging.getLogger(__name__)

Cleanup = Callable[[str, str], Awaitable[None]]


def object_name(owner_id: str, filename: str = '') -> str:
    """上传文件名：<owner>-<毫秒时间戳><扩展名>"""
    ext = ''
    if '.' in filename:
        ext = '.' + filename.rsplit('.', 1)[-1].lower()
    return f"{owner_id}-{int(time.time() * 1000)}{ext}"


async def replace_avatar(store: ClassroomStore, backend: BackendClient, commands: OptimisticCommands,
                         cleanup: Cleanup, collection: str, record_id: str,
                         content: bytes, filename: str = '', content_type: Optional[str] = None,
                         bucket: Optional[str] = None) -> str:
    """
    Upload a new avatar and point the record at it.

    The record is patched optimistically once the upload succeeded; the old
    image is only queued for deletion after the row update is confirmed, so
    a failed update never leaves the record pointing at a deleted file.
    The confirmed URL is then dispatched as an avatar change, so a later
    overlapping swap that fails cannot leave its own URL on the record.

    Args:
        collection: ``profiles`` or ``chat_groups``
        record_id: Record whose ``avatar_url`` changes
        content: Image bytes
        filename: Original file name, used for the extension
        content_type: MIME type; guessed from ``filename`` when omitted
        bucket: Storage bucket, defaults to settings.AVATAR_BUCKET

    Returns:
        Public URL of the new avatar
    """
    bucket = bucket or settings.AVATAR_BUCKET
    current = store.get(collection, record_id)
    old_url = current.avatar_url if current is not None else ''
    content_type = content_type or mimetypes.guess_type(filename)[0] or 'application/octet-stream'

    url = await backend.upload(bucket, object_name(record_id, filename), content, content_type)
    logger.info(f"Uploaded new avatar for {collection}/{record_id}")

    await commands.run(
        collection, record_id, {'avatar_url': url},
        lambda: backend.update(collection, record_id, {'avatar_url': url}),
        error_message='Failed to update the avatar.',
    )
    store.dispatch(AvatarChanged(collection, record_id, url))
    if old_url and old_url != url:
        await cleanup(bucket, old_url)
    return url


class ProfileService:
    """Changes a user makes to their own profile."""

    def __init__(self, store: ClassroomStore, backend: BackendClient,
                 commands: Optional[OptimisticCommands] = None,
                 cleanup: Optional[Cleanup] = None):
        self.store = store
        self.backend = backend
        self.commands = commands or OptimisticCommands(store)
        self.cleanup = cleanup or schedule_asset_cleanup

    async def change_avatar(self, user_id: str, content: bytes, filename: str = '',
                            content_type: Optional[str] = None) -> str:
        return await replace_avatar(
            self.store, self.backend, self.commands, self.cleanup,
            PROFILES, user_id, content, filename, content_type,
        )

