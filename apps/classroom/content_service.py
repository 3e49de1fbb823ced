#!/usr/bin/env python3
# apps/classroom/content_service.py

import logging
import mimetypes
from typing import Dict, Optional

from django.conf import settings

from apps.sync.backend import BackendClient
from apps.sync.commands import OptimisticCommands
from apps.sync.store import ClassroomStore
from apps.sync.tasks import schedule_asset_cleanup

from .profile_service import Cleanup, object_name
from .serializers import UNITS, WORDS

logger = logging.getLogger(__name__)

# Word attribute -> backend column
WORD_COLUMNS = {
    'english': 'english',
    'translation': 'russian',
    'transcription': 'transcription',
    'image_url': 'image_url',
}


class ContentService:
    """
    Teacher-side editing of the course content (units, rounds, words).

    Inserts and deletes are left to the change feed; lock toggles and word
    edits are applied locally first.
    """

    def __init__(self, store: ClassroomStore, backend: BackendClient,
                 commands: Optional[OptimisticCommands] = None,
                 cleanup: Optional[Cleanup] = None):
        self.store = store
        self.backend = backend
        self.commands = commands or OptimisticCommands(store)
        self.cleanup = cleanup or schedule_asset_cleanup

    def next_unit_number(self) -> int:
        numbers = [unit.unit_number for unit in self.store.state.units.values()]
        return max(numbers, default=0) + 1

    async def create_unit(self, title: str, description: str = '', icon: str = '',
                          unlocked: bool = False):
        title = (title or '').strip()
        if not title:
            raise ValueError("Unit title cannot be empty")
        row = {
            'title': title,
            'description': description,
            'icon': icon,
            'unlocked': unlocked,
            'unit_number': self.next_unit_number(),
        }
        logger.info(f"Creating unit #{row['unit_number']}: {title}")
        return await self.backend.insert(UNITS, row)

    async def delete_unit(self, unit_id: str):
        # 轮次和单词由后端级联删除
        await self.backend.delete(UNITS, id=unit_id)
        logger.info(f"Deleted unit {unit_id}")

    async def set_unit_unlocked(self, unit_id: str, unlocked: bool):
        if unit_id not in self.store.state.units:
            raise KeyError(unit_id)
        await self.commands.run(
            UNITS, unit_id, {'unlocked': unlocked},
            lambda: self.backend.update(UNITS, unit_id, {'unlocked': unlocked}),
            error_message='Failed to change the unit lock.',
        )

    async def toggle_unit_lock(self, unit_id: str) -> bool:
        unit = self.store.state.units.get(unit_id)
        if unit is None:
            raise KeyError(unit_id)
        await self.set_unit_unlocked(unit_id, not unit.unlocked)
        return not unit.unlocked

    async def edit_word(self, word_id: str, image: Optional[bytes] = None,
                        image_name: str = '', **changes):
        """
        Edit a word, optionally replacing its picture.

        Args:
            word_id: Word to edit
            image: New picture bytes; uploaded before the row is touched
            image_name: File name of the new picture
            **changes: Any of ``english``, ``translation``, ``transcription``

        Returns:
            Dict of the fields that were written
        """
        unknown = set(changes) - {'english', 'translation', 'transcription'}
        if unknown:
            raise ValueError(f"Cannot edit word fields: {', '.join(sorted(unknown))}")
        word = self.store.get(WORDS, word_id)
        if word is None:
            raise KeyError(word_id)

        fields: Dict[str, str] = dict(changes)
        old_image = word.image_url
        if image is not None:
            bucket = settings.WORD_IMAGE_BUCKET
            content_type = mimetypes.guess_type(image_name)[0] or 'application/octet-stream'
            fields['image_url'] = await self.backend.upload(
                bucket, object_name(word_id, image_name), image, content_type
            )

        if not fields:
            return fields

        row = {WORD_COLUMNS[name]: value for name, value in fields.items()}
        await self.commands.run(
            WORDS, word_id, fields,
            lambda: self.backend.update(WORDS, word_id, row),
            error_message='Failed to save the word.',
        )
        if 'image_url' in fields and old_image and old_image != fields['image_url']:
            await self.cleanup(settings.WORD_IMAGE_BUCKET, old_image)
        return fields
