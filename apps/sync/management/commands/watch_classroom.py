#!/usr/bin/env python3

import asyncio
import logging

from asgiref.sync import async_to_sync
from django.core.management.base import BaseCommand, CommandError

from ...backend import BackendClient
from ...listener import ChangeFeedListener, ProfileNotFoundError, SnapshotLoadError
from ...store import ClassroomStore

logger = logging.getLogger(__name__)


def describe(previous, current) -> str:
    """一行摘要：哪些集合变了"""
    changed = [
        name for name in ('users', 'units', 'round_progress', 'unit_tests',
                          'chat_groups', 'chat_messages', 'online_user_ids')
        if getattr(previous, name) is not getattr(current, name)
    ]
    return f"v{current.version}: " + (', '.join(changed) or 'status')


class Command(BaseCommand):
    help = 'Connect as a user and follow the live classroom state'

    def add_arguments(self, parser):
        parser.add_argument('user_id', help='Profile id of the signed-in user')
        parser.add_argument(
            '--token',
            help='Access token of the user (defaults to the anonymous key)',
            default=None
        )
        parser.add_argument(
            '--snapshot-only',
            action='store_true',
            help='Load the snapshot, print a summary and exit'
        )

    def handle(self, *args, **options):
        try:
            async_to_sync(self._watch)(options['user_id'], options['token'], options['snapshot_only'])
        except (ProfileNotFoundError, SnapshotLoadError) as e:
            raise CommandError(str(e))
        except KeyboardInterrupt:
            self.stdout.write("已停止")

    async def _watch(self, user_id, token, snapshot_only):
        store = ClassroomStore()
        store.subscribe(lambda previous, current: logger.info(describe(previous, current)))

        async with BackendClient(access_token=token) as backend:
            listener = ChangeFeedListener(store, backend)
            if snapshot_only:
                user = await listener.start_session(user_id)
                snapshot = await listener.load_snapshot(timeout=listener.snapshot_timeout)
                self.stdout.write(self.style.SUCCESS(
                    f"{user.name}: {len(snapshot.units)} units, {len(snapshot.users)} users, "
                    f"{len(snapshot.unit_tests)} tests, {len(snapshot.chat_messages)} messages"
                ))
                if snapshot.degraded:
                    self.stdout.write(self.style.WARNING(
                        f"Unavailable: {', '.join(snapshot.degraded)}"
                    ))
                return

            try:
                await listener.run(user_id)
            except asyncio.CancelledError:
                await listener.stop()
                raise
