import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Tuple

import aiohttp

from .backend import BackendError
from .events import OptimisticApplied, OptimisticReverted
from .store import ClassroomStore

logger = logging.getLogger(__name__)

RemoteWrite = Callable[[], Awaitable[Any]]


class WriteFailedError(Exception):
    """
    A user-initiated write was rejected; local state has been rolled back
    unless another pending write on the same record may still settle it.

    ``message`` is meant to be shown to the user as a dismissible notice.
    """

    def __init__(self, message: str, cause: Exception = None):
        super().__init__(message)
        self.message = message
        self.cause = cause


class OptimisticCommands:
    """
    Apply a local patch immediately, then confirm it remotely.

    On success nothing else happens here: the change-feed echo reconciles any
    difference. On failure the touched record is put back as it was before
    the patch. Patches are value replacements, so running the same command
    again after a failure does not stack.

    Commands that overlap on one record share the record as it was before
    the first of them. Only the last one to finish may roll back, and only
    when none of them was accepted; otherwise the accepted write's echo
    settles the record.

    Not for writes whose result depends on a server-side merge (appending to
    shared lists): those must only ever be reflected from the echo.
    """

    def __init__(self, store: ClassroomStore):
        self.store = store
        # (collection, record id) -> in-flight bookkeeping
        self._pending: Dict[Tuple[str, str], Dict[str, Any]] = {}

    async def run(self, collection: str, record_id: str, fields: Dict[str, Any],
                  remote: RemoteWrite, error_message: str = 'Could not save your change.'):
        key = (collection, record_id)
        pending = self._pending.get(key)
        if pending is None:
            pending = self._pending[key] = {
                'baseline': self.store.get(collection, record_id),
                'count': 0,
                'confirmed': False,
            }
        pending['count'] += 1

        self.store.dispatch(OptimisticApplied(collection, record_id, dict(fields)))
        try:
            result = await remote()
        except (BackendError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            if pending['count'] == 1 and not pending['confirmed']:
                logger.error(
                    f"Remote write on {collection}/{record_id} failed, rolling back: {str(e)}",
                    exc_info=True,
                )
                self.store.dispatch(OptimisticReverted(collection, record_id, pending['baseline']))
            else:
                logger.error(
                    f"Remote write on {collection}/{record_id} failed, "
                    f"left to the other pending write: {str(e)}",
                    exc_info=True,
                )
            raise WriteFailedError(error_message, cause=e) from e
        else:
            pending['confirmed'] = True
            return result
        finally:
            pending['count'] -= 1
            if not pending['count']:
                self._pending.pop(key, None)
