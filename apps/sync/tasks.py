import asyncio
import logging

import aiohttp
from asgiref.sync import async_to_sync, sync_to_async
from huey.contrib.djhuey import task

from .backend import BackendClient, BackendError, asset_path

logger = logging.getLogger(__name__)


async def _remove_asset(bucket: str, path: str):
    async with BackendClient() as backend:
        await backend.remove(bucket, [path])


@task()
def delete_replaced_asset(bucket: str, public_url: str) -> bool:
    """删除被替换掉的旧文件（失败只记录日志）"""
    path = asset_path(public_url, bucket)
    if path is None:
        logger.debug(f"Not a {bucket} object, nothing to delete: {public_url!r}")
        return False

    try:
        async_to_sync(_remove_asset)(bucket, path)
    except (BackendError, aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.warning(f"Could not delete old asset {bucket}/{path}: {str(e)}")
        return False

    logger.info(f"Deleted old asset {bucket}/{path}")
    return True


async def schedule_asset_cleanup(bucket: str, public_url: str):
    """Queue removal of a replaced asset from async code; never raises."""
    if not public_url:
        return
    try:
        await sync_to_async(delete_replaced_asset)(bucket, public_url)
    except Exception as e:
        logger.warning(f"Could not queue cleanup of {public_url}: {str(e)}")
