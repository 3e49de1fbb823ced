#!/usr/bin/env python3
# apps/sync/backend.py

import logging
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import quote, urlsplit

import aiohttp
from django.conf import settings

logger = logging.getLogger(__name__)

PUBLIC_OBJECT_PREFIX = '/storage/v1/object/public/'


class BackendError(Exception):
    """A request to the hosted backend failed."""

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code

    def __str__(self):
        if self.status:
            return f"[{self.status}] {self.message}"
        return self.message


def asset_path(public_url: str, bucket: str) -> Optional[str]:
    """
    Recover the object path inside ``bucket`` from one of its public URLs.

    Returns None for URLs that do not point into the bucket (external
    images, placeholders, empty values).
    """
    if not public_url:
        return None
    parts = urlsplit(public_url).path.split('/')
    if bucket not in parts:
        return None
    index = parts.index(bucket)
    path = '/'.join(parts[index + 1:])
    return path or None


class BackendClient:
    """
    Thin async client for the hosted backend: REST rows, RPC and storage.

    Every method either returns decoded JSON or raises BackendError. Network
    failures surface as aiohttp.ClientError / asyncio.TimeoutError.
    """

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 access_token: Optional[str] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 timeout: Optional[float] = None):
        """
        Args:
            base_url: Project URL, defaults to settings.SUPABASE_URL
            api_key: Anonymous API key, defaults to settings.SUPABASE_ANON_KEY
            access_token: JWT of the signed-in user; falls back to the API key
            session: Existing aiohttp session to share
            timeout: Per-request timeout in seconds
        """
        self.base_url = (base_url or settings.SUPABASE_URL).rstrip('/')
        self.api_key = api_key or settings.SUPABASE_ANON_KEY
        self.access_token = access_token
        self.timeout = aiohttp.ClientTimeout(total=timeout or settings.REQUEST_TIMEOUT)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    @property
    def realtime_url(self) -> str:
        scheme, rest = self.base_url.split('://', 1)
        ws_scheme = 'wss' if scheme == 'https' else 'ws'
        return f"{ws_scheme}://{rest}/realtime/v1/websocket?apikey={self.api_key}&vsn=1.0.0"

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            'apikey': self.api_key,
            'Authorization': f"Bearer {self.access_token or self.api_key}",
        }
        if extra:
            headers.update(extra)
        return headers

    async def _request(self, method: str, path: str, *, params=None, json=None,
                       data=None, headers=None) -> Any:
        url = f"{self.base_url}{path}"
        async with self.session.request(
            method, url,
            params=params,
            json=json,
            data=data,
            headers=self._headers(headers),
        ) as response:
            if response.status >= 400:
                raise await self._error_from(response)
            if response.status == 204:
                return None
            body = await response.read()
            if not body:
                return None
            return await response.json(content_type=None)

    @staticmethod
    async def _error_from(response: aiohttp.ClientResponse) -> BackendError:
        try:
            payload = await response.json(content_type=None)
        except ValueError:
            payload = None
        if isinstance(payload, dict):
            message = payload.get('message') or payload.get('error') or str(payload)
            return BackendError(message, status=response.status, code=payload.get('code'))
        text = await response.text()
        return BackendError(text or response.reason or 'request failed', status=response.status)

    # ------------------------------------------------------------------
    # rows
    # ------------------------------------------------------------------

    @staticmethod
    def _filters(filters: Dict[str, Any]) -> Dict[str, str]:
        return {column: f"eq.{value}" for column, value in filters.items()}

    async def select(self, table: str, columns: str = '*', **filters) -> List[Dict]:
        """读取一张表（可带等值过滤）"""
        params = {'select': columns}
        params.update(self._filters(filters))
        rows = await self._request('GET', f"/rest/v1/{table}", params=params)
        return rows or []

    async def select_one(self, table: str, record_id: str, columns: str = '*') -> Optional[Dict]:
        rows = await self.select(table, columns, id=record_id)
        return rows[0] if rows else None

    async def insert(self, table: str, row: Dict) -> Optional[Dict]:
        rows = await self._request(
            'POST', f"/rest/v1/{table}", json=row,
            headers={'Prefer': 'return=representation'},
        )
        return rows[0] if rows else None

    async def upsert(self, table: str, row: Dict, on_conflict: Optional[str] = None) -> Optional[Dict]:
        params = {'on_conflict': on_conflict} if on_conflict else None
        rows = await self._request(
            'POST', f"/rest/v1/{table}", json=row, params=params,
            headers={'Prefer': 'resolution=merge-duplicates,return=representation'},
        )
        return rows[0] if rows else None

    async def update(self, table: str, record_id: str, fields: Dict) -> Optional[Dict]:
        rows = await self._request(
            'PATCH', f"/rest/v1/{table}", json=fields,
            params=self._filters({'id': record_id}),
            headers={'Prefer': 'return=representation'},
        )
        return rows[0] if rows else None

    async def delete(self, table: str, **filters) -> None:
        if not filters:
            raise ValueError("Refusing to delete without a filter")
        await self._request('DELETE', f"/rest/v1/{table}", params=self._filters(filters))

    async def rpc(self, function: str, params: Dict) -> Any:
        """Call a server-side procedure (used for read-merge-write appends)."""
        return await self._request('POST', f"/rest/v1/rpc/{function}", json=params)

    # ------------------------------------------------------------------
    # storage
    # ------------------------------------------------------------------

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.base_url}{PUBLIC_OBJECT_PREFIX}{bucket}/{quote(path)}"

    async def upload(self, bucket: str, path: str, content: bytes,
                     content_type: str = 'application/octet-stream') -> str:
        """
        Upload a file and return its public URL.

        Args:
            bucket: Storage bucket name
            path: Object path inside the bucket
            content: Raw file bytes
            content_type: MIME type stored with the object

        Returns:
            Public URL of the uploaded object
        """
        await self._request(
            'POST', f"/storage/v1/object/{bucket}/{quote(path)}",
            data=content,
            headers={'Content-Type': content_type, 'x-upsert': 'false'},
        )
        return self.public_url(bucket, path)

    async def remove(self, bucket: str, paths: Iterable[str]) -> None:
        await self._request(
            'DELETE', f"/storage/v1/object/{bucket}",
            json={'prefixes': list(paths)},
        )
