"""
Document store backends for persistence snapshots.

The contract is deliberately thin: ``load()`` returns the last saved snapshot
(or None), ``save(snapshot)`` replaces it. Backends raise ``StoreError`` on
failure; callers decide whether that matters.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional

import httpx

from pinchat.config import DB_PATH, STORE_KEY, STORE_KIND, STORE_TIMEOUT, STORE_URL
from pinchat.db.database import close_db, get_db

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "rooms"


class StoreError(Exception):
    """Raised when the external store cannot be read or written."""


class DocumentStore:
    async def load(self) -> Optional[dict]:
        raise NotImplementedError

    async def save(self, snapshot: dict) -> bool:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class MemoryDocumentStore(DocumentStore):
    def __init__(self, initial: Optional[dict] = None) -> None:
        self.document: Optional[str] = json.dumps(initial) if initial is not None else None
        self.saves = 0

    async def load(self) -> Optional[dict]:
        if self.document is None:
            return None
        return json.loads(self.document)

    async def save(self, snapshot: dict) -> bool:
        self.document = json.dumps(snapshot)
        self.saves += 1
        return True


class SqliteDocumentStore(DocumentStore):
    def __init__(self, path: Optional[str] = None, key: str = SNAPSHOT_KEY) -> None:
        self.path = path or DB_PATH
        self.key = key

    async def load(self) -> Optional[dict]:
        try:
            db = await get_db(self.path)
            async with db.execute("SELECT value FROM documents WHERE key = ?", (self.key,)) as cur:
                row = await cur.fetchone()
        except Exception as e:
            raise StoreError(f"sqlite load failed: {e}") from e
        if row is None:
            return None
        try:
            return json.loads(row["value"])
        except ValueError as e:
            raise StoreError(f"stored snapshot is not valid JSON: {e}") from e

    async def save(self, snapshot: dict) -> bool:
        try:
            db = await get_db(self.path)
            await db.execute(
                "INSERT INTO documents (key, value, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
                (self.key, json.dumps(snapshot), datetime.now(timezone.utc).isoformat()),
            )
            await db.commit()
        except Exception as e:
            raise StoreError(f"sqlite save failed: {e}") from e
        return True

    async def close(self) -> None:
        await close_db()


class HttpDocumentStore(DocumentStore):
    """
    JSON blob over HTTP: ``GET url`` to load, ``PUT url`` to save.

    Hosted bin services wrap the stored document in ``{"record": ...}`` on
    read; that envelope is unwrapped when present.
    """

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout: float = STORE_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["X-Master-Key"] = api_key
        self.url = url
        self._client = httpx.AsyncClient(headers=headers, timeout=timeout, transport=transport)

    async def load(self) -> Optional[dict]:
        try:
            resp = await self._client.get(self.url)
        except httpx.HTTPError as e:
            raise StoreError(f"GET {self.url} failed: {e}") from e
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise StoreError(f"GET {self.url} returned {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as e:
            raise StoreError(f"GET {self.url} returned invalid JSON: {e}") from e
        if isinstance(body, dict) and isinstance(body.get("record"), dict):
            body = body["record"]
        return body if isinstance(body, dict) else None

    async def save(self, snapshot: dict) -> bool:
        try:
            resp = await self._client.put(self.url, json=snapshot)
        except httpx.HTTPError as e:
            raise StoreError(f"PUT {self.url} failed: {e}") from e
        if resp.status_code >= 400:
            raise StoreError(f"PUT {self.url} returned {resp.status_code}")
        return True

    async def close(self) -> None:
        await self._client.aclose()


def create_store(kind: Optional[str] = None) -> DocumentStore:
    kind = (kind or STORE_KIND).lower()
    if kind == "memory":
        return MemoryDocumentStore()
    if kind == "http":
        if not STORE_URL:
            logger.warning("PINCHAT_STORE=http but PINCHAT_STORE_URL is empty; using memory store")
            return MemoryDocumentStore()
        return HttpDocumentStore(STORE_URL, STORE_KEY)
    if kind != "sqlite":
        logger.warning(f"Unknown store kind '{kind}', falling back to sqlite")
    return SqliteDocumentStore()
