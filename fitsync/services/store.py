"""Keyed document store used for profiles, tokens and synchronized records.

Documents live at slash-separated paths (``users/{uid}/activities/{id}``);
a collection is the set of documents directly under a path prefix.  Writes
are merge-writes by default: keys absent from the new data are preserved.

Two backends:

- ``InMemoryDocumentStore`` — process-local, used in development and tests.
- ``PostgresDocumentStore`` — ``asyncpg`` pool over a single JSONB table.

Read-modify-write cycles go through ``update()``, which is serialized per
document (per-path ``asyncio.Lock`` in memory, a transaction-scoped advisory
lock in Postgres).  The rate limiter relies on this for its atomic
check-and-increment.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

import asyncpg

from fitsync.config import Settings, get_settings

logger = logging.getLogger("fitsync.store")

Mutator = Callable[[dict | None], dict | None]


class StorageError(RuntimeError):
    """Raised when the backing store cannot be read or written."""


def merge_documents(base: dict, patch: dict) -> dict:
    """Deep-merge ``patch`` into a copy of ``base``.

    Nested mappings are merged key by key; every other value (lists
    included) in ``patch`` replaces the one in ``base``.
    """
    merged = copy.deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_documents(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _parent(path: str) -> str:
    return path.rsplit("/", 1)[0] if "/" in path else ""


class DocumentStore(ABC):
    """Abstract keyed, transactional collection store."""

    @abstractmethod
    async def get(self, path: str) -> dict | None:
        """Return the document at ``path`` or None."""

    @abstractmethod
    async def update(self, path: str, mutator: Mutator) -> dict | None:
        """Atomically read, transform and write one document.

        ``mutator`` receives the current document (None if absent) and
        returns the full new document, or None to delete it.  No other
        ``update``/``set`` on the same path interleaves with the cycle.

        Returns:
            The document as written (None if deleted).
        """

    @abstractmethod
    async def delete(self, path: str) -> None:
        """Remove the document at ``path`` (no-op if absent)."""

    @abstractmethod
    async def list(self, collection: str) -> list[dict]:
        """Return every document directly under ``collection``."""

    async def set(self, path: str, data: dict, merge: bool = True) -> dict:
        """Write ``data`` at ``path``, merging into the existing document by default."""

        def _apply(current: dict | None) -> dict:
            if merge and current:
                return merge_documents(current, data)
            return copy.deepcopy(data)

        written = await self.update(path, _apply)
        return written or {}

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryDocumentStore(DocumentStore):
    """Process-local store.  Documents are deep-copied in and out."""

    def __init__(self) -> None:
        self._docs: dict[str, dict] = {}
        # path -> (lock, holders); an entry lives only while someone holds or awaits it
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def _locked(self, path: str) -> AsyncIterator[None]:
        lock, holders = self._locks.get(path, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[path] = (lock, holders + 1)
        try:
            async with lock:
                yield
        finally:
            lock, holders = self._locks[path]
            if holders == 1:
                del self._locks[path]
            else:
                self._locks[path] = (lock, holders - 1)

    async def get(self, path: str) -> dict | None:
        doc = self._docs.get(path)
        return copy.deepcopy(doc) if doc is not None else None

    async def update(self, path: str, mutator: Mutator) -> dict | None:
        async with self._locked(path):
            current = self._docs.get(path)
            new = mutator(copy.deepcopy(current) if current is not None else None)
            if new is None:
                self._docs.pop(path, None)
                return None
            self._docs[path] = copy.deepcopy(new)
            return copy.deepcopy(new)

    async def delete(self, path: str) -> None:
        async with self._locked(path):
            self._docs.pop(path, None)

    async def list(self, collection: str) -> list[dict]:
        prefix = collection.rstrip("/")
        return [
            copy.deepcopy(doc)
            for path, doc in sorted(self._docs.items())
            if _parent(path) == prefix
        ]

    def __len__(self) -> int:
        return len(self._docs)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    path        TEXT PRIMARY KEY,
    parent      TEXT NOT NULL,
    data        JSONB NOT NULL,
    updated_at  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS documents_parent_idx ON documents (parent);
"""

_DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
    )


class PostgresDocumentStore(DocumentStore):
    """Document store backed by one ``documents`` JSONB table."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @classmethod
    async def connect(cls, dsn: str) -> "PostgresDocumentStore":
        """Create the connection pool and ensure the schema exists."""
        try:
            pool = await asyncpg.create_pool(
                dsn,
                min_size=2,
                max_size=20,
                command_timeout=30,
                init=_init_connection,
            )
            async with pool.acquire() as conn:
                await conn.execute(_SCHEMA)
        except _DB_ERRORS as exc:
            raise StorageError(f"Could not connect to document store: {exc}") from exc
        logger.info("Document store pool initialized (min=2, max=20)")
        return cls(pool)

    async def get(self, path: str) -> dict | None:
        try:
            async with self._pool.acquire() as conn:
                return await conn.fetchval(
                    "SELECT data FROM documents WHERE path = $1", path
                )
        except _DB_ERRORS as exc:
            raise StorageError(str(exc)) from exc

    async def update(self, path: str, mutator: Mutator) -> dict | None:
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    # Advisory lock also covers documents that do not exist yet
                    await conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext($1))", path
                    )
                    current = await conn.fetchval(
                        "SELECT data FROM documents WHERE path = $1", path
                    )
                    new = mutator(current)
                    if new is None:
                        await conn.execute("DELETE FROM documents WHERE path = $1", path)
                        return None
                    await conn.execute(
                        """
                        INSERT INTO documents (path, parent, data)
                        VALUES ($1, $2, $3)
                        ON CONFLICT (path) DO UPDATE
                        SET data = EXCLUDED.data, updated_at = NOW()
                        """,
                        path,
                        _parent(path),
                        new,
                    )
                    return new
        except _DB_ERRORS as exc:
            raise StorageError(str(exc)) from exc

    async def delete(self, path: str) -> None:
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    # Same lock as update(), so a delete never interleaves with a write
                    await conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext($1))", path
                    )
                    await conn.execute("DELETE FROM documents WHERE path = $1", path)
        except _DB_ERRORS as exc:
            raise StorageError(str(exc)) from exc

    async def list(self, collection: str) -> list[dict]:
        try:
            async with self._pool.acquire() as conn:
                rows = await conn.fetch(
                    "SELECT data FROM documents WHERE parent = $1 ORDER BY path",
                    collection.rstrip("/"),
                )
        except _DB_ERRORS as exc:
            raise StorageError(str(exc)) from exc
        return [r["data"] for r in rows]

    async def close(self) -> None:
        await self._pool.close()
        logger.info("Document store pool closed")


# ---------------------------------------------------------------------------
# Module-level store, initialized once at app startup
# ---------------------------------------------------------------------------

_store: DocumentStore | None = None


async def init_store(settings: Settings | None = None) -> DocumentStore:
    """Create the document store. Call once at app startup."""
    global _store
    s = settings or get_settings()
    if s.database_url:
        _store = await PostgresDocumentStore.connect(s.database_url)
    else:
        logger.warning("DATABASE_URL not set; using in-memory document store")
        _store = InMemoryDocumentStore()
    return _store


async def close_store() -> None:
    """Drain the store. Call at app shutdown."""
    global _store
    if _store:
        await _store.close()
        _store = None


def get_store() -> DocumentStore:
    if _store is None:
        raise RuntimeError("Document store not initialized — call init_store() first")
    return _store


def document_path(*parts: Any) -> str:
    """Join path segments, rejecting separators inside a segment."""
    segments = [str(p) for p in parts]
    for seg in segments:
        if not seg or "/" in seg:
            raise ValueError(f"Invalid document path segment: {seg!r}")
    return "/".join(segments)
