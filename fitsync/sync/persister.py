"""Idempotent persistence of canonical records.

Every record has a natural key, so re-syncing the same data overwrites
rather than duplicates:

    activities:               users/{uid}/activities/{provider}-{originalId}
    sleep logs:               users/{uid}/fitbit_sleep/{logId}
    heart rate:               users/{uid}/fitbit_heart_rate/{date}
    daily activity summaries: users/{uid}/fitbit_activity_summaries/{date}

Writes are merge-writes: ``None`` fields are dropped before writing, so a
field the new record does not carry keeps its stored value.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Iterable

from fitsync.services.store import DocumentStore, StorageError, document_path
from fitsync.sync.base import (
    ActivityRecord,
    DailySummary,
    HeartRateRecord,
    Provider,
    SleepRecord,
)
from fitsync.sync.errors import StorageUnavailable

logger = logging.getLogger("fitsync.sync.persister")

ACTIVITIES = "activities"
SLEEP = "fitbit_sleep"
HEART_RATE = "fitbit_heart_rate"
DAILY_SUMMARIES = "fitbit_activity_summaries"

# Stored names that differ from the camelCased attribute name
_FIELD_NAMES: dict[type, dict[str, str]] = {
    ActivityRecord: {"activity_type": "type", "provider": "dataSource"},
    SleepRecord: {"log_type": "type", "duration_ms": "duration", "provider": "dataSource"},
    HeartRateRecord: {"provider": "dataSource"},
    DailySummary: {"provider": "dataSource"},
}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_encode(v) for v in value]
    return value


def to_document(record: Any) -> dict:
    """Serialize a canonical record to its stored form (camelCase, no ``None``)."""
    renames = _FIELD_NAMES.get(type(record), {})
    doc: dict[str, Any] = {}
    for f in dataclasses.fields(record):
        value = getattr(record, f.name)
        if value is None:
            continue
        doc[renames.get(f.name, _camel(f.name))] = _encode(value)

    if isinstance(record, SleepRecord):
        summary = doc.pop("stagesSummary", None)
        if summary:
            doc["levels"] = {"summary": summary}
    return doc


class Persister:
    """Upserts canonical records into the per-user collections."""

    def __init__(self, store: DocumentStore) -> None:
        self._store = store

    async def _write(self, path: str, doc: dict) -> None:
        try:
            await self._store.set(path, doc, merge=True)
        except StorageError as exc:
            logger.error("Write to %s failed: %s", path, exc)
            raise StorageUnavailable() from exc

    async def upsert_activities(self, user_id: str, records: Iterable[ActivityRecord]) -> int:
        """Upsert activities keyed by ``{provider}-{originalId}``.

        Returns:
            Number of records written.
        """
        written = 0
        for record in records:
            await self._write(document_path("users", user_id, ACTIVITIES, record.id), to_document(record))
            written += 1
        if written:
            logger.info("Stored %d activities for user %s", written, user_id)
        return written

    async def upsert_sleep(self, user_id: str, records: Iterable[SleepRecord]) -> int:
        """Upsert sleep logs keyed by log id (several per date are possible)."""
        written = 0
        for record in records:
            await self._write(document_path("users", user_id, SLEEP, record.log_id), to_document(record))
            written += 1
        if written:
            logger.info("Stored %d sleep logs for user %s", written, user_id)
        return written

    async def upsert_heart_rate(self, user_id: str, record: HeartRateRecord | None) -> int:
        if record is None:
            return 0
        await self._write(document_path("users", user_id, HEART_RATE, record.date), to_document(record))
        return 1

    async def upsert_daily_summary(self, user_id: str, record: DailySummary | None) -> int:
        if record is None:
            return 0
        await self._write(
            document_path("users", user_id, DAILY_SUMMARIES, record.date), to_document(record)
        )
        return 1

    async def list_activities(self, user_id: str, provider: Provider | None = None) -> list[dict]:
        """Stored activities for a user, optionally for one provider."""
        try:
            docs = await self._store.list(document_path("users", user_id, ACTIVITIES))
        except StorageError as exc:
            raise StorageUnavailable() from exc
        if provider is None:
            return docs
        return [d for d in docs if d.get("dataSource") == provider.value]
