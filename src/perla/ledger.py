"""Sale ledger: local source of truth plus the persistence collaborator.

``Ledger`` is the in-memory collection the session reads and writes.
``LedgerStore`` is the persistence interface (list, upsert, delete, save
suggestion). ``LedgerSync`` pushes local changes to a store in the background
so a slow or failing store never blocks or rolls back a turn.
"""

import asyncio
import json
import os
import re
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Iterable, Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from perla.models import SaleRecord

logger = structlog.get_logger(__name__)


class LedgerStore(ABC):
    """Persistence collaborator, one collection of sales per owner."""

    @abstractmethod
    async def list_all(self, owner_id: str) -> list[SaleRecord]:
        """Return the owner's sales, most recent first."""

    @abstractmethod
    async def upsert(self, owner_id: str, record: SaleRecord) -> None:
        """Insert a sale or replace the one with the same id."""

    @abstractmethod
    async def delete_by_ids(self, owner_id: str, ids: Iterable[str]) -> None:
        """Delete sales by id. Unknown ids are ignored."""

    @abstractmethod
    async def save_suggestion(self, owner_id: str, text: str) -> None:
        """Store a user suggestion about the assistant."""


def _upsert_into(records: list[SaleRecord], record: SaleRecord) -> list[SaleRecord]:
    for index, existing in enumerate(records):
        if existing.id == record.id:
            records[index] = record
            return records
    records.insert(0, record)
    return records


def _suggestion(text: str) -> dict[str, Any]:
    return {
        "text": text,
        "status": "pending",
        "createdAt": datetime.now(UTC).isoformat(),
    }


class InMemoryLedgerStore(LedgerStore):
    """Store kept in process memory. Used in tests and for throwaway sessions."""

    def __init__(self) -> None:
        self._sales: dict[str, list[SaleRecord]] = {}
        self.suggestions: dict[str, list[dict[str, Any]]] = {}

    async def list_all(self, owner_id: str) -> list[SaleRecord]:
        return [record.copy() for record in self._sales.get(owner_id, [])]

    async def upsert(self, owner_id: str, record: SaleRecord) -> None:
        _upsert_into(self._sales.setdefault(owner_id, []), record.copy())

    async def delete_by_ids(self, owner_id: str, ids: Iterable[str]) -> None:
        doomed = set(ids)
        self._sales[owner_id] = [r for r in self._sales.get(owner_id, []) if r.id not in doomed]

    async def save_suggestion(self, owner_id: str, text: str) -> None:
        self.suggestions.setdefault(owner_id, []).append(_suggestion(text))


class JsonFileLedgerStore(LedgerStore):
    """One JSON document per owner under ``data_dir``.

    Writes go to a temporary file that replaces the document, so a crash never
    leaves a half-written ledger behind.
    """

    def __init__(self, data_dir: Path | str):
        self._data_dir = Path(data_dir)
        self._lock = asyncio.Lock()
        self._logger = logger.bind(component="json_ledger_store", data_dir=str(self._data_dir))

    def path_for(self, owner_id: str) -> Path:
        safe = re.sub(r"[^\w.-]", "_", owner_id) or "_"
        return self._data_dir / f"{safe}.json"

    def _read(self, owner_id: str) -> dict[str, Any]:
        path = self.path_for(owner_id)
        if not path.exists():
            return {"sales": [], "suggestions": []}
        data = json.loads(path.read_text(encoding="utf-8") or "{}")
        data.setdefault("sales", [])
        data.setdefault("suggestions", [])
        return data

    def _write(self, owner_id: str, data: dict[str, Any]) -> None:
        path = self.path_for(owner_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(tmp, path)

    async def list_all(self, owner_id: str) -> list[SaleRecord]:
        async with self._lock:
            data = await asyncio.to_thread(self._read, owner_id)
        return [SaleRecord.from_dict(item) for item in data["sales"]]

    async def _modify(self, owner_id: str, change: Any) -> None:
        async with self._lock:
            data = await asyncio.to_thread(self._read, owner_id)
            change(data)
            await asyncio.to_thread(self._write, owner_id, data)

    async def upsert(self, owner_id: str, record: SaleRecord) -> None:
        def change(data: dict[str, Any]) -> None:
            records = [SaleRecord.from_dict(item) for item in data["sales"]]
            data["sales"] = [r.to_dict() for r in _upsert_into(records, record)]

        await self._modify(owner_id, change)
        self._logger.debug("sale_upserted", owner_id=owner_id, sale_id=record.id)

    async def delete_by_ids(self, owner_id: str, ids: Iterable[str]) -> None:
        doomed = set(ids)

        def change(data: dict[str, Any]) -> None:
            data["sales"] = [item for item in data["sales"] if item.get("id") not in doomed]

        await self._modify(owner_id, change)
        self._logger.debug("sales_deleted", owner_id=owner_id, count=len(doomed))

    async def save_suggestion(self, owner_id: str, text: str) -> None:
        await self._modify(owner_id, lambda data: data["suggestions"].append(_suggestion(text)))
        self._logger.info("suggestion_saved", owner_id=owner_id)


class Ledger:
    """Local, ordered (most recent first) collection of one owner's sales."""

    def __init__(self, owner_id: str, records: Iterable[SaleRecord] = ()):
        self.owner_id = owner_id
        self._records: list[SaleRecord] = list(records)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[SaleRecord]:
        return iter(list(self._records))

    @property
    def records(self) -> list[SaleRecord]:
        return list(self._records)

    def ids(self) -> list[str]:
        return [record.id for record in self._records]

    def get(self, sale_id: str) -> SaleRecord | None:
        for record in self._records:
            if record.id == sale_id:
                return record
        return None

    def contains(self, sale_id: str) -> bool:
        return self.get(sale_id) is not None

    def load(self, records: Iterable[SaleRecord]) -> None:
        self._records = list(records)

    def prepend(self, records: Iterable[SaleRecord]) -> None:
        """Put new records at the front, keeping their relative order."""
        self._records[:0] = list(records)

    def replace(self, record: SaleRecord) -> SaleRecord:
        """Swap in a new version of an existing record and return the old one.

        Raises:
            KeyError: If no record has that id.
        """
        for index, existing in enumerate(self._records):
            if existing.id == record.id:
                self._records[index] = record
                return existing
        raise KeyError(record.id)

    def remove(self, ids: Iterable[str]) -> list[str]:
        """Remove records by id and return the ids that were actually present."""
        doomed = set(ids)
        removed = [r.id for r in self._records if r.id in doomed]
        self._records = [r for r in self._records if r.id not in doomed]
        return removed

    def snapshot(self) -> list[SaleRecord]:
        """Independent copies of the current records."""
        return [record.copy() for record in self._records]


class LedgerSync:
    """Fire-and-forget persistence of local ledger changes.

    Failures are logged as ``ledger_sync_failed`` and never raised or rolled
    back; the local ledger stays the source of truth.
    """

    def __init__(self, store: LedgerStore, owner_id: str):
        self._store = store
        self._owner_id = owner_id
        self._pending: set[asyncio.Task[None]] = set()
        self._logger = logger.bind(component="ledger_sync", owner_id=owner_id)

    @property
    def store(self) -> LedgerStore:
        return self._store

    @property
    def pending(self) -> int:
        return len(self._pending)

    def upsert(self, records: Iterable[SaleRecord]) -> None:
        for record in records:
            self._schedule(
                self._store.upsert(self._owner_id, record.copy()), "upsert", sale_id=record.id
            )

    def delete(self, ids: Iterable[str]) -> None:
        ids = list(ids)
        if ids:
            self._schedule(self._store.delete_by_ids(self._owner_id, ids), "delete", ids=ids)

    def save_suggestion(self, text: str) -> None:
        self._schedule(self._store.save_suggestion(self._owner_id, text), "save_suggestion")

    def _schedule(self, operation: Awaitable[None], name: str, **context: Any) -> None:
        task = asyncio.create_task(self._run(operation, name, context))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _run(self, operation: Awaitable[None], name: str, context: dict[str, Any]) -> None:
        try:
            await operation
        except Exception as e:
            self._logger.error("ledger_sync_failed", operation=name, error=str(e), **context)
        else:
            self._logger.debug("ledger_synced", operation=name, **context)

    async def drain(self) -> None:
        """Wait for every scheduled write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))
