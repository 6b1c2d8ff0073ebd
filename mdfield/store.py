"""Cell stores: where the editing session reads and writes document text."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .errors import ExternalStoreFailure

logger = logging.getLogger(__name__)

WRITE_ATTEMPTS = 3
WRITE_RETRY_DELAY = 0.3


@dataclass(frozen=True)
class CellRef:
    record_id: str
    field_id: str

    def __str__(self) -> str:
        return f"{self.record_id}/{self.field_id}"


class CellStore(Protocol):
    async def read_cell(self, ref: CellRef) -> str: ...

    async def write_cell(self, ref: CellRef, text: str) -> None: ...


def coerce_cell_text(value) -> str:
    """Flatten a stored cell value into plain text.

    Rich-text cells arrive as lists of segments carrying ``text``; other
    cells may be dicts with ``text`` or ``value``.
    """
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "".join(coerce_cell_text(item) for item in value)
    if isinstance(value, dict):
        for key in ("text", "value"):
            if key in value:
                return coerce_cell_text(value[key])
        return ""
    return str(value)


class MemoryCellStore:
    """Dict-backed store. ``fail_reads``/``fail_writes`` inject failures."""

    def __init__(self, cells: dict[CellRef, object] | None = None, *, delay: float = 0.0):
        self.cells: dict[CellRef, object] = dict(cells or {})
        self.delay = delay
        self.fail_reads = 0
        self.fail_writes = 0
        self.reads: list[CellRef] = []
        self.writes: list[tuple[CellRef, str]] = []

    async def read_cell(self, ref: CellRef) -> str:
        self.reads.append(ref)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_reads:
            self.fail_reads -= 1
            raise ExternalStoreFailure(f"read of {ref} failed")
        return coerce_cell_text(self.cells.get(ref))

    async def write_cell(self, ref: CellRef, text: str) -> None:
        self.writes.append((ref, text))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_writes:
            self.fail_writes -= 1
            raise ExternalStoreFailure(f"write of {ref} failed")
        self.cells[ref] = text


class JsonFileCellStore:
    """Records and fields kept in one JSON file: ``{record: {field: value}}``."""

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()

    def _load(self) -> dict:
        try:
            if not self.path.exists():
                return {}
            raw = self.path.read_text(encoding="utf-8").strip()
            payload = json.loads(raw) if raw else {}
        except (OSError, ValueError) as exc:
            raise ExternalStoreFailure(f"cannot read {self.path}: {exc}", transient=False) from exc
        if not isinstance(payload, dict):
            raise ExternalStoreFailure(f"{self.path} does not hold a JSON object", transient=False)
        return payload

    def records(self) -> list[CellRef]:
        """Every cell in the file, in file order."""
        refs: list[CellRef] = []
        for record_id, fields in self._load().items():
            if isinstance(fields, dict):
                refs.extend(CellRef(str(record_id), str(field_id)) for field_id in fields)
        return refs

    async def read_cell(self, ref: CellRef) -> str:
        record = self._load().get(ref.record_id)
        if not isinstance(record, dict):
            return ""
        return coerce_cell_text(record.get(ref.field_id))

    async def write_cell(self, ref: CellRef, text: str) -> None:
        payload = self._load()
        record = payload.get(ref.record_id)
        if not isinstance(record, dict):
            record = payload[ref.record_id] = {}
        record[ref.field_id] = text
        temp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            temp_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
            temp_path.replace(self.path)
        except OSError as exc:
            raise ExternalStoreFailure(f"cannot write {self.path}: {exc}") from exc


class RetryingCellStore:
    """Retries transient write failures a fixed number of times."""

    def __init__(self, inner: CellStore, attempts: int = WRITE_ATTEMPTS, delay: float = WRITE_RETRY_DELAY):
        self.inner = inner
        self.attempts = max(1, attempts)
        self.delay = delay

    async def read_cell(self, ref: CellRef) -> str:
        return await self.inner.read_cell(ref)

    async def write_cell(self, ref: CellRef, text: str) -> None:
        for attempt in range(1, self.attempts + 1):
            try:
                await self.inner.write_cell(ref, text)
                return
            except ExternalStoreFailure as exc:
                if not exc.transient or attempt == self.attempts:
                    raise
                logger.warning("write of %s failed (attempt %d/%d): %s", ref, attempt, self.attempts, exc)
                await asyncio.sleep(self.delay)
