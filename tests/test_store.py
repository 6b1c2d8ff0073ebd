import json

import pytest

from mdfield.errors import ExternalStoreFailure
from mdfield.store import CellRef, JsonFileCellStore, MemoryCellStore, RetryingCellStore, coerce_cell_text

REF = CellRef("rec1", "notes")


@pytest.mark.parametrize(
    "value, expected",
    [
        (None, ""),
        ("plain", "plain"),
        ([{"text": "a"}, {"text": "b"}], "ab"),
        ({"value": 3}, "3"),
        ({"text": [{"text": "x"}, "y"]}, "xy"),
        ({"other": 1}, ""),
        (12.5, "12.5"),
    ],
)
def test_coerce_cell_text(value, expected):
    assert coerce_cell_text(value) == expected


def test_cell_ref_str():
    assert str(REF) == "rec1/notes"


@pytest.mark.asyncio
async def test_memory_store_reads_missing_cell_as_empty():
    store = MemoryCellStore()
    assert await store.read_cell(REF) == ""
    assert store.reads == [REF]


class TestJsonFileCellStore:
    @pytest.mark.asyncio
    async def test_write_then_read(self, tmp_path):
        path = tmp_path / "cells.json"
        store = JsonFileCellStore(path)

        await store.write_cell(REF, "# Hello")

        assert await store.read_cell(REF) == "# Hello"
        assert json.loads(path.read_text(encoding="utf-8")) == {"rec1": {"notes": "# Hello"}}
        assert not (tmp_path / "cells.json.tmp").exists()

    @pytest.mark.asyncio
    async def test_missing_file_reads_empty(self, tmp_path):
        store = JsonFileCellStore(tmp_path / "absent.json")
        assert await store.read_cell(REF) == ""
        assert store.records() == []

    def test_records_in_file_order(self, tmp_path):
        path = tmp_path / "cells.json"
        path.write_text(json.dumps({"r2": {"b": "", "a": ""}, "r1": {"c": ""}, "bad": 4}), encoding="utf-8")

        assert JsonFileCellStore(path).records() == [CellRef("r2", "b"), CellRef("r2", "a"), CellRef("r1", "c")]

    @pytest.mark.asyncio
    async def test_malformed_file_is_a_permanent_failure(self, tmp_path):
        path = tmp_path / "cells.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(ExternalStoreFailure) as excinfo:
            await JsonFileCellStore(path).read_cell(REF)
        assert excinfo.value.transient is False

    @pytest.mark.asyncio
    async def test_rich_text_cells_are_flattened(self, tmp_path):
        path = tmp_path / "cells.json"
        path.write_text(json.dumps({"rec1": {"notes": [{"text": "a"}, {"text": "b"}]}}), encoding="utf-8")
        assert await JsonFileCellStore(path).read_cell(REF) == "ab"


class TestRetryingCellStore:
    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self):
        inner = MemoryCellStore()
        inner.fail_writes = 2
        store = RetryingCellStore(inner, attempts=3, delay=0)

        await store.write_cell(REF, "x")

        assert len(inner.writes) == 3
        assert inner.cells[REF] == "x"

    @pytest.mark.asyncio
    async def test_gives_up_after_last_attempt(self):
        inner = MemoryCellStore()
        inner.fail_writes = 3
        store = RetryingCellStore(inner, attempts=3, delay=0)

        with pytest.raises(ExternalStoreFailure):
            await store.write_cell(REF, "x")
        assert len(inner.writes) == 3

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self):
        class Broken:
            calls = 0

            async def read_cell(self, ref):
                return ""

            async def write_cell(self, ref, text):
                self.calls += 1
                raise ExternalStoreFailure("read-only", transient=False)

        inner = Broken()
        with pytest.raises(ExternalStoreFailure):
            await RetryingCellStore(inner, attempts=3, delay=0).write_cell(REF, "x")
        assert inner.calls == 1
