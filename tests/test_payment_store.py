"""Payment stores."""
import asyncio
import json
import threading

import httpx
import pytest

from services.api.payment_store import InMemoryPaymentStore, JsonFilePaymentStore, SheetsPaymentStore
from services.oracle.errors import PersistenceError


def run(coro):
    return asyncio.run(coro)


class TestJsonFileStore:
    def test_save_load_delete(self, tmp_path):
        path = tmp_path / "payments.json"
        store = JsonFilePaymentStore(path)

        async def go():
            await store.save({"id": "a", "status": "pending"})
            await store.save({"id": "b", "status": "pending"})
            await store.save({"id": "a", "status": "verified"})
            await store.delete("b")
            return await store.load_all()

        rows = run(go())
        assert rows == [{"id": "a", "status": "verified"}]
        assert json.loads(path.read_text())["payments"][0]["status"] == "verified"

    def test_file_work_runs_off_the_event_loop(self, tmp_path, monkeypatch):
        store = JsonFilePaymentStore(tmp_path / "payments.json")
        threads = []
        write = store._write

        def recording_write(st):
            threads.append(threading.current_thread())
            write(st)

        monkeypatch.setattr(store, "_write", recording_write)

        async def go():
            await store.save({"id": "a"})
            await store.delete("a")
            return threading.current_thread()

        loop_thread = run(go())
        assert len(threads) == 2
        assert all(t is not loop_thread for t in threads)

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "payments.json"
        path.write_text("{not json")
        with pytest.raises(PersistenceError):
            run(JsonFilePaymentStore(path).load_all())


class TestInMemoryStore:
    def test_copies_records(self):
        store = InMemoryPaymentStore()
        rec = {"id": "a", "metadata": {"k": 1}}
        run(store.save(rec))
        rec["metadata"]["k"] = 2
        assert run(store.load_all())[0]["metadata"]["k"] == 1


class TestSheetsStore:
    def test_round_trip_against_proxy(self):
        rows = {}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                body = json.loads(request.content)
                rows[body["payment"]["id"]] = body["payment"]
                return httpx.Response(200, json={"success": True, "sheetId": "sheet-1"})
            if request.method == "GET":
                assert request.url.params["sheetId"] == "sheet-1"
                return httpx.Response(200, json={"payments": list(rows.values())})
            rows.pop(request.url.path.rsplit("/", 1)[-1], None)
            return httpx.Response(200, json={"success": True})

        async def go():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                store = SheetsPaymentStore("https://proxy.test/api", client=client)
                await store.save({"id": "pay_1"})
                before = await store.load_all()
                await store.delete("pay_1")
                return store, before, await store.load_all()

        store, before, after = run(go())
        assert store.sheet_id == "sheet-1"
        assert before == [{"id": "pay_1"}]
        assert after == []

    def test_http_error_raises_persistence_error(self):
        async def go():
            transport = httpx.MockTransport(lambda r: httpx.Response(500))
            async with httpx.AsyncClient(transport=transport) as client:
                await SheetsPaymentStore("https://proxy.test", client=client).save({"id": "x"})

        with pytest.raises(PersistenceError):
            run(go())
