from __future__ import annotations

import asyncio
import json
import threading
import time
from typing import Any, List, Optional

import pytest
import requests

from fieldday.core.store import StoreError, StoreOfflineError, StoreWriteError
from fieldday.core.store.providers import RestPathStore


class _Response:
    def __init__(self, status_code: int = 200, body: Any = None) -> None:
        self.status_code = status_code
        self.content = b"" if body is None else json.dumps(body).encode("utf-8")
        self.text = self.content.decode("utf-8")

    def json(self) -> Any:
        return json.loads(self.text)


class _Session:
    def __init__(self, responses: Optional[List[Any]] = None) -> None:
        self.responses = list(responses or [])
        self.calls: List[dict] = []

    def request(self, method, url, params=None, json=None, timeout=None):
        self.calls.append({"method": method, "url": url, "params": params, "json": json, "timeout": timeout})
        item = self.responses.pop(0) if self.responses else _Response()
        if isinstance(item, Exception):
            raise item
        return item


def test_rest_store_maps_operations_to_http_verbs() -> None:
    session = _Session([_Response(body={"name": "Relay"}), _Response(), _Response(), _Response()])
    store = RestPathStore("https://db.example.com/", auth_token="tok", session=session, timeout=3.0)

    async def scenario():
        value = await store.get("/sports/S1")
        await store.set("sports/S1", {"name": "Relay"})
        await store.update("", {"/events/": None, "sports": {"S1": {"name": "x"}}})
        await store.set("sports/S1", None)
        return value

    assert asyncio.run(scenario()) == {"name": "Relay"}
    methods = [c["method"] for c in session.calls]
    assert methods == ["GET", "PUT", "PATCH", "DELETE"]
    assert session.calls[0]["url"] == "https://db.example.com/sports/S1.json"
    assert session.calls[0]["params"] == {"auth": "tok"}
    assert session.calls[0]["timeout"] == 3.0
    assert session.calls[2]["url"] == "https://db.example.com/.json"
    assert session.calls[2]["json"] == {"events": None, "sports": {"S1": {"name": "x"}}}


def test_rest_store_error_mapping() -> None:
    session = _Session(
        [
            requests.ConnectionError("down"),
            _Response(status_code=401, body={"error": "Permission denied"}),
            _Response(status_code=500, body={"error": "boom"}),
        ]
    )
    store = RestPathStore("https://db.example.com", session=session)

    async def scenario():
        with pytest.raises(StoreOfflineError):
            await store.get("events")
        with pytest.raises(StoreWriteError):
            await store.set("events/E1", {"name": "x"})
        with pytest.raises(StoreError) as info:
            await store.get("events")
        assert not isinstance(info.value, StoreWriteError)

    asyncio.run(scenario())


def test_rest_store_requires_base_url() -> None:
    with pytest.raises(ValueError):
        RestPathStore("")


def test_rest_subscription_polls_and_delivers_changes_only() -> None:
    session = _Session(
        [
            _Response(body={"E1": {"name": "a"}}),
            _Response(body={"E1": {"name": "a"}}),
            _Response(body={"E1": {"name": "b"}}),
        ]
    )
    store = RestPathStore("https://db.example.com", poll_seconds=0.001, session=session)

    async def scenario():
        seen = []
        unsubscribe = store.subscribe("events", seen.append)
        for _ in range(200):
            if len(session.calls) >= 4:
                break
            await asyncio.sleep(0.005)
        unsubscribe()
        return seen

    seen = asyncio.run(scenario())
    assert seen[:2] == [{"E1": {"name": "a"}}, {"E1": {"name": "b"}}]


def test_rest_store_uses_its_session_from_one_thread_at_a_time() -> None:
    class _SlowSession(_Session):
        def __init__(self) -> None:
            super().__init__()
            self.active = 0
            self.max_active = 0
            self.guard = threading.Lock()

        def request(self, method, url, params=None, json=None, timeout=None):
            with self.guard:
                self.active += 1
                self.max_active = max(self.max_active, self.active)
            time.sleep(0.01)
            with self.guard:
                self.active -= 1
            return super().request(method, url, params=params, json=json, timeout=timeout)

    session = _SlowSession()
    store = RestPathStore("https://db.example.com", session=session)

    async def scenario():
        await asyncio.gather(
            store.get("events"),
            store.get("sports"),
            store.set("sports/S1", {"name": "Relay"}),
            store.remove("events/E1"),
        )

    asyncio.run(scenario())
    assert len(session.calls) == 4
    assert session.max_active == 1
