from __future__ import annotations

import asyncio
import copy
import logging
import threading
from typing import Any, Dict, Optional

import requests

from fieldday.constants import APP_NAME
from fieldday.core.store.base import (
    ErrorCallback,
    PathStore,
    PushIdGenerator,
    StoreError,
    StoreOfflineError,
    StoreWriteError,
    Unsubscribe,
    ValueCallback,
    join_path,
)

LOGGER = logging.getLogger(APP_NAME)

_UNSET = object()


class RestPathStore(PathStore):
    """Realtime database over its REST API (``<base_url>/<path>.json``).

    Subscriptions poll; only changed values are delivered.
    """

    name = "rest"

    def __init__(
        self,
        base_url: str,
        *,
        auth_token: str = "",
        poll_seconds: float = 5.0,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required for the rest store")
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.poll_seconds = poll_seconds
        self.timeout = timeout
        self.session = session or requests.Session()
        self._push_id = PushIdGenerator()
        # requests sessions are not thread-safe; calls run on worker threads
        self._session_lock = threading.Lock()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{join_path(path)}.json"

    def _request(self, method: str, path: str, *, body: Any = None, write: bool = False) -> Any:
        params = {"auth": self.auth_token} if self.auth_token else None
        try:
            with self._session_lock:
                resp = self.session.request(
                    method,
                    self._url(path),
                    params=params,
                    json=body,
                    timeout=self.timeout,
                )
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise StoreOfflineError(f"{method} /{join_path(path)}: {exc}") from exc
        except requests.RequestException as exc:
            raise StoreError(f"{method} /{join_path(path)}: {exc}") from exc

        if resp.status_code >= 400:
            error_cls = StoreWriteError if write else StoreError
            raise error_cls(f"{method} /{join_path(path)} failed: HTTP {resp.status_code} {resp.text[:200]}")
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise StoreError(f"{method} /{join_path(path)} returned invalid JSON") from exc

    async def get(self, path: str) -> Any:
        return await asyncio.to_thread(self._request, "GET", path)

    async def set(self, path: str, value: Any) -> None:
        if value is None:
            await self.remove(path)
            return
        await asyncio.to_thread(self._request, "PUT", path, body=value, write=True)

    async def update(self, path: str, updates: Dict[str, Any]) -> None:
        body = {join_path(rel): value for rel, value in updates.items()}
        await asyncio.to_thread(self._request, "PATCH", path, body=body, write=True)

    async def remove(self, path: str) -> None:
        await asyncio.to_thread(self._request, "DELETE", path, write=True)

    def push_key(self, path: str) -> str:
        return self._push_id()

    def subscribe(
        self,
        path: str,
        on_value: ValueCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Unsubscribe:
        task = asyncio.get_running_loop().create_task(self._poll(path, on_value, on_error))

        def unsubscribe() -> None:
            task.cancel()

        return unsubscribe

    async def _poll(self, path: str, on_value: ValueCallback, on_error: Optional[ErrorCallback]) -> None:
        last: Any = _UNSET
        while True:
            try:
                value = await self.get(path)
            except StoreError as exc:
                LOGGER.warning("store_poll_failed provider=%s path=/%s error=%s", self.name, join_path(path), exc)
                if on_error is not None:
                    on_error(exc)
            else:
                if last is _UNSET or value != last:
                    last = value
                    on_value(copy.deepcopy(value))
            await asyncio.sleep(self.poll_seconds)
