from __future__ import annotations

import random
import time
from typing import Any, Callable, Dict, List, Optional, Protocol

ValueCallback = Callable[[Any], None]
ErrorCallback = Callable[[Exception], None]
Unsubscribe = Callable[[], None]

# Sortable alphabet: '-' < digits < upper < '_' < lower in ASCII.
PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"


class StoreError(RuntimeError):
    pass


class StoreOfflineError(StoreError):
    """The store could not be reached."""


class StoreWriteError(StoreError):
    """The store rejected a write."""


class ResourceClosedError(StoreError):
    pass


class PathStore(Protocol):
    name: str

    def subscribe(
        self,
        path: str,
        on_value: ValueCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Unsubscribe:
        ...

    async def get(self, path: str) -> Any:
        ...

    async def set(self, path: str, value: Any) -> None:
        ...

    async def update(self, path: str, updates: Dict[str, Any]) -> None:
        ...

    async def remove(self, path: str) -> None:
        ...

    def push_key(self, path: str) -> str:
        ...


def split_path(path: str) -> List[str]:
    return [part for part in str(path or "").split("/") if part]


def join_path(*parts: str) -> str:
    segments: List[str] = []
    for part in parts:
        segments.extend(split_path(part))
    return "/".join(segments)


def is_related(a: str, b: str) -> bool:
    """True when one path is an ancestor of (or equal to) the other."""
    sa, sb = split_path(a), split_path(b)
    n = min(len(sa), len(sb))
    return sa[:n] == sb[:n]


class PushIdGenerator:
    """Chronologically sortable 20-char child keys."""

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._clock = clock or (lambda: time.time() * 1000)
        self._rng = rng or random.Random()
        self._last_ms = -1
        self._last_rand: List[int] = [0] * 12

    def __call__(self) -> str:
        now = int(self._clock())
        duplicate = now == self._last_ms
        self._last_ms = now

        time_chars: List[str] = []
        for _ in range(8):
            time_chars.append(PUSH_CHARS[now % 64])
            now //= 64
        time_part = "".join(reversed(time_chars))

        if not duplicate:
            self._last_rand = [self._rng.randrange(64) for _ in range(12)]
        else:
            i = len(self._last_rand) - 1
            while i >= 0 and self._last_rand[i] == 63:
                self._last_rand[i] = 0
                i -= 1
            if i >= 0:
                self._last_rand[i] += 1
        return time_part + "".join(PUSH_CHARS[n] for n in self._last_rand)
