from __future__ import annotations

import time
from typing import Any, Dict, Iterator, Optional, Tuple

from fieldday.constants import VERSION_KEY


def now_ms() -> int:
    return int(time.time() * 1000)


def iter_entities(collection: Optional[Dict[str, Any]]) -> Iterator[Tuple[str, Any]]:
    """Yield (key, record) pairs of a collection, skipping the version stamp."""
    if not isinstance(collection, dict):
        return
    for key, value in collection.items():
        if key == VERSION_KEY:
            continue
        yield key, value
