from __future__ import annotations

import enum
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fieldday.constants import VERSION_KEY


class DiffStatus(str, enum.Enum):
    ADDED = "added"
    REMOVED = "removed"
    CHANGED = "changed"


@dataclass(frozen=True)
class DiffEntry:
    status: DiffStatus
    old_value: Any = None
    new_value: Any = None

    @property
    def added(self) -> bool:
        return self.status is DiffStatus.ADDED

    @property
    def removed(self) -> bool:
        return self.status is DiffStatus.REMOVED

    @property
    def changed(self) -> bool:
        return self.status is DiffStatus.CHANGED

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {self.status.value: True}
        if self.status is not DiffStatus.ADDED:
            out["oldValue"] = self.old_value
        if self.status is not DiffStatus.REMOVED:
            out["newValue"] = self.new_value
        return out


DiffMap = Dict[str, DiffEntry]


def _fingerprint(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def compare_collections(old: Optional[Dict[str, Any]], new: Optional[Dict[str, Any]]) -> DiffMap:
    """Key-wise diff of two collections, ``old`` being the baseline.

    Keys only in ``new`` are added, keys only in ``old`` are removed, and keys
    in both whose serialized content differs are changed. The version stamp is
    ignored and unchanged keys are omitted.
    """
    old = old or {}
    new = new or {}
    diff: DiffMap = {}
    for key in sorted(set(old) | set(new)):
        if key == VERSION_KEY:
            continue
        if key not in old:
            diff[key] = DiffEntry(DiffStatus.ADDED, new_value=new[key])
        elif key not in new:
            diff[key] = DiffEntry(DiffStatus.REMOVED, old_value=old[key])
        elif _fingerprint(old[key]) != _fingerprint(new[key]):
            diff[key] = DiffEntry(DiffStatus.CHANGED, old_value=old[key], new_value=new[key])
    return diff


def diff_to_dict(diff: DiffMap) -> Dict[str, Dict[str, Any]]:
    return {key: entry.to_dict() for key, entry in diff.items()}
