"""In-memory cache of recently touched drafts, per tenant and entity."""

from __future__ import annotations

import copy
import os
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from request_context import current_tenant


DEFAULT_MAX_ENTRIES = int(os.getenv("CLAIMS_DRAFT_CACHE_MAX", "100"))
DRAFT_UUID_FIELDS = ("DraftUUID", "DraftAdministrativeData_DraftUUID", "draftAdministrativeData_DraftUUID")


def draft_uuid_of(instance: Any) -> Any:
    if not isinstance(instance, dict):
        return None
    for name in DRAFT_UUID_FIELDS:
        value = instance.get(name)
        if value:
            return value
    return None


@dataclass
class DraftCacheEntry:
    keys: dict
    data: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class _EntityBucket:
    def __init__(self) -> None:
        self.entries: "OrderedDict[str, DraftCacheEntry]" = OrderedDict()
        self.last_key: str | None = None


class DraftCache:
    """Best-effort resumability hint, never a source of truth.

    Buckets are keyed by ``(current_tenant(), entity)``. Each bucket keeps at
    most ``max_entries`` drafts in least-recently-touched order; ``last_key``
    always names a live entry or ``None``.
    """

    def __init__(self, max_entries: int | None = None) -> None:
        self._max = max(1, max_entries if max_entries is not None else DEFAULT_MAX_ENTRIES)
        self._buckets: Dict[Tuple[str, str], _EntityBucket] = {}

    def _bucket(self, entity: str, create: bool = False) -> _EntityBucket | None:
        scope = (current_tenant(), entity)
        bucket = self._buckets.get(scope)
        if bucket is None and create:
            bucket = _EntityBucket()
            self._buckets[scope] = bucket
        return bucket

    def _touch(self, bucket: _EntityBucket, key: str) -> None:
        bucket.entries.move_to_end(key)
        bucket.last_key = key
        while len(bucket.entries) > self._max:
            evicted, _ = bucket.entries.popitem(last=False)
            if bucket.last_key == evicted:
                bucket.last_key = None

    def remember(self, entity: str, instance: Any) -> DraftCacheEntry | None:
        draft_uuid = draft_uuid_of(instance)
        record_id = instance.get("ID") if isinstance(instance, dict) else None
        if not draft_uuid or record_id is None:
            return None
        bucket = self._bucket(entity, create=True)
        key = str(record_id)
        entry = DraftCacheEntry(
            keys={"ID": record_id, "DraftUUID": draft_uuid, "IsActiveEntity": False},
            data=copy.deepcopy(instance),
        )
        bucket.entries[key] = entry
        self._touch(bucket, key)
        return copy.deepcopy(entry)

    def refresh(self, entity: str, record_id: Any, data: dict) -> bool:
        if record_id is None:
            return False
        bucket = self._bucket(entity)
        key = str(record_id)
        if bucket is None or key not in bucket.entries:
            return False
        entry = bucket.entries[key]
        entry.data = {**entry.data, **copy.deepcopy(data)}
        entry.timestamp = time.time()
        self._touch(bucket, key)
        return True

    def get(self, entity: str, record_id: Any) -> DraftCacheEntry | None:
        if record_id is None:
            return None
        bucket = self._bucket(entity)
        if bucket is None:
            return None
        entry = bucket.entries.get(str(record_id))
        return copy.deepcopy(entry) if entry else None

    def forget(self, entity: str, record_id: Any) -> bool:
        bucket = self._bucket(entity)
        if bucket is None or record_id is None:
            return False
        key = str(record_id)
        removed = bucket.entries.pop(key, None) is not None
        if bucket.last_key == key:
            bucket.last_key = None
        if not bucket.entries:
            self._buckets.pop((current_tenant(), entity), None)
        return removed

    def scan(self, entity: str) -> List[DraftCacheEntry]:
        bucket = self._bucket(entity)
        if bucket is None:
            return []
        return [copy.deepcopy(e) for e in bucket.entries.values()]

    def find_by_draft_uuid(self, entity: str, draft_uuid: Any) -> DraftCacheEntry | None:
        if not draft_uuid:
            return None
        for entry in self.scan(entity):
            if entry.keys.get("DraftUUID") == draft_uuid:
                return entry
        return None

    def last(self, entity: str) -> DraftCacheEntry | None:
        bucket = self._bucket(entity)
        if bucket is None or bucket.last_key is None:
            return None
        return self.get(entity, bucket.last_key)

    def size(self, entity: str) -> int:
        bucket = self._bucket(entity)
        return len(bucket.entries) if bucket else 0

    def clear(self) -> None:
        self._buckets.clear()
