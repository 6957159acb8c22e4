from __future__ import annotations

import threading
from typing import Dict, List, Optional

from carechat.storage.common import OwnerClock, expiry_epoch, is_expired
from carechat.storage.models import StoredMessageRecord


class MemoryMessageStore:
    """In-process message log for tests and local development.

    Mirrors the Postgres table layout: one partition per owner, ordered by
    ``created_at``.
    """

    def __init__(self, *, ttl_days: int = 0) -> None:
        self.ttl_days = ttl_days
        self.records: Dict[str, Dict[str, StoredMessageRecord]] = {}
        self._clock = OwnerClock()
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def append_message(
        self, owner_id: str, conversation_id: str, role: str, content: str
    ) -> StoredMessageRecord:
        record = StoredMessageRecord(
            owner_id=owner_id,
            created_at=self._clock.next(owner_id),
            conversation_id=conversation_id,
            role=role,
            content=content,
            ttl=expiry_epoch(self.ttl_days),
        )
        with self._data_lock:
            self.records.setdefault(owner_id, {})[record.created_at] = record
        return record

    def query_messages(
        self,
        owner_id: str,
        *,
        conversation_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[StoredMessageRecord]:
        with self._data_lock:
            partition = list(self.records.get(owner_id, {}).values())
        rows = [
            r
            for r in partition
            if not is_expired(r)
            and (conversation_id is None or r.conversation_id == conversation_id)
        ]
        rows.sort(key=lambda r: r.created_at)
        if limit is not None:
            rows = rows[-limit:] if limit > 0 else []
        return rows

    def delete_message(self, owner_id: str, created_at: str) -> bool:
        with self._data_lock:
            partition = self.records.get(owner_id)
            if not partition or created_at not in partition:
                return False
            del partition[created_at]
            if not partition:
                self.records.pop(owner_id, None)
            return True

    def close(self) -> None:
        return None
