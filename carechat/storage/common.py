from __future__ import annotations

import threading
import time
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from carechat.storage.models import ConversationSummary, StoredMessageRecord

_ONE_MICROSECOND = timedelta(microseconds=1)


def format_timestamp(moment: datetime) -> str:
    """Render a UTC ISO-8601 sort key with fixed microsecond precision.

    Fixed width keeps lexical order identical to chronological order.
    """
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class OwnerClock:
    """Issues strictly increasing ``created_at`` keys per owner.

    Two messages written in the same microsecond by the same owner would
    collide on the ``(owner_id, created_at)`` key, so the later one is
    bumped forward by one microsecond. Only the most recently active
    ``max_owners`` owners are remembered.
    """

    def __init__(self, max_owners: int = 10000) -> None:
        self.max_owners = max_owners
        self._last: "OrderedDict[str, datetime]" = OrderedDict()
        self._lock = threading.Lock()

    def next(self, owner_id: str, now: Optional[datetime] = None) -> str:
        candidate = now or datetime.now(timezone.utc)
        with self._lock:
            previous = self._last.pop(owner_id, None)
            if previous is not None and candidate <= previous:
                candidate = previous + _ONE_MICROSECOND
            self._last[owner_id] = candidate
            while len(self._last) > self.max_owners:
                self._last.popitem(last=False)
        return format_timestamp(candidate)


def expiry_epoch(ttl_days: int, *, now: Optional[float] = None) -> Optional[int]:
    """Epoch seconds ``ttl_days`` out, or ``None`` when records never expire."""
    if ttl_days <= 0:
        return None
    current = time.time() if now is None else now
    return int(current) + ttl_days * 86400


def is_expired(record: StoredMessageRecord, *, now: Optional[float] = None) -> bool:
    if record.ttl is None:
        return False
    current = time.time() if now is None else now
    return record.ttl <= current


def summarize_conversations(
    records: Iterable[StoredMessageRecord],
) -> List[ConversationSummary]:
    """Aggregate records into per-conversation summaries, newest activity first."""
    summaries: Dict[str, ConversationSummary] = {}
    for record in records:
        summary = summaries.get(record.conversation_id)
        if summary is None:
            summaries[record.conversation_id] = ConversationSummary(
                conversation_id=record.conversation_id,
                created_at=record.created_at,
                updated_at=record.created_at,
                last_message=record.content,
                message_count=1,
            )
            continue
        summary.message_count += 1
        if record.created_at < summary.created_at:
            summary.created_at = record.created_at
        if record.created_at >= summary.updated_at:
            summary.updated_at = record.created_at
            summary.last_message = record.content
    return sorted(summaries.values(), key=lambda s: s.updated_at, reverse=True)
