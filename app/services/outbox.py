"""
Optimistic send reconciliation, modelled from the client's side.

A sent message appears immediately as a local `sending` entry, is swapped
in place for the server record once confirmed, or flips to `failed`. A retry
reuses the original request id, so the server resolves it to the same row
and the list never shows the message twice.
"""

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from app.db.base_class import as_utc, utcnow

logger = logging.getLogger(__name__)

SENDING = "sending"
SENT = "sent"
FAILED = "failed"


@dataclass
class LocalMessage:
    local_id: str
    request_id: Optional[str]
    content: Optional[str]
    created_at: datetime
    status: str = SENDING
    sender_id: Optional[str] = None
    server_id: Optional[str] = None
    message_type: str = "text"
    error: Optional[str] = None
    # Local position kept by retried sends; confirmed first sends sort by server time
    sort_at: Optional[datetime] = None

    @property
    def id(self) -> str:
        return self.server_id or self.local_id


def _field(server_message: Any, name: str, default: Any = None) -> Any:
    if isinstance(server_message, dict):
        return server_message.get(name, default)
    return getattr(server_message, name, default)


def order_messages(entries: Iterable[LocalMessage]) -> List[LocalMessage]:
    """Chronological order by (sort_at or created_at, id)."""
    return sorted(entries, key=lambda entry: (as_utc(entry.sort_at or entry.created_at), entry.id))


Transport = Callable[[str, str], Awaitable[Any]]


class OptimisticOutbox:
    """
    Client-side message list for one conversation.

    Args:
        transport: coroutine `(content, request_id) -> server message`
            (ORM object, schema or dict with id/created_at/request_id)
    """

    def __init__(self, transport: Transport, sender_id: Optional[str] = None,
                 clock: Callable[[], datetime] = utcnow):
        self._transport = transport
        self.sender_id = sender_id
        self._clock = clock
        self._entries: List[LocalMessage] = []

    @property
    def entries(self) -> List[LocalMessage]:
        return list(self._entries)

    def get(self, local_or_server_id: str) -> Optional[LocalMessage]:
        for entry in self._entries:
            if local_or_server_id in (entry.local_id, entry.server_id):
                return entry
        return None

    def _index_of(self, local_id: str) -> int:
        for index, entry in enumerate(self._entries):
            if entry.local_id == local_id:
                return index
        raise KeyError(local_id)

    async def send(self, content: str) -> LocalMessage:
        entry = LocalMessage(
            local_id=f"local-{uuid.uuid4()}",
            request_id=str(uuid.uuid4()),
            content=content,
            created_at=self._clock(),
            sender_id=self.sender_id,
        )
        self._entries.append(entry)
        return await self._deliver(entry.local_id)

    async def retry_send(self, local_id: str) -> LocalMessage:
        """Re-issue a failed send with the same request id, keeping its position."""
        index = self._index_of(local_id)
        entry = self._entries[index]
        if entry.status != FAILED:
            raise ValueError(f"Only failed messages can be retried (status={entry.status})")
        self._entries[index] = replace(
            entry, status=SENDING, error=None, sort_at=entry.sort_at or entry.created_at
        )
        return await self._deliver(local_id)

    async def _deliver(self, local_id: str) -> LocalMessage:
        entry = self._entries[self._index_of(local_id)]
        try:
            server_message = await self._transport(entry.content, entry.request_id)
        except Exception as e:
            logger.info(f"Send {local_id} failed: {e}")
            return self.fail(local_id, str(e))
        return self.confirm(local_id, server_message)

    def confirm(self, local_id: str, server_message: Any) -> LocalMessage:
        """Replace the local entry with the server's record."""
        index = self._index_of(local_id)
        server_id = _field(server_message, "id")

        # A push for the same message may have arrived before the response
        self._entries = [
            e for i, e in enumerate(self._entries)
            if i == index or e.server_id != server_id
        ]
        index = self._index_of(local_id)

        entry = self._entries[index]
        created_at = _field(server_message, "created_at") or entry.created_at
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        confirmed = replace(
            entry,
            server_id=server_id,
            created_at=created_at,
            status=SENT,
            error=None,
            message_type=_field(server_message, "message_type", entry.message_type),
        )
        self._entries[index] = confirmed
        return confirmed

    def fail(self, local_id: str, error: Optional[str] = None) -> LocalMessage:
        index = self._index_of(local_id)
        failed = replace(self._entries[index], status=FAILED, error=error)
        self._entries[index] = failed
        return failed

    def ingest(self, server_message: Any) -> LocalMessage:
        """Merge a pushed server message, deduplicating by id and request id."""
        server_id = _field(server_message, "id")
        existing = self.get(server_id) if server_id else None
        if existing is not None:
            return existing

        request_id = _field(server_message, "request_id")
        sender_id = _field(server_message, "sender_id")
        if request_id:
            for entry in self._entries:
                if entry.request_id == request_id and entry.server_id is None \
                        and (self.sender_id is None or sender_id == self.sender_id):
                    return self.confirm(entry.local_id, server_message)

        created_at = _field(server_message, "created_at") or self._clock()
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        entry = LocalMessage(
            local_id=server_id,
            request_id=request_id,
            content=_field(server_message, "content"),
            created_at=created_at,
            status=SENT,
            sender_id=sender_id,
            server_id=server_id,
            message_type=_field(server_message, "message_type", "text"),
        )
        self._entries.append(entry)
        return entry

    def ordered(self) -> List[LocalMessage]:
        return order_messages(self._entries)

    def snapshot(self) -> Dict[str, str]:
        """Status by visible id."""
        return {entry.id: entry.status for entry in self.ordered()}
