"""Dead-letter inspection for the durable channels.

Messages that exhaust their receive budget end up in a dead-letter channel
with their original body and the attributes recorded when they were moved.
Nothing is dropped automatically except by the retention sweep; an
operator lists, inspects, redrives or discards them.
"""

import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from lineage_pipeline.core.channel import (
    ATTR_DEAD_LETTERED_AT,
    ATTR_REASON,
    ATTR_RECEIVE_COUNT,
    ATTR_SOURCE_CHANNEL,
    ChannelMessage,
    Clock,
    DurableChannel,
)
from lineage_pipeline.observability.logging import get_logger

logger = get_logger(__name__)

_DEAD_LETTER_ATTRIBUTES = (ATTR_SOURCE_CHANNEL, ATTR_REASON, ATTR_RECEIVE_COUNT, ATTR_DEAD_LETTERED_AT)


@dataclass
class DeadLetterEntry:
    """Single message parked in a dead-letter channel.

    Attributes:
        message_id: Id of the message in the dead-letter channel
        body: Original message body
        source_channel: Channel the message was moved from
        reason: Failure reason of the last delivery
        receive_count: Deliveries made before it was parked
        dead_lettered_at: When it was parked
        attributes: Remaining producer attributes
    """
    message_id: str
    body: str
    source_channel: str
    reason: str
    receive_count: int
    dead_lettered_at: datetime
    attributes: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: ChannelMessage) -> "DeadLetterEntry":
        attrs = message.attributes
        parked_at = float(attrs.get(ATTR_DEAD_LETTERED_AT, message.sent_at))
        return cls(
            message_id=message.message_id,
            body=message.body,
            source_channel=attrs.get(ATTR_SOURCE_CHANNEL, ""),
            reason=attrs.get(ATTR_REASON, "unknown"),
            receive_count=int(attrs.get(ATTR_RECEIVE_COUNT, 0)),
            dead_lettered_at=datetime.fromtimestamp(parked_at, tz=timezone.utc),
            attributes={k: v for k, v in attrs.items() if k not in _DEAD_LETTER_ATTRIBUTES},
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert entry to dictionary."""
        return {
            "message_id": self.message_id,
            "body": self.body,
            "source_channel": self.source_channel,
            "reason": self.reason,
            "receive_count": self.receive_count,
            "dead_lettered_at": self.dead_lettered_at.isoformat(),
            "attributes": self.attributes,
        }


class DeadLetterQueue:
    """Operator view over one dead-letter channel.

    Args:
        channel: The dead-letter channel
        source: Channel that redriven messages are sent back to
        retention_days: Age after which parked messages are purged
        clock: Time source for the retention sweep
    """

    def __init__(
        self,
        channel: DurableChannel,
        source: DurableChannel,
        retention_days: int = 14,
        clock: Clock = time.time,
    ) -> None:
        self.channel = channel
        self.source = source
        self.retention_days = retention_days
        self._clock = clock

    async def _entries(self) -> list[DeadLetterEntry]:
        # Retrace and record channels are small; a full scan is fine
        messages = await self.channel.peek(limit=1_000_000)
        return [DeadLetterEntry.from_message(m) for m in messages]

    async def list_entries(
        self,
        limit: int = 100,
        offset: int = 0,
        reason: str | None = None,
    ) -> list[DeadLetterEntry]:
        """List parked messages, newest first.

        Args:
            limit: Maximum number of entries
            offset: Offset for pagination
            reason: Only entries whose reason starts with this text

        Returns:
            List of dead-letter entries
        """
        entries = await self._entries()
        if reason:
            entries = [e for e in entries if e.reason.startswith(reason)]
        entries.sort(key=lambda e: e.dead_lettered_at, reverse=True)
        return entries[offset:offset + limit]

    async def count_entries(self, reason: str | None = None) -> int:
        """Count parked messages, optionally only those whose reason starts with ``reason``."""
        if reason:
            return sum(1 for e in await self._entries() if e.reason.startswith(reason))
        depth = await self.channel.depth()
        return depth["visible"] + depth["in_flight"]

    async def get_entry(self, message_id: str) -> DeadLetterEntry | None:
        message = await self.channel.get(message_id)
        return DeadLetterEntry.from_message(message) if message else None

    async def redrive(self, message_id: str) -> str | None:
        """Send a parked message back to its source channel.

        The message re-enters with a fresh receive budget and without the
        dead-letter attributes.

        Returns:
            The new message id, or None if the entry does not exist
        """
        entry = await self.get_entry(message_id)
        if entry is None:
            return None
        new_id = await self.source.send(entry.body, entry.attributes)
        await self.channel.delete(message_id)
        logger.info(
            "dead_letter_redriven",
            message_id=message_id,
            new_message_id=new_id,
            source_channel=self.source.name,
        )
        return new_id

    async def redrive_all(self) -> int:
        """Redrive every parked message. Returns the number redriven."""
        count = 0
        for entry in await self._entries():
            if await self.redrive(entry.message_id):
                count += 1
        return count

    async def discard(self, message_id: str) -> bool:
        """Delete a parked message for good."""
        deleted = await self.channel.delete(message_id)
        if deleted:
            logger.info("dead_letter_discarded", message_id=message_id, channel=self.channel.name)
        return deleted

    async def purge_expired(self, now: float | None = None) -> int:
        """Delete messages parked longer than the retention period.

        Returns:
            Number of messages deleted
        """
        now = self._clock() if now is None else now
        cutoff = now - self.retention_days * 86400
        purged = 0
        for entry in await self._entries():
            if entry.dead_lettered_at.timestamp() <= cutoff and await self.channel.delete(entry.message_id):
                purged += 1
        if purged:
            logger.info("dead_letters_purged", channel=self.channel.name, count=purged)
        return purged

    async def get_statistics(self) -> dict[str, Any]:
        """Summarize the parked messages.

        Returns:
            Dictionary with total, per-reason counts and the age range
        """
        entries = await self._entries()
        by_reason = Counter(e.reason.split(":", 1)[0] for e in entries)
        parked = sorted(e.dead_lettered_at for e in entries)
        return {
            "channel": self.channel.name,
            "source_channel": self.source.name,
            "total": len(entries),
            "by_reason": dict(by_reason),
            "oldest": parked[0].isoformat() if parked else None,
            "newest": parked[-1].isoformat() if parked else None,
            "retention_days": self.retention_days,
        }
