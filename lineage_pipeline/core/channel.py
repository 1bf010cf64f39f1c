"""Durable event channels.

A channel provides at-least-once delivery to a single logical consumer
group. A received message stays hidden for a visibility window; if it is
not acknowledged in time it becomes visible again and is redelivered. Each
receive counts against the message's ``max_receive_count``; a message that
would exceed it is moved to the channel's dead-letter channel instead of
being delivered again. There is no ordering guarantee across messages and
consumers must tolerate duplicates.

Two backends are provided:

- ``InMemoryChannel`` for a single process (development and tests)
- ``RedisChannel`` for workers sharing a Redis instance
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any
from uuid import uuid4

import redis.asyncio as redis
from pydantic import BaseModel, Field

from lineage_pipeline.core.errors import ChannelError, ChannelFullError, ChannelUnavailableError
from lineage_pipeline.observability.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

# Attribute names set on dead-lettered messages
ATTR_SOURCE_CHANNEL = "source_channel"
ATTR_REASON = "reason"
ATTR_RECEIVE_COUNT = "receive_count"
ATTR_DEAD_LETTERED_AT = "dead_lettered_at"

REASON_MAX_RECEIVES = "max_receive_count_exceeded"


class ChannelMessage(BaseModel):
    """A message stored in a channel.

    Attributes:
        message_id: Unique message identifier
        body: Opaque message body (JSON text for pipeline envelopes)
        attributes: String attributes (dead-letter metadata lives here)
        sent_at: Epoch seconds when the message entered this channel
    """

    message_id: str = Field(default_factory=lambda: uuid4().hex)
    body: str
    attributes: dict[str, str] = Field(default_factory=dict)
    sent_at: float


class Delivery(BaseModel):
    """A received, not yet acknowledged, message.

    The ``receipt`` is specific to this delivery; once the visibility window
    expires and the message is delivered again, older receipts go stale.
    """

    message_id: str
    body: str
    attributes: dict[str, str] = Field(default_factory=dict)
    receipt: str
    receive_count: int
    sent_at: float


class DurableChannel(ABC):
    """Base class for durable channels.

    Args:
        name: Channel name
        visibility_timeout: Seconds a delivered message stays hidden
        max_receive_count: Deliveries allowed before dead-lettering
        dead_letter: Channel receiving messages that exhaust their budget
        max_depth: Optional cap on stored messages (sends beyond it fail)
    """

    def __init__(
        self,
        name: str,
        visibility_timeout: float = 300.0,
        max_receive_count: int = 3,
        dead_letter: "DurableChannel | None" = None,
        max_depth: int | None = None,
    ) -> None:
        if max_receive_count < 1:
            raise ValueError("max_receive_count must be at least 1")
        self.name = name
        self.visibility_timeout = visibility_timeout
        self.max_receive_count = max_receive_count
        self.dead_letter_channel = dead_letter
        self.max_depth = max_depth

    @abstractmethod
    async def send(self, body: str, attributes: dict[str, str] | None = None) -> str:
        """Store a message and return its id.

        Raises:
            ChannelFullError: The channel is at ``max_depth``
            ChannelUnavailableError: The backend could not be reached
        """

    @abstractmethod
    async def receive(self, max_messages: int = 1, wait_seconds: float = 0.0) -> list[Delivery]:
        """Receive up to ``max_messages`` visible messages.

        Waits up to ``wait_seconds`` for at least one message to become
        visible. Messages over their receive budget are dead-lettered here.
        """

    @abstractmethod
    async def ack(self, delivery: Delivery) -> bool:
        """Delete a delivered message.

        Returns:
            False if the receipt is stale (the message was redelivered)
        """

    @abstractmethod
    async def release(self, delivery: Delivery, delay: float = 0.0) -> bool:
        """Make an in-flight message visible again after ``delay`` seconds."""

    @abstractmethod
    async def dead_letter(self, delivery: Delivery, reason: str) -> bool:
        """Move an in-flight message to the dead-letter channel now.

        The message is removed from this channel only after the dead-letter
        channel has accepted it.

        Returns:
            False if the receipt is stale or no dead-letter channel is set

        Raises:
            ChannelError: The dead-letter channel rejected the message; it
                stays in flight here
        """

    @abstractmethod
    async def peek(self, limit: int = 100) -> list[ChannelMessage]:
        """List stored messages without delivering them."""

    @abstractmethod
    async def get(self, message_id: str) -> ChannelMessage | None:
        """Get a stored message by id."""

    @abstractmethod
    async def delete(self, message_id: str) -> bool:
        """Delete a stored message regardless of its state."""

    @abstractmethod
    async def depth(self) -> dict[str, int]:
        """Return ``{"visible": n, "in_flight": m}``."""

    @abstractmethod
    async def purge(self) -> int:
        """Delete every message. Returns the number deleted."""

    def _dead_letter_attributes(
        self,
        message: ChannelMessage | Delivery,
        receive_count: int,
        reason: str,
        now: float,
    ) -> dict[str, str]:
        return {
            **message.attributes,
            ATTR_SOURCE_CHANNEL: self.name,
            ATTR_REASON: reason,
            ATTR_RECEIVE_COUNT: str(receive_count),
            ATTR_DEAD_LETTERED_AT: str(now),
        }

    async def _forward_to_dead_letter(
        self,
        message: ChannelMessage | Delivery,
        receive_count: int,
        reason: str,
        now: float,
    ) -> None:
        if self.dead_letter_channel is None:
            return
        await self.dead_letter_channel.send(
            message.body,
            self._dead_letter_attributes(message, receive_count, reason, now),
        )
        logger.warning(
            "message_dead_lettered",
            channel=self.name,
            dead_letter_channel=self.dead_letter_channel.name,
            message_id=message.message_id,
            receive_count=receive_count,
            reason=reason,
        )

    async def _park_exhausted(self, delivery: Delivery, now: float) -> None:
        """Forward a message over its receive budget, then drop it here.

        The message is claimed (in flight) while it is forwarded. If the
        dead-letter channel rejects it, it stays in flight and is retried
        when its visibility window ends.
        """
        try:
            await self._forward_to_dead_letter(delivery, delivery.receive_count - 1, REASON_MAX_RECEIVES, now)
        except ChannelError as e:
            logger.error(
                "dead_letter_forward_failed",
                channel=self.name,
                message_id=delivery.message_id,
                error=str(e),
            )
            return
        await self.ack(delivery)


class InMemoryChannel(DurableChannel):
    """Single-process channel.

    ``clock`` and ``sleep`` are injectable so visibility windows and long
    polls can be driven by a fake clock.

    Example:
        >>> dlq = InMemoryChannel("records-dlq")
        >>> channel = InMemoryChannel("records", dead_letter=dlq)
        >>> await channel.send('{"node_id": "a"}')
        >>> [delivery] = await channel.receive()
        >>> await channel.ack(delivery)
    """

    def __init__(
        self,
        name: str,
        visibility_timeout: float = 300.0,
        max_receive_count: int = 3,
        dead_letter: DurableChannel | None = None,
        max_depth: int | None = None,
        clock: Clock = time.time,
        sleep: Sleep = asyncio.sleep,
        poll_interval: float = 0.1,
    ) -> None:
        super().__init__(name, visibility_timeout, max_receive_count, dead_letter, max_depth)
        self._clock = clock
        self._sleep = sleep
        self.poll_interval = poll_interval
        self._messages: dict[str, ChannelMessage] = {}
        self._ready: deque[str] = deque()
        self._in_flight: dict[str, tuple[str, float]] = {}  # id -> (receipt, visible_at)
        self._receive_counts: dict[str, int] = {}

    async def send(self, body: str, attributes: dict[str, str] | None = None) -> str:
        if self.max_depth is not None and len(self._messages) >= self.max_depth:
            raise ChannelFullError(self.name, self.max_depth)
        message = ChannelMessage(body=body, attributes=dict(attributes or {}), sent_at=self._clock())
        self._messages[message.message_id] = message
        self._ready.append(message.message_id)
        return message.message_id

    def _requeue_expired(self, now: float) -> None:
        expired = [mid for mid, (_, visible_at) in self._in_flight.items() if visible_at <= now]
        for message_id in expired:
            del self._in_flight[message_id]
            self._ready.append(message_id)

    async def _take(self, max_messages: int) -> list[Delivery]:
        now = self._clock()
        self._requeue_expired(now)
        deliveries: list[Delivery] = []
        while self._ready and len(deliveries) < max_messages:
            message_id = self._ready.popleft()
            message = self._messages.get(message_id)
            if message is None:
                continue
            count = self._receive_counts.get(message_id, 0) + 1
            exhausted = count > self.max_receive_count and self.dead_letter_channel is not None
            if not exhausted:
                self._receive_counts[message_id] = count
            receipt = uuid4().hex
            self._in_flight[message_id] = (receipt, now + self.visibility_timeout)
            delivery = Delivery(
                message_id=message_id,
                body=message.body,
                attributes=dict(message.attributes),
                receipt=receipt,
                receive_count=count,
                sent_at=message.sent_at,
            )
            if exhausted:
                await self._park_exhausted(delivery, now)
                continue
            deliveries.append(delivery)
        return deliveries

    async def receive(self, max_messages: int = 1, wait_seconds: float = 0.0) -> list[Delivery]:
        deadline = self._clock() + wait_seconds
        while True:
            deliveries = await self._take(max_messages)
            remaining = deadline - self._clock()
            if deliveries or remaining <= 0:
                return deliveries
            await self._sleep(min(self.poll_interval, remaining))

    def _current_receipt(self, message_id: str) -> str | None:
        entry = self._in_flight.get(message_id)
        return entry[0] if entry else None

    def _forget(self, message_id: str) -> None:
        self._messages.pop(message_id, None)
        self._in_flight.pop(message_id, None)
        self._receive_counts.pop(message_id, None)

    async def ack(self, delivery: Delivery) -> bool:
        if self._current_receipt(delivery.message_id) != delivery.receipt:
            logger.debug("stale_receipt", channel=self.name, message_id=delivery.message_id)
            return False
        self._forget(delivery.message_id)
        return True

    async def release(self, delivery: Delivery, delay: float = 0.0) -> bool:
        if self._current_receipt(delivery.message_id) != delivery.receipt:
            return False
        if delay > 0:
            self._in_flight[delivery.message_id] = (delivery.receipt, self._clock() + delay)
        else:
            del self._in_flight[delivery.message_id]
            self._ready.append(delivery.message_id)
        return True

    async def dead_letter(self, delivery: Delivery, reason: str) -> bool:
        if self.dead_letter_channel is None:
            return False
        if self._current_receipt(delivery.message_id) != delivery.receipt:
            return False
        message = self._messages[delivery.message_id]
        await self._forward_to_dead_letter(message, delivery.receive_count, reason, self._clock())
        self._forget(delivery.message_id)
        return True

    async def peek(self, limit: int = 100) -> list[ChannelMessage]:
        return sorted(self._messages.values(), key=lambda m: m.sent_at)[:limit]

    async def get(self, message_id: str) -> ChannelMessage | None:
        return self._messages.get(message_id)

    async def delete(self, message_id: str) -> bool:
        if message_id not in self._messages:
            return False
        self._forget(message_id)
        return True

    async def depth(self) -> dict[str, int]:
        self._requeue_expired(self._clock())
        return {"visible": len(self._messages) - len(self._in_flight), "in_flight": len(self._in_flight)}

    async def purge(self) -> int:
        count = len(self._messages)
        self._messages.clear()
        self._ready.clear()
        self._in_flight.clear()
        self._receive_counts.clear()
        return count


# KEYS: ready, inflight, messages, receives, receipts
# ARGV: now, limit, visible_at, max_receives (-1 for no limit), receipt...
_CLAIM_SCRIPT = """
local expired = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1])
for _, id in ipairs(expired) do
    redis.call('ZREM', KEYS[2], id)
    redis.call('HDEL', KEYS[5], id)
    redis.call('RPUSH', KEYS[1], id)
end
local limit = tonumber(ARGV[2])
local max_receives = tonumber(ARGV[4])
local claimed = {}
local n = 0
while n < limit do
    local id = redis.call('LPOP', KEYS[1])
    if not id then
        break
    end
    local raw = redis.call('HGET', KEYS[3], id)
    if raw then
        n = n + 1
        local count = tonumber(redis.call('HGET', KEYS[4], id) or '0') + 1
        if max_receives < 0 or count <= max_receives then
            redis.call('HSET', KEYS[4], id, count)
        end
        local receipt = ARGV[4 + n]
        redis.call('ZADD', KEYS[2], ARGV[3], id)
        redis.call('HSET', KEYS[5], id, receipt)
        table.insert(claimed, id)
        table.insert(claimed, raw)
        table.insert(claimed, count)
        table.insert(claimed, receipt)
    end
end
return claimed
"""

# KEYS: ready, inflight, messages, receives, receipts
# ARGV: message_id, receipt
_ACK_SCRIPT = """
if redis.call('HGET', KEYS[5], ARGV[1]) ~= ARGV[2] then
    return 0
end
redis.call('ZREM', KEYS[2], ARGV[1])
redis.call('LREM', KEYS[1], 0, ARGV[1])
redis.call('HDEL', KEYS[3], ARGV[1])
redis.call('HDEL', KEYS[4], ARGV[1])
redis.call('HDEL', KEYS[5], ARGV[1])
return 1
"""

# KEYS: ready, inflight, messages, receives, receipts
# ARGV: message_id, receipt, visible_at ('' to requeue now)
_RELEASE_SCRIPT = """
if redis.call('HGET', KEYS[5], ARGV[1]) ~= ARGV[2] then
    return 0
end
if ARGV[3] ~= '' then
    redis.call('ZADD', KEYS[2], ARGV[3], ARGV[1])
else
    redis.call('ZREM', KEYS[2], ARGV[1])
    redis.call('HDEL', KEYS[5], ARGV[1])
    redis.call('RPUSH', KEYS[1], ARGV[1])
end
return 1
"""

SCRIPTS = {
    "claim": _CLAIM_SCRIPT,
    "ack": _ACK_SCRIPT,
    "release": _RELEASE_SCRIPT,
}


class RedisChannel(DurableChannel):
    """Channel shared by several worker processes through Redis.

    Keys (under ``{prefix}:channel:{name}``):

    - ``:ready``     list of visible message ids
    - ``:inflight``  sorted set of in-flight ids scored by visible-at time
    - ``:messages``  hash of id -> message JSON
    - ``:receives``  hash of id -> receive count
    - ``:receipts``  hash of id -> current receipt

    Claiming (with the requeue of expired claims), acknowledging and
    releasing each run as one Lua script, so a message is always either
    ready or in flight and is owned by at most one consumer per
    visibility window.
    """

    def __init__(
        self,
        name: str,
        redis_url: str = "redis://localhost:6379/0",
        prefix: str = "lineage",
        visibility_timeout: float = 300.0,
        max_receive_count: int = 3,
        dead_letter: DurableChannel | None = None,
        max_depth: int | None = None,
        poll_interval: float = 0.5,
        client: Any = None,
    ) -> None:
        super().__init__(name, visibility_timeout, max_receive_count, dead_letter, max_depth)
        self.redis_url = redis_url
        self.prefix = prefix
        self.poll_interval = poll_interval
        self._redis: Any = client
        self._scripts: dict[str, Any] = {}

    async def connect(self) -> None:
        """Connect to Redis."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
            logger.info("connected_to_redis", channel=self.name)

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self._scripts.clear()
            logger.info("disconnected_from_redis", channel=self.name)

    def _key(self, suffix: str) -> str:
        return f"{self.prefix}:channel:{self.name}:{suffix}"

    def _keys(self) -> list[str]:
        return [self._key(s) for s in ("ready", "inflight", "messages", "receives", "receipts")]

    async def _client(self) -> Any:
        await self.connect()
        return self._redis

    async def _run_script(self, name: str, args: list[Any]) -> Any:
        client = await self._client()
        script = self._scripts.get(name)
        if script is None:
            script = self._scripts[name] = client.register_script(SCRIPTS[name])
        try:
            return await script(keys=self._keys(), args=args)
        except redis.RedisError as e:
            raise ChannelUnavailableError(self.name, str(e)) from e

    async def send(self, body: str, attributes: dict[str, str] | None = None) -> str:
        client = await self._client()
        message = ChannelMessage(body=body, attributes=dict(attributes or {}), sent_at=time.time())
        try:
            if self.max_depth is not None:
                stored = await client.hlen(self._key("messages"))
                if stored >= self.max_depth:
                    raise ChannelFullError(self.name, self.max_depth)
            async with client.pipeline(transaction=True) as pipe:
                pipe.hset(self._key("messages"), message.message_id, message.model_dump_json())
                pipe.rpush(self._key("ready"), message.message_id)
                await pipe.execute()
        except redis.RedisError as e:
            raise ChannelUnavailableError(self.name, str(e)) from e
        return message.message_id

    async def _take(self, max_messages: int) -> list[Delivery]:
        now = time.time()
        exhaustible = self.dead_letter_channel is not None
        claimed = await self._run_script("claim", [
            now,
            max_messages,
            now + self.visibility_timeout,
            self.max_receive_count if exhaustible else -1,
            *(uuid4().hex for _ in range(max_messages)),
        ])
        deliveries: list[Delivery] = []
        for i in range(0, len(claimed), 4):
            message_id, raw, count, receipt = claimed[i:i + 4]
            message = ChannelMessage.model_validate_json(raw)
            delivery = Delivery(
                message_id=message_id,
                body=message.body,
                attributes=message.attributes,
                receipt=receipt,
                receive_count=int(count),
                sent_at=message.sent_at,
            )
            if exhaustible and delivery.receive_count > self.max_receive_count:
                await self._park_exhausted(delivery, now)
                continue
            deliveries.append(delivery)
        return deliveries

    async def receive(self, max_messages: int = 1, wait_seconds: float = 0.0) -> list[Delivery]:
        deadline = time.monotonic() + wait_seconds
        while True:
            deliveries = await self._take(max_messages)
            remaining = deadline - time.monotonic()
            if deliveries or remaining <= 0:
                return deliveries
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def _forget(self, client: Any, message_id: str) -> None:
        async with client.pipeline(transaction=True) as pipe:
            pipe.zrem(self._key("inflight"), message_id)
            pipe.lrem(self._key("ready"), 0, message_id)
            pipe.hdel(self._key("messages"), message_id)
            pipe.hdel(self._key("receives"), message_id)
            pipe.hdel(self._key("receipts"), message_id)
            await pipe.execute()

    async def ack(self, delivery: Delivery) -> bool:
        if not await self._run_script("ack", [delivery.message_id, delivery.receipt]):
            logger.debug("stale_receipt", channel=self.name, message_id=delivery.message_id)
            return False
        return True

    async def release(self, delivery: Delivery, delay: float = 0.0) -> bool:
        visible_at = time.time() + delay if delay > 0 else ""
        return bool(await self._run_script("release", [delivery.message_id, delivery.receipt, visible_at]))

    async def dead_letter(self, delivery: Delivery, reason: str) -> bool:
        if self.dead_letter_channel is None:
            return False
        client = await self._client()
        try:
            current = await client.hget(self._key("receipts"), delivery.message_id)
        except redis.RedisError as e:
            raise ChannelUnavailableError(self.name, str(e)) from e
        if current != delivery.receipt:
            return False
        await self._forward_to_dead_letter(delivery, delivery.receive_count, reason, time.time())
        await self.ack(delivery)
        return True

    async def peek(self, limit: int = 100) -> list[ChannelMessage]:
        client = await self._client()
        raw = await client.hvals(self._key("messages"))
        messages = [ChannelMessage.model_validate_json(item) for item in raw]
        return sorted(messages, key=lambda m: m.sent_at)[:limit]

    async def get(self, message_id: str) -> ChannelMessage | None:
        client = await self._client()
        raw = await client.hget(self._key("messages"), message_id)
        return ChannelMessage.model_validate_json(raw) if raw is not None else None

    async def delete(self, message_id: str) -> bool:
        client = await self._client()
        if not await client.hexists(self._key("messages"), message_id):
            return False
        await self._forget(client, message_id)
        return True

    async def depth(self) -> dict[str, int]:
        client = await self._client()
        return {
            "visible": await client.llen(self._key("ready")),
            "in_flight": await client.zcard(self._key("inflight")),
        }

    async def purge(self) -> int:
        client = await self._client()
        count = await client.hlen(self._key("messages"))
        await client.delete(*(self._key(s) for s in ("ready", "inflight", "messages", "receives", "receipts")))
        return count


def decode_body(delivery: Delivery | ChannelMessage) -> dict[str, Any]:
    """Decode a JSON message body."""
    return json.loads(delivery.body)
