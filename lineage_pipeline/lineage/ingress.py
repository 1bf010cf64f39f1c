"""Ingress endpoint and retrace trigger.

``IngressEndpoint`` turns a producer's lineage fact into a ``LineageEvent``
and hands it to the record channel; ``RetracePublisher`` puts a
``RetraceRequest`` on the retrace channel. Neither touches the store: once
the channel accepts the message, delivery is the channel's job.
"""

from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from lineage_pipeline.core.channel import DurableChannel
from lineage_pipeline.core.errors import ChannelError, InvalidLineageFact, PublishError
from lineage_pipeline.lineage.models import LineageEvent, RetraceRequest, new_id
from lineage_pipeline.observability.logging import get_logger
from lineage_pipeline.observability.metrics import MetricsManager, get_metrics_manager

logger = get_logger(__name__)

# Fact keys with a meaning of their own, and the aliases producers use
_ALIASES = {
    "node_id": "node_id",
    "root_id": "root_id",
    "parent_id": "parent_id",
    "parent": "parent_id",
    "action_taken": "action_taken",
    "action": "action_taken",
}
_NESTED_PAYLOAD_KEYS = ("payload", "record")


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def parse_fact(fact: Mapping[str, Any]) -> LineageEvent:
    """Build a lineage event from a producer fact.

    Args:
        fact: Arbitrary mapping; unrecognised keys become the payload

    Returns:
        The event to publish

    Raises:
        InvalidLineageFact: The fact names no action or is inconsistent
    """
    if not isinstance(fact, Mapping):
        raise InvalidLineageFact("Lineage fact must be a mapping")

    fields: dict[str, Any] = {}
    payload: dict[str, Any] = {}
    for key, value in fact.items():
        target = _ALIASES.get(key)
        if target is not None:
            if not _blank(value):
                fields.setdefault(target, str(value).strip())
        elif key in _NESTED_PAYLOAD_KEYS and isinstance(value, Mapping):
            payload.update(value)
        else:
            payload[key] = value

    if "action_taken" not in fields:
        raise InvalidLineageFact("Lineage fact is missing action_taken")

    fields.setdefault("node_id", new_id())
    if "parent_id" not in fields and "root_id" not in fields:
        fields["root_id"] = new_id()

    try:
        return LineageEvent(payload=payload, **fields)
    except ValidationError as e:
        error = e.errors()[0]
        field = ".".join(str(part) for part in error["loc"])
        detail = f"{field}: {error['msg']}" if field else error["msg"]
        raise InvalidLineageFact(f"Invalid lineage fact: {detail}") from e


async def _publish(channel: DurableChannel, body: str, kind: str, metrics: MetricsManager) -> str:
    try:
        message_id = await channel.send(body)
    except ChannelError as e:
        metrics.record_publish_error(channel.name, type(e).__name__)
        logger.error("publish_failed", channel=channel.name, kind=kind, error=e.message)
        raise PublishError(f"Could not publish {kind} to {channel.name}: {e.message}") from e
    metrics.record_published(channel.name)
    return message_id


class IngressEndpoint:
    """Accepts lineage facts and publishes them to the record channel.

    Example:
        >>> ingress = IngressEndpoint(record_channel)
        >>> event = await ingress.submit({"action": "ingest", "source": "s3://raw"})
        >>> event.root_id is not None
        True
    """

    def __init__(self, channel: DurableChannel, metrics: MetricsManager | None = None) -> None:
        self.channel = channel
        self.metrics = metrics or get_metrics_manager()

    async def submit(self, fact: Mapping[str, Any]) -> LineageEvent:
        """Validate a fact and publish it.

        Raises:
            InvalidLineageFact: The fact was rejected
            PublishError: The channel did not accept the event; retry
        """
        event = parse_fact(fact)
        message_id = await _publish(self.channel, event.model_dump_json(), "lineage event", self.metrics)
        logger.info(
            "event_published",
            event_id=event.event_id,
            node_id=event.node_id,
            root_id=event.root_id,
            parent_id=event.parent_id,
            message_id=message_id,
        )
        return event


class RetracePublisher:
    """Publishes retrace requests for the trace reconstructor."""

    def __init__(self, channel: DurableChannel, metrics: MetricsManager | None = None) -> None:
        self.channel = channel
        self.metrics = metrics or get_metrics_manager()

    async def request_retrace(
        self,
        root_id: str | None = None,
        node_id: str | None = None,
        actions: list[str] | None = None,
    ) -> RetraceRequest:
        """Ask for a tree to be reconstructed and archived.

        Raises:
            ValueError: Neither root_id nor node_id was given
            PublishError: The channel did not accept the request; retry
        """
        request = RetraceRequest(root_id=root_id, node_id=node_id, actions=actions)
        await _publish(self.channel, request.model_dump_json(), "retrace request", self.metrics)
        logger.info(
            "retrace_requested",
            request_id=request.request_id,
            root_id=request.root_id,
            node_id=request.node_id,
        )
        return request
