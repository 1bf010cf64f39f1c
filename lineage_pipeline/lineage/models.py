"""Data lineage models.

This module defines the records persisted by the lineage store, the
envelopes carried by the channels, and the reconstructed tree written to
the archive.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# Column widths of the lineage_records table
MAX_ID_LENGTH = 128
MAX_ACTION_LENGTH = 255


def utcnow() -> datetime:
    """Return the current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a new node, tree or envelope identifier."""
    return uuid4().hex


class LineageRecord(BaseModel):
    """A single node of a lineage tree as stored in the lineage store.

    Attributes:
        root_id: Identifier of the tree root (partition key)
        node_id: Identifier of this node (sort key, also indexed on its own)
        parent_id: Predecessor node, or None for a node directly under the root
        action_taken: Transformation this node represents (indexed per tree)
        record: The lineage fact content supplied by the producer
        recorded_at: When the store writer persisted the record
        ttl_expiry: Epoch seconds after which the record may be purged
    """

    model_config = ConfigDict(frozen=True)

    root_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    node_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    parent_id: str | None = Field(default=None, max_length=MAX_ID_LENGTH)
    action_taken: str = Field(..., min_length=1, max_length=MAX_ACTION_LENGTH)
    record: dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime = Field(default_factory=utcnow)
    ttl_expiry: int | None = None

    @property
    def key(self) -> tuple[str, str]:
        """Composite primary key."""
        return (self.root_id, self.node_id)

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check whether the record's TTL has passed.

        Args:
            now: Reference time (defaults to the current UTC time)

        Returns:
            True if ``ttl_expiry`` is set and not in the future
        """
        if self.ttl_expiry is None:
            return False
        now = now or utcnow()
        return self.ttl_expiry <= int(now.timestamp())


class LineageEvent(BaseModel):
    """Envelope carried by the record channel.

    ``root_id`` is empty when the producer named only a parent; the store
    writer then resolves the tree through the node index.
    """

    event_id: str = Field(default_factory=new_id)
    node_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    root_id: str | None = Field(default=None, max_length=MAX_ID_LENGTH)
    parent_id: str | None = Field(default=None, max_length=MAX_ID_LENGTH)
    action_taken: str = Field(..., min_length=1, max_length=MAX_ACTION_LENGTH)
    payload: dict[str, Any] = Field(default_factory=dict)
    emitted_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def check_self_parent(self) -> "LineageEvent":
        """A node cannot be its own parent."""
        if self.parent_id is not None and self.parent_id == self.node_id:
            raise ValueError(f"Node {self.node_id} cannot be its own parent")
        return self


class RetraceRequest(BaseModel):
    """Envelope carried by the retrace channel.

    Either ``root_id`` or ``node_id`` must be given. A ``node_id`` is
    resolved to its tree through the node index. ``actions`` restricts the
    traversal to lineage-forming action types.
    """

    request_id: str = Field(default_factory=new_id)
    root_id: str | None = Field(default=None, max_length=MAX_ID_LENGTH)
    node_id: str | None = Field(default=None, max_length=MAX_ID_LENGTH)
    actions: list[str] | None = None
    requested_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def check_target(self) -> "RetraceRequest":
        """Require at least one of root_id or node_id."""
        if not self.root_id and not self.node_id:
            raise ValueError("RetraceRequest needs a root_id or a node_id")
        return self

    @field_validator("actions")
    @classmethod
    def normalize_actions(cls, v: list[str] | None) -> list[str] | None:
        """Drop blanks and duplicates; an empty list means no filter."""
        if v is None:
            return None
        actions = sorted({a.strip() for a in v if a and a.strip()})
        return actions or None


class TruncationReason(str, Enum):
    """Why a branch was cut from a reconstructed tree."""
    EXPIRED = "expired"   # ancestor record passed its TTL
    MISSING = "missing"   # ancestor record absent past the settle window
    PRUNED = "pruned"     # ancestor action is not lineage-forming


class TruncationPoint(BaseModel):
    """A missing ancestor below which records could not be attached.

    Attributes:
        node_id: The absent or excluded ancestor
        reason: Why it is absent or excluded
        orphans: Node ids that referenced it as their parent
    """

    node_id: str
    reason: TruncationReason
    orphans: list[str] = Field(default_factory=list)


class LineageTreeNode(BaseModel):
    """A node of a reconstructed lineage tree."""

    node_id: str
    parent_id: str | None = None
    action_taken: str
    recorded_at: datetime
    record: dict[str, Any] = Field(default_factory=dict)
    children: list["LineageTreeNode"] = Field(default_factory=list)

    @classmethod
    def from_record(cls, record: LineageRecord) -> "LineageTreeNode":
        return cls(
            node_id=record.node_id,
            parent_id=record.parent_id,
            action_taken=record.action_taken,
            recorded_at=record.recorded_at,
            record=record.record,
        )


class LineageTree(BaseModel):
    """A fully reconstructed lineage tree, as archived.

    The root is virtual: it is the ``root_id`` itself, and ``children`` are
    the nodes recorded without a parent.
    """

    root_id: str
    request_id: str = Field(default_factory=new_id)
    children: list[LineageTreeNode] = Field(default_factory=list)
    node_count: int = 0
    truncated: list[TruncationPoint] = Field(default_factory=list)
    reconstructed_at: datetime = Field(default_factory=utcnow)

    def iter_nodes(self) -> list[LineageTreeNode]:
        """Return every node in pre-order."""
        nodes: list[LineageTreeNode] = []
        stack = list(reversed(self.children))
        while stack:
            node = stack.pop()
            nodes.append(node)
            stack.extend(reversed(node.children))
        return nodes

    def node_ids(self) -> list[str]:
        """Return every node id in pre-order."""
        return [node.node_id for node in self.iter_nodes()]

    def find(self, node_id: str) -> LineageTreeNode | None:
        """Find a node by id."""
        for node in self.iter_nodes():
            if node.node_id == node_id:
                return node
        return None


class RetraceState(str, Enum):
    """Lifecycle of a single retrace request."""
    RECEIVED = "received"
    TRAVERSING = "traversing"
    RETRYING = "retrying"
    ARCHIVED = "archived"
    DEAD_LETTERED = "dead_lettered"

    @property
    def is_terminal(self) -> bool:
        return self in (RetraceState.ARCHIVED, RetraceState.DEAD_LETTERED)


RETRACE_TRANSITIONS: dict[RetraceState, frozenset[RetraceState]] = {
    RetraceState.RECEIVED: frozenset({RetraceState.TRAVERSING, RetraceState.RETRYING, RetraceState.DEAD_LETTERED}),
    RetraceState.TRAVERSING: frozenset({RetraceState.ARCHIVED, RetraceState.RETRYING, RetraceState.DEAD_LETTERED}),
    RetraceState.RETRYING: frozenset({RetraceState.TRAVERSING, RetraceState.DEAD_LETTERED}),
    RetraceState.ARCHIVED: frozenset(),
    RetraceState.DEAD_LETTERED: frozenset(),
}
