"""Error taxonomy for the lineage pipeline.

Transient failures (store, archive, traversal) are never retried in-process:
the failing message is left unacknowledged and the channel redelivers it
until its receive budget runs out, at which point it is dead-lettered.
"""


class LineagePipelineError(Exception):
    """Base exception for lineage pipeline errors."""

    def __init__(self, message: str, code: str = "LINEAGE_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class PublishError(LineagePipelineError):
    """An event could not be handed off to its channel. The caller retries."""

    def __init__(self, message: str):
        super().__init__(message, "PUBLISH_ERROR")


class ChannelError(LineagePipelineError):
    """Base exception for durable channel failures."""


class ChannelFullError(ChannelError):
    """The channel reached its configured maximum depth."""

    def __init__(self, channel: str, max_depth: int):
        self.channel = channel
        self.max_depth = max_depth
        super().__init__(
            f"Channel {channel} is at capacity ({max_depth} messages)",
            "CHANNEL_FULL",
        )


class ChannelUnavailableError(ChannelError):
    """The channel backend could not be reached."""

    def __init__(self, channel: str, reason: str):
        self.channel = channel
        super().__init__(f"Channel {channel} unavailable: {reason}", "CHANNEL_UNAVAILABLE")


class TransientStoreError(LineagePipelineError):
    """A lineage store read or write failed."""

    def __init__(self, message: str, code: str = "TRANSIENT_STORE_ERROR"):
        super().__init__(message, code)


class RootResolutionPending(TransientStoreError):
    """The parent named by an event is not in the node index yet."""

    def __init__(self, node_id: str, parent_id: str):
        self.node_id = node_id
        self.parent_id = parent_id
        super().__init__(
            f"Cannot resolve root for node {node_id}: parent {parent_id} not recorded yet",
            "ROOT_RESOLUTION_PENDING",
        )


class TraversalIncomplete(LineagePipelineError):
    """A lineage tree could not be fully reconstructed yet."""

    def __init__(self, root_id: str | None, reason: str, missing_node_id: str | None = None):
        self.root_id = root_id
        self.reason = reason
        self.missing_node_id = missing_node_id
        super().__init__(
            f"Traversal of {root_id} incomplete: {reason}",
            "TRAVERSAL_INCOMPLETE",
        )


class ArchiveError(LineagePipelineError):
    """Writing or reading the lineage archive failed."""

    def __init__(self, message: str, code: str = "ARCHIVE_ERROR"):
        super().__init__(message, code)


class ArchiveExistsError(ArchiveError):
    """The archive key was already written. Archives are write-once."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Archive object already exists: {key}", "ARCHIVE_EXISTS")


class InvalidLineageFact(LineagePipelineError, ValueError):
    """An inbound lineage fact cannot be turned into an event."""

    def __init__(self, message: str):
        super().__init__(message, "INVALID_LINEAGE_FACT")
