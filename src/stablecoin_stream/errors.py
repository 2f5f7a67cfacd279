"""Exception types shared by the pipeline stages.

Configuration problems are reported as ``ValueError`` from the config
dataclasses; everything raised at runtime derives from
``StreamMonitorError``.
"""


class StreamMonitorError(Exception):
    """Base class for runtime pipeline errors."""


class RpcError(StreamMonitorError):
    """A JSON-RPC call against the chain endpoint failed."""

    def __init__(self, operation: str, details: str) -> None:
        super().__init__(f"RPC {operation} failed: {details}")
        self.operation = operation
        self.details = details


class BlockProcessingError(StreamMonitorError):
    """Fetching or handling logs for a single block failed."""

    def __init__(self, block_number: int, details: str) -> None:
        super().__init__(f"Block processing error at block {block_number}: {details}")
        self.block_number = block_number


class StreamPublishError(StreamMonitorError):
    """Appending an entry to the durable stream failed."""


class StreamReadError(StreamMonitorError):
    """Reading from the durable stream kept failing."""


class MalformedEntryError(StreamMonitorError):
    """A stream entry is missing fields or has invalid values."""

    def __init__(self, entry_id: str, details: str) -> None:
        super().__init__(f"Malformed stream entry {entry_id}: {details}")
        self.entry_id = entry_id


class ClientSendError(StreamMonitorError):
    """A message could not be queued for a client connection."""

    def __init__(self, client_id: str, reason: str) -> None:
        super().__init__(f"Cannot send to client {client_id}: {reason}")
        self.client_id = client_id
        self.reason = reason


class MalformedBlockDataError(BlockProcessingError):
    """The provider returned block data that could not be parsed.

    Some providers intermittently fail to serialise blocks; the block is
    treated as having no logs rather than as a processing failure.
    """
