"""Error taxonomy for the memory engine.

Nothing raised here is meant to reach the user-facing chat turn. Callers
inside the engine catch these and degrade (less context, stale memory)
instead of failing the response. Only ``ConfigurationError`` is fatal, and
it is raised at startup.
"""


class MemoryEngineError(Exception):
    """Base class for memory engine errors."""


class ConfigurationError(MemoryEngineError):
    """Required configuration is missing or invalid."""


class EmbeddingUnavailable(MemoryEngineError):
    """The embedding provider timed out or returned an error."""


class StoreUnavailable(MemoryEngineError):
    """The persistence layer could not be reached."""


class InvalidRecord(MemoryEngineError):
    """A memory record is malformed and was rejected at the write boundary."""

    def __init__(self, reason: str, record_id: str = "") -> None:
        self.reason = reason
        self.record_id = record_id
        super().__init__(f"Invalid record {record_id!r}: {reason}")


class LinkConflict(MemoryEngineError):
    """A concurrent append to a document's conversation list was detected."""

    def __init__(self, document_id: str, conversation_id: str) -> None:
        self.document_id = document_id
        self.conversation_id = conversation_id
        super().__init__(
            f"Concurrent link on document {document_id} "
            f"for conversation {conversation_id}"
        )


class CompletionUnavailable(MemoryEngineError):
    """The completion model timed out, failed, or returned no choice."""
