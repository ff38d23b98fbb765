"""
Exception hierarchy for the hybrid index.
Only programming errors and collaborator failures surface to callers;
search and load paths degrade to empty results instead of raising.
"""


class HybridIndexError(Exception):
    """Base class for every error raised by this package."""


class EmbeddingError(HybridIndexError):
    """The embedding collaborator could not produce a vector."""


class SnapshotError(HybridIndexError):
    """A persisted snapshot could not be decoded."""


class OperationCancelled(HybridIndexError):
    """A long-running maintenance operation observed its cancellation token."""


class KnowledgeBaseNotFound(HybridIndexError):
    def __init__(self, kb_id: str) -> None:
        super().__init__(f"Knowledge base not found: {kb_id}")
        self.kb_id = kb_id
