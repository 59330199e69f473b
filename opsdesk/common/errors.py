"""
Error taxonomy for OpsDesk.

Only PersistenceError and the connector contract errors are meant to reach
callers; ProviderError and SourceUnavailable are recovered inside the core.
"""


class OpsDeskError(Exception):
    """Base class for all OpsDesk errors."""
    pass


class ProviderError(OpsDeskError):
    """Embedding or generation backend is unreachable, throttled, or timed out."""
    pass


class SourceUnavailable(OpsDeskError):
    """A knowledge source could not answer a search."""

    def __init__(self, source: str, reason: str = ""):
        self.source = source
        self.reason = reason
        super().__init__(f"Source '{source}' unavailable: {reason}" if reason else f"Source '{source}' unavailable")


class PersistenceError(OpsDeskError):
    """A store load or save failed."""
    pass


class DuplicateItemError(OpsDeskError):
    """An item with the same id already exists in the collection."""
    pass


class ItemNotFoundError(OpsDeskError):
    """No item with the given id exists in the collection."""
    pass


class LookupUnavailable(OpsDeskError):
    """The specialist lookup table is not loaded."""
    pass
