"""
Error taxonomy for the sync pipeline.

Only StoreError and PublishError abort a sync run. TransformError and
NotifyError are absorbed at the step that produced them.
"""


class AegisError(Exception):
    """Base class for pipeline errors."""


class StoreError(AegisError):
    """Local record store read or write failed."""


class TransformError(AegisError):
    """A photo could not be decoded or re-encoded."""


class PublishError(AegisError):
    """The remote store rejected the document or was unreachable."""


class NotifyError(AegisError):
    """The alert webhook could not be reached or refused the payload."""
