class StoreError(Exception):
    """Base class for store failures surfaced to API callers."""


class NotFoundError(StoreError, LookupError):
    pass


class ConflictError(StoreError):
    """A unique constraint would be violated."""


class ImportFormatError(StoreError, ValueError):
    """An import payload is malformed or internally inconsistent."""
