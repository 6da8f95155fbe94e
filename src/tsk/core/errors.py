class TskError(Exception):
    """Base class for errors raised by tsk."""


class ResolveError(TskError):
    """A task reference could not be resolved to exactly one task."""


class PayloadError(TskError):
    """A command payload is missing a required field or has a bad value."""


class CorruptDataError(TskError):
    """The persisted task collection does not have the expected shape."""
