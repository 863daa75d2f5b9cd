"""Error taxonomy shared by the memory core and its adapters."""


class SomaError(Exception):
    """Base class for all Soma errors."""


class StorageError(SomaError):
    """Durable I/O failure in the persistent store.

    Callers in the conversation path log and suppress this: long-term
    memory is best-effort and never blocks a reply.
    """


class UpstreamUnavailable(SomaError):
    """The completion backend is unreachable or timed out.

    Surfaced to the caller with a distinct status. Never retried by the core.
    """


class InvalidInput(SomaError, ValueError):
    """A required field is missing or malformed. Raised before any side effect."""
