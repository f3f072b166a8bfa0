"""Engine error taxonomy.

Every per-request failure is raised as (or wrapped in) a `KilnError` subclass and
delivered through the request's completion signal. None of them terminate the
dispatcher.
"""

from __future__ import annotations


class KilnError(RuntimeError):
    """Base class for engine errors."""


class EncodingError(KilnError):
    """The prompt could not be tokenized."""


class ForwardPassError(KilnError):
    """The numeric backend failed while running a forward pass."""


class NoValidTokens(KilnError):
    """Constrained generation found no acceptable token at some step."""

    def __init__(self, message: str = "No valid tokens were sampled") -> None:
        super().__init__(message)


class SinkError(KilnError):
    """The caller's chunk callback raised; the original error is `__cause__`."""


class CorruptSession(KilnError):
    """A serialized session is malformed or belongs to another model configuration."""


class SnapshotCompatibilityError(CorruptSession):
    pass


class SessionCopyError(KilnError):
    """The session cache could not be duplicated (e.g. out of memory)."""


class ModelStopped(KilnError):
    """The dispatcher queue is closed; no new requests are accepted."""

    def __init__(self, message: str = "Model stopped") -> None:
        super().__init__(message)
