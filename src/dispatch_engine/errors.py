from __future__ import annotations


class DispatchError(Exception):
    """Base class for every rejected engine operation.

    ``reason`` is the caller-facing explanation ("officer already assigned",
    "no eligible responder in range", ...).
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ValidationError(DispatchError):
    """Malformed input, rejected before any state is touched."""


class StateConflictError(DispatchError):
    """Transition not valid from the current status or sub-status."""


class NotFoundError(StateConflictError):
    pass


class ConcurrencyConflictError(StateConflictError):
    """The document changed between read and write; re-read and retry."""


class NoCandidateError(DispatchError):
    pass


class PermissionDeniedError(DispatchError):
    pass
