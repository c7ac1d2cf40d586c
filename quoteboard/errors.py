"""Error taxonomy shared by the store, the reminder engine and the API layer.

The HTTP mapping lives in ``quoteboard.main``; everything below the API layer
raises these and never builds HTTP responses itself.
"""
from typing import Iterable, Optional


class QuoteboardError(Exception):
    """Base class for all domain errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(QuoteboardError):
    """Missing or malformed input. Never retried."""


class NotFoundError(QuoteboardError):
    """Operation targets an id that does not exist."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} not found")
        self.entity = entity
        self.entity_id = entity_id


class ConflictError(QuoteboardError):
    """Uniqueness conflict, e.g. a username already taken."""


class AuthError(QuoteboardError):
    """Missing, invalid or expired credentials."""


class StorageError(QuoteboardError):
    """Persistence failed.

    kind:
        "connection" - database unreachable or timed out (retryable)
        "constraint" - integrity constraint violated
        "query"      - any other query failure
    """

    def __init__(
        self,
        message: str,
        kind: str = "query",
        operation: Optional[str] = None,
        ids: Iterable[str] = (),
    ):
        super().__init__(message)
        self.kind = kind
        self.operation = operation
        self.ids = list(ids)

    @property
    def retryable(self) -> bool:
        return self.kind == "connection"


class NotificationError(QuoteboardError):
    """Transport failure while delivering a reminder."""
