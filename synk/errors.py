"""Error taxonomy shared by the clients and the sync engine."""

from typing import Optional


class SynkError(Exception):
    """Base class for all Synk errors."""


class AuthenticationExpired(SynkError):
    """No valid or refreshable token exists; the user has to re-authorize."""

    def __init__(self, service: str, message: Optional[str] = None):
        self.service = service
        super().__init__(message or f"{service} authorization expired, re-authentication required")


class SchemaError(SynkError):
    """The Notion database cannot be synced as configured (e.g. no date property)."""

    def __init__(self, database_id: str, message: str):
        self.database_id = database_id
        super().__init__(message)


class TransientNetworkError(SynkError):
    """A fetch or write failed in a way that may succeed on a later attempt."""


class MappingError(SynkError):
    """A record could not be converted; callers fall back to defaults."""
