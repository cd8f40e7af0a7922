"""
Error taxonomy for the resolution and analytics engine.

Services raise these; the API layer maps them to HTTP responses:
- MalformedPath / NotFound    -> 404 on the redirect path
- DuplicatePath / IdentifierTaken / IdentifierInUse -> 409
- IdentifierNotOwned / QuotaExceeded -> 403
- InvalidLink                 -> 422
- AggregationFailure          -> 503 (retryable)
- RecordingFailure            -> never surfaced; handled by the click worker
"""


class WordlinkError(Exception):
    """Base class for all domain errors."""


class MalformedPath(WordlinkError):
    """Inbound path cannot name a link (empty, too long, bad characters)."""


class NotFound(WordlinkError):
    """No active, unexpired link matches (or unknown internal id)."""


class DuplicatePath(WordlinkError):
    """(identifier, keywords) is already taken."""

    def __init__(self, path: str):
        super().__init__(f"Path already in use: {path}")
        self.path = path


class InvalidLink(WordlinkError):
    """Link data fails validation (reserved word, shadowed path, bad keyword)."""


class IdentifierTaken(WordlinkError):
    """Identifier namespace already claimed."""


class IdentifierNotOwned(WordlinkError):
    """Identifier missing or claimed by another owner."""


class IdentifierInUse(WordlinkError):
    """Identifier still has active links and cannot be released."""


class QuotaExceeded(WordlinkError):
    """Externally supplied quota does not allow the request."""


class RecordingFailure(WordlinkError):
    """Click could not be persisted; the worker retries, then drops."""


class AggregationFailure(WordlinkError):
    """Analytics storage unavailable; callers may retry."""
