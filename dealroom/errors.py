"""Domain exceptions raised by the matching and negotiation core.

Callers branch on the exception class, never on the message text.
"""


class DealroomError(Exception):
    """Base exception for all dealroom errors."""

    def __init__(self, message: str, *, details: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(DealroomError):
    """Raised when a match, profile, milestone or dispute does not exist."""

    def __init__(self, entity_type: str, identifier: object) -> None:
        super().__init__(
            f"{entity_type} not found: {identifier}",
            details={"entity_type": entity_type, "identifier": str(identifier)},
        )


class ForbiddenError(DealroomError):
    """Raised when the acting agent is not a participant, or not who it claims to be."""


class InvalidTransitionError(DealroomError):
    """Raised when an operation is not allowed from the match's current status."""

    def __init__(self, message: str, *, status: str | None = None) -> None:
        super().__init__(message, details={"status": status} if status else None)
        self.status = status


class ValidationError(DealroomError):
    """Raised when required fields are missing or malformed."""
