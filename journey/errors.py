"""Error taxonomy for engagement journeys.

Every failure a transition can produce is one of these types. The workflow
facade maps them onto status dictionaries; nothing here terminates a session.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class JourneyError(Exception):
    """Base class for all journey errors."""

    suggestion = "Check the request and try again"

    def __init__(self, message: str, *, operation: Optional[str] = None, target_id: Optional[str] = None):
        super().__init__(message)
        self.operation = operation
        self.target_id = target_id

    def context(self) -> Dict[str, Any]:
        """Context fields used when logging the error."""
        return {
            "operation": self.operation or "unknown",
            "target_id": self.target_id,
            "error_type": type(self).__name__,
        }


class ValidationError(JourneyError):
    """A required field is missing or a value is malformed."""

    suggestion = "Fix the highlighted field before saving"


class AuthorizationError(JourneyError):
    """The current identity does not own the organization being written."""

    suggestion = "Switch to an organization you own"


class PersistenceError(JourneyError):
    """The store failed to read or write a record."""

    suggestion = "Your change was not saved; try again"


class ExtractionError(JourneyError):
    """A single uploaded file could not be turned into text."""

    suggestion = "Upload the file as PDF, DOCX or plain text"

    def __init__(self, file_name: str, reason: str):
        super().__init__(f"{file_name}: {reason}", operation="extract", target_id=file_name)
        self.file_name = file_name
        self.reason = reason


class CompletionError(JourneyError):
    """The generative text service failed or returned nothing usable."""

    suggestion = "The assistant is unavailable; try again shortly"


class NotFoundError(JourneyError):
    """A referenced organization, journey, meeting, note or step does not exist."""

    suggestion = "Refresh the journey and pick an existing item"


class StateError(JourneyError):
    """The transition is not allowed in the current state."""

    suggestion = "Select an organization and a journey first"
