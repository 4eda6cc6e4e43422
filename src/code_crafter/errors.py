"""Error taxonomy shared by the gateway, the session and the stores.

Every error carries a `user_message`: the human-readable text a caller can
show as-is. `str(err)` keeps the technical detail for logs.
"""

from __future__ import annotations


class CodeCrafterError(Exception):
    """Base class for all domain failures."""

    default_user_message = "Something went wrong. Please try again."

    def __init__(self, message: str, *, user_message: str | None = None) -> None:
        super().__init__(message)
        self.user_message = user_message or self.default_user_message


class MissingParameters(CodeCrafterError):
    """Challenge parameters are absent or invalid. No network call was made."""

    default_user_message = (
        "Challenge parameters not found. Please choose a topic, difficulty and question type."
    )


class EmptySubmission(CodeCrafterError):
    """The submitted code or answer was empty or whitespace only."""

    default_user_message = "Your answer is empty. Please write something before submitting."


class InvalidRequest(CodeCrafterError):
    """A gateway request did not satisfy its input contract."""

    default_user_message = "The request was invalid and was not sent to the AI service."


class InvalidTransition(CodeCrafterError):
    """The session cannot perform the requested action in its current state."""

    default_user_message = "That action is not available right now."

    def __init__(self, *, action: str, phase: str) -> None:
        super().__init__(f"cannot {action} while session is {phase}")
        self.action = action
        self.phase = phase


class UpstreamUnavailable(CodeCrafterError):
    """The AI backend is overloaded or rate limited. Retry-eligible."""

    default_user_message = (
        "The AI service is overloaded or temporarily unavailable. Please try again shortly."
    )


class UpstreamError(CodeCrafterError):
    """Any other AI backend failure."""

    default_user_message = "The AI service failed to respond. Please try again."


class SchemaViolation(CodeCrafterError):
    """The AI backend returned a payload that failed its output contract."""

    default_user_message = "The AI service returned an unexpected response. Please try again."

    def __init__(self, *, operation: str, last_error: str) -> None:
        super().__init__(f"Output for operation={operation} violated its contract: {last_error}")
        self.operation = operation
        self.last_error = last_error


class PermissionDenied(CodeCrafterError):
    """The store rejected a read or write."""

    default_user_message = "Saving failed because the store denied permission."


class StoreUnavailable(CodeCrafterError):
    """The store could not be reached or failed."""

    default_user_message = "Could not reach the history store. Please try again later."
