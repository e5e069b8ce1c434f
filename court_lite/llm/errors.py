"""
Gateway error types.

Transport failures (InferenceError) are kept distinct from malformed model
output (ResponseValidationError) so callers can choose between retrying the
same request and regenerating the prompt.
"""

from typing import Optional


class GatewayError(Exception):
    """Base class for AI gateway errors."""

    user_message = "The AI judge is in recess, please try again later."

    def __init__(self, message: str = "", user_message: Optional[str] = None):
        super().__init__(message or self.user_message)
        if user_message:
            self.user_message = user_message


class InferenceError(GatewayError):
    """Backend call failed. `transient` marks failures worth retrying."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        transient: bool = False,
        backend: Optional[str] = None,
    ):
        if status == 429:
            user_message = "Too many requests, the AI judge needs a short break. Please retry shortly."
        else:
            user_message = None
        super().__init__(message, user_message)
        self.status = status
        self.transient = transient
        self.backend = backend

    def __repr__(self) -> str:
        return f"InferenceError(status={self.status}, transient={self.transient}, backend={self.backend!r})"


class InferenceTimeoutError(InferenceError):
    """Hard wall-clock timeout; always transient."""

    def __init__(self, seconds: float, backend: Optional[str] = None):
        super().__init__(f"Request timed out after {seconds}s", status=None, transient=True, backend=backend)
        self.user_message = "The request timed out, please check your connection and retry."


class ResponseValidationError(GatewayError):
    """Model output could not be parsed or coerced into the expected schema."""

    user_message = "The AI answer could not be understood, please retry."
