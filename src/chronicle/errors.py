from __future__ import annotations

"""Error taxonomy for the generation engine."""


class ChronicleError(Exception):
    """Base class for errors raised by the generation engine."""


class ServiceError(ChronicleError):
    """Transport or provider failure reported by a remote service.

    The message is shown to the user as-is once it reaches the error state.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class EmptyInputError(ChronicleError):
    """Raised before a generation starts when the document has no usable text."""

    def __init__(self, message: str = "Please add some text to your document before generating.") -> None:
        super().__init__(message)
        self.message = message


class StaleGenerationError(ChronicleError):
    """A result arrived for a generation that has since been stopped or replaced."""

    def __init__(self, token: int) -> None:
        super().__init__(f"Generation {token} is no longer current")
        self.token = token
