"""Exception hierarchy for the chat core.

Only ``GenerationCancelled`` is a quiet outcome; every other ``ChatError``
ends up as a user-visible string at the UI boundary.
"""

from __future__ import annotations


class ChatError(Exception):
    """Base class for all localchat errors."""


class NoActiveSessionError(ChatError):
    def __init__(self, message: str = "No active session") -> None:
        super().__init__(message)


class GenerationInProgressError(ChatError):
    """A send was requested while another one is streaming for the session."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"A response is already being generated for session {session_id}")
        self.session_id = session_id


class PersistenceError(ChatError):
    """The durable store rejected a write. In-memory state is kept as is."""


class GenerationError(ChatError):
    """Base class for failures of a generation request."""


class TransportError(GenerationError):
    """Network failure or non-2xx response from the backend."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ModelNotFoundError(TransportError):
    def __init__(self, model: str) -> None:
        super().__init__(
            f"Model {model} not found. Please ensure it's downloaded.", status=404
        )
        self.model = model


class GenerationTimeout(GenerationError):
    def __init__(self, message: str = "Request timed out. The model might be busy.") -> None:
        super().__init__(message)


class GenerationCancelled(GenerationError):
    """The user stopped the generation. ``partial`` holds text received so far."""

    def __init__(self, partial: str = "") -> None:
        super().__init__("Generation cancelled")
        self.partial = partial


class StreamParseError(ValueError):
    """A single stream line could not be decoded. Recovered by skipping it."""

    def __init__(self, line: str, reason: str) -> None:
        super().__init__(f"Unparseable stream line ({reason}): {line[:80]!r}")
        self.line = line
