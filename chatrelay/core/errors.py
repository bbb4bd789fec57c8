"""Project error hierarchy."""


class ChatRelayError(Exception):
    """Base error."""


class MalformedHistoryError(ChatRelayError):
    """Raised when a history entry has an unknown role or content shape."""

    def __init__(self, index: int, reason: str) -> None:
        self.index = index
        self.reason = reason
        super().__init__(f"history[{index}]: {reason}")


class BackendError(ChatRelayError):
    """Base for generation backend failures."""


class BackendUnavailableError(BackendError):
    """Raised when the backend cannot be reached or rejects the call before any output."""


class BackendStreamInterruptedError(BackendError):
    """Raised when the backend stream fails after output was already emitted."""
