"""Exception types raised inside the orchestration core."""


class PolychatError(Exception):
    """Base class for all polychat errors."""

    def __init__(self, message: str, retriable: bool = False) -> None:
        super().__init__(message)
        self.retriable = retriable


class ContextLengthError(PolychatError):
    """The conversation does not fit the model even after truncation retries."""


class BackendStreamError(PolychatError):
    """A model backend stream failed or produced an unusable event."""


class StreamTimeoutError(BackendStreamError):
    """No streamed event arrived within the inactivity timeout."""

    def __init__(self, timeout: float) -> None:
        super().__init__(
            f"Stream timeout - no data received for {timeout:g} seconds",
            retriable=True,
        )
        self.timeout = timeout


class ToolLoadError(PolychatError):
    """A tool source could not produce its descriptors."""
