"""Error taxonomy shared by the signal pipeline."""
from __future__ import annotations


class SignalPipelineError(RuntimeError):
    """Base class for pipeline failures."""


class TransportError(SignalPipelineError):
    """An external API answered with a non-2xx status or could not be reached."""

    def __init__(self, message: str, *, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class GongAPIError(TransportError):
    """Failure talking to the call-recording provider."""

    def __init__(self, status_code: int | None, body: str) -> None:
        label = status_code if status_code is not None else "network"
        super().__init__(f"Gong API error ({label}): {body}", status_code=status_code, body=body)


class BraveSearchError(TransportError):
    """Failure talking to the news search provider."""

    def __init__(self, status_code: int | None, body: str) -> None:
        label = status_code if status_code is not None else "network"
        super().__init__(f"Brave Search API error ({label}): {body}", status_code=status_code, body=body)


class ParseError(SignalPipelineError):
    """Analysis output could not be turned into a structured payload."""


class ConfigurationError(SignalPipelineError):
    """A required credential or setting is missing."""


class PersistenceError(SignalPipelineError):
    """Reading from or writing to the signal store failed."""
