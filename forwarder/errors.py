from __future__ import annotations

from typing import Sequence


class ForwarderError(RuntimeError):
    """Base class for every failure raised by the forwarder."""


class ConfigError(ValueError):
    """Raised when flag/env configuration is invalid."""


class TransportError(ForwarderError):
    """Network, DNS or timeout failure talking to a remote endpoint."""


class SourceUnavailableError(TransportError):
    """The local Fluent Bit monitoring API could not be reached."""


class DecodeError(ForwarderError):
    """A response body or persisted record could not be decoded."""


class EncodeError(ForwarderError):
    """A metrics batch could not be encoded for the wire."""


class AuthError(ForwarderError):
    """A required credential is missing or was rejected."""


class StorageError(ForwarderError):
    """Local persistence failed."""


class NotFoundError(StorageError):
    """The requested key does not exist in the store."""


class RemoteError(ForwarderError):
    """Raised when the cloud answers with HTTP status >= 400.

    The first message of the decoded error body becomes the description.
    """

    def __init__(self, status: int, messages: Sequence[str]):
        self.status = int(status)
        self.messages = tuple(messages)
        super().__init__(self.messages[0] if self.messages else f"remote error ({self.status})")


class RegistrationError(ForwarderError):
    """Startup identity reconciliation failed; the loop was never started."""


class TickSkipped(ForwarderError):
    """A tick was not dispatched because too many ticks are still in flight."""


class TickError(ForwarderError):
    """Failure of one polling tick, tagged with the step that failed."""

    def __init__(self, step: str, cause: BaseException):
        self.step = step
        self.cause = cause
        super().__init__(f"tick {step} failed: {cause}")
