"""Error types raised by the realtime ASR client.

Every failure surfaced to a caller of ``transcribe_realtime`` is an ``AsrError``
subclass, so callers can catch a single type and show ``str(error)`` to users.
"""

from __future__ import annotations


class AsrError(Exception):
    """Base class for all transcription failures."""

    retryable: bool = True
    """Whether re-running the whole session may succeed."""


class ConfigurationError(AsrError):
    """The client is not configured (e.g. no DashScope API key)."""

    retryable = False


class InputError(AsrError):
    """The audio handed to the client cannot be transcribed."""

    retryable = False


class AsrConnectionError(AsrError):
    """The websocket handshake failed on every attempt."""


class ProtocolSendError(AsrError):
    """A control message or audio frame could not be serialized or sent."""


class RemoteTaskFailure(AsrError):
    """The server reported ``task-failed`` for the recognition task."""

    def __init__(self, server_message: str) -> None:
        super().__init__(f"Recognition failed: {server_message}")
        self.server_message = server_message


class TransportError(AsrError):
    """Reading from the websocket failed before a terminal event arrived."""


class EmptyResultError(AsrError):
    """The session ended without a terminal event and without any text."""
