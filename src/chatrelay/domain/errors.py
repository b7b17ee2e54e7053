"""Error taxonomy for the chat relay pipeline.

Every error raised by the core derives from :class:`ChatRelayError` so the
HTTP layer can map the whole family with a single handler. Several errors
also subclass the builtin they semantically extend (``ValueError``,
``KeyError``) so plain Python callers can catch them the usual way.
"""

from __future__ import annotations

from typing import Optional


class ChatRelayError(Exception):
    """Base class for all chat relay failures."""

    status_code: int = 500

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        return self.message


class MalformedPayloadError(ChatRelayError, ValueError):
    """Inline attachment is not a ``data:<mime>;base64,<payload>`` string."""

    status_code = 400


class EmptyTurnError(ChatRelayError, ValueError):
    """A turn carries neither text nor attachments."""

    status_code = 400


class UpstreamGenerationError(ChatRelayError):
    """The completion service rejected the request or broke mid-stream."""

    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        cause: Optional[BaseException] = None,
        status: Optional[int] = None,
        mid_stream: bool = False,
    ) -> None:
        super().__init__(message, cause=cause)
        self.status = status
        self.mid_stream = mid_stream


class NotFoundError(ChatRelayError, KeyError):
    """Referenced turn does not exist in the conversation."""

    status_code = 404


class NotEditableError(ChatRelayError):
    """Referenced turn has no leading text part to edit."""

    status_code = 409


class StoreError(ChatRelayError):
    """Document store I/O failure."""

    status_code = 500
