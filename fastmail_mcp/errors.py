"""Exceptions raised by the Fastmail tools.

Every error derives from :class:`fastmcp.exceptions.ToolError` so that the
message reaches the calling agent verbatim instead of being masked as an
internal error.
"""

from __future__ import annotations

from typing import Optional

from fastmcp.exceptions import ToolError

BODY_EXCERPT_LIMIT = 500


class FastmailError(ToolError):
    """Base exception for Fastmail tool errors."""


class AuthError(FastmailError):
    """Raised when login fails or credentials are missing."""


class NotFound(FastmailError):
    """Raised when a collection, object or mailbox does not exist."""


class ReadOnly(FastmailError):
    """Raised when writing to a collection without write privilege."""


class LastCollectionError(FastmailError):
    """Raised when a deletion would remove the only remaining calendar."""


class ProtectedResourceError(FastmailError):
    """Raised when a deletion targets a protected system mailbox."""


class InvalidFormat(FastmailError):
    """Raised for malformed datetimes or malformed tool input."""


class MissingBody(FastmailError):
    """Raised unless an email has exactly one of a text or an HTML body."""


class MailboxNotFound(FastmailError):
    """Raised when the Drafts or Sent mailbox cannot be located."""


class SubmissionFailed(FastmailError):
    """Raised when the server did not return a submission id."""


class ProtocolError(FastmailError):
    """Raised for a non-success status from a remote store."""

    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None) -> None:
        self.status = status
        self.body = excerpt(body)
        detail = message
        if status is not None:
            detail = f"{detail} ({status})"
        if self.body:
            detail = f"{detail}. Body: {self.body}"
        super().__init__(detail)


def excerpt(body: Optional[str], limit: int = BODY_EXCERPT_LIMIT) -> str:
    """Trim a response body for diagnostics."""
    if not body:
        return ""
    return body[:limit]
