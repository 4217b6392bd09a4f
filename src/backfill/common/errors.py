"""Failure taxonomy for the fetch and heal paths."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class UpstreamFailure:
    """A primary or secondary fetch that did not succeed.

    These are data, not exceptions: they drive fallback or become the
    response handed back to the client.
    """

    source: str
    status_code: Optional[int]
    reason: str = ""


class HealError(Exception):
    """Base class for failures that abort a single heal attempt."""

    def __init__(self, detail: str, status_code: Optional[int] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is None:
            return self.detail
        return f"{self.detail} (status={self.status_code})"


class AuthFailure(HealError):
    """Account authorization against the primary store failed."""


class UploadUrlFailure(HealError):
    """The primary store did not issue a usable upload URL."""


class UploadFailure(HealError):
    """The primary store rejected or never received the uploaded object."""

    def __init__(self, detail: str, status_code: Optional[int] = None, response_text: str = "") -> None:
        super().__init__(detail, status_code)
        self.response_text = response_text


class ProtocolError(HealError):
    """An upstream payload did not have the shape we expect."""
