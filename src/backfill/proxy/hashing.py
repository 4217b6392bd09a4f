"""Content checksums required by the primary store on upload."""

from __future__ import annotations

import hashlib


def content_sha1(data: bytes) -> str:
    """Lowercase hex SHA-1 of the full payload."""
    return hashlib.sha1(data).hexdigest()
