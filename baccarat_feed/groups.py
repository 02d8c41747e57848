from __future__ import annotations

import base64
import uuid


def short_uuid() -> str:
    """uuid4 packed into 22 chars of unpadded URL-safe base64."""
    return base64.urlsafe_b64encode(uuid.uuid4().bytes).rstrip(b"=").decode("ascii")


class SessionGroupTracker:
    """Owns the current shuffle-session group id.

    `rotate` must only be called from the frame consumer loop so that a
    result frame always sees every rotation that arrived before it.
    """

    def __init__(self, initial: str | None = None) -> None:
        self._current = initial or short_uuid()
        self._rotations = 0

    @property
    def rotations(self) -> int:
        return self._rotations

    def current(self) -> str:
        return self._current

    def rotate(self) -> str:
        self._current = short_uuid()
        self._rotations += 1
        return self._current
