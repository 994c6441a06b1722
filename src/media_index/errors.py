from __future__ import annotations

from typing import Optional


class ContentStoreError(RuntimeError):
    """A remote store call failed. `status` is the HTTP status when one was received."""

    def __init__(self, message: str, *, path: str = "", status: Optional[int] = None) -> None:
        super().__init__(message)
        self.path = path
        self.status = status

    @property
    def retryable(self) -> bool:
        if self.status is None:
            return True
        return self.status == 429 or 500 <= self.status < 600


class ContentNotFoundError(ContentStoreError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Not found: {path}", path=path, status=404)


class ScanConflictError(RuntimeError):
    """Raised when the tree-wide scan lease is held by another live session."""

    def __init__(self, session_id: Optional[str]) -> None:
        super().__init__("Scan already in progress by another session. Please wait for it to complete.")
        self.session_id = session_id


__all__ = ["ContentNotFoundError", "ContentStoreError", "ScanConflictError"]
