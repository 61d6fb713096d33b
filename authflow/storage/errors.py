from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Raised by token stores for lookups that must fail loudly."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class CodeNotFound(StoreError):
    """Authorization code is unknown or was already consumed."""


class CodeExpired(StoreError):
    """Authorization code existed but is past its expiry."""


__all__ = ["StoreError", "CodeNotFound", "CodeExpired"]
