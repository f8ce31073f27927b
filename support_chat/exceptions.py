"""
Error taxonomy for the support chat.

    ChatError (base)
    ├── ValidationError      - malformed input (content length, message type)
    ├── AuthenticationError  - missing or invalid bearer token
    ├── ForbiddenError       - caller is neither a participant nor an admin
    ├── NotFoundError        - conversation or support admin absent
    ├── ConflictError        - duplicate participant-pair conversation
    └── TransientStoreError  - storage failed or timed out; the caller may retry

Routers render any ChatError through ``to_dict`` with the status code held on
the class, so services raise these and never build HTTP responses.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ChatError(Exception):

    default_error_code = "CHAT_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.error_code,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(message={self.message!r}, error_code={self.error_code!r})"


class ValidationError(ChatError):
    """Field-level problems go in ``details`` as ``{field: [messages]}``."""

    default_error_code = "VALIDATION_ERROR"
    status_code = 400


class AuthenticationError(ChatError):

    default_error_code = "NOT_AUTHENTICATED"
    status_code = 401


class ForbiddenError(ChatError):

    default_error_code = "FORBIDDEN"
    status_code = 403


class NotFoundError(ChatError):

    default_error_code = "NOT_FOUND"
    status_code = 404


class ConflictError(ChatError):

    default_error_code = "CONFLICT"
    status_code = 409


class TransientStoreError(ChatError):
    """The store did not confirm the operation. Nothing is retried server side."""

    default_error_code = "STORE_UNAVAILABLE"
    status_code = 503
