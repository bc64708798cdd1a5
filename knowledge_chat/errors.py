"""
Error taxonomy for the chat service.

Every error carries a human readable message and an optional details dict
that ends up in logs and in HTTP error bodies.
"""

from typing import Any, Dict, Optional


class KnowledgeChatError(Exception):
    """Base class for all application errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class NotFoundError(KnowledgeChatError):
    """A session, message, attachment or other record does not exist."""

    status_code = 404


class InvalidInputError(KnowledgeChatError):
    """Empty or unsupported files, malformed roles, blank titles."""

    status_code = 400


class UpstreamUnavailableError(KnowledgeChatError):
    """The embedding model, completion model or vector index failed."""

    status_code = 503


class PersistenceFailureError(KnowledgeChatError):
    """A transcript write could not be committed."""

    status_code = 500
