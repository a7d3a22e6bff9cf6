"""
Exception classes for ContentBridge.
"""

from typing import Any, Dict, Optional


class ContentBridgeError(Exception):
    """Base exception for all ContentBridge errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
        }


class QueryError(ContentBridgeError):
    """Raised when query compilation fails."""
    pass


class ValidationError(ContentBridgeError):
    """Raised when a query or compiler configuration value is invalid."""
    pass
