"""
Error types for the dealmail pipeline.

Every failure raised by the pipeline is a DealmailError carrying a kind from
a closed set plus structured details. The CLI formats errors by kind.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    """Closed set of failure kinds."""
    AUTHENTICATION = "authentication"
    API = "api"
    TRANSPORT = "transport"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    FILESYSTEM = "filesystem"
    RENDER = "render"
    SCHEMA_PARSE = "schema_parse"
    API_KEY = "api_key"
    DEADLINE_EXCEEDED = "deadline_exceeded"


class DealmailError(Exception):
    """Base error with a kind and structured details."""

    kind: ErrorKind = ErrorKind.API

    def __init__(self, message: str, cause: Optional[BaseException] = None, **details: Any):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.details: Dict[str, Any] = details

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message


class AuthenticationError(DealmailError):
    """Credential rejected by the mail service."""
    kind = ErrorKind.AUTHENTICATION


class ApiError(DealmailError):
    """Remote call failed or returned an error response."""
    kind = ErrorKind.API


class TransportError(ApiError):
    """Network-level or retryable service failure."""
    kind = ErrorKind.TRANSPORT


class NotFoundError(DealmailError):
    """Expected mailbox or message is absent."""
    kind = ErrorKind.NOT_FOUND

    @property
    def missing(self) -> List[str]:
        return list(self.details.get("missing", []))


class ValidationError(DealmailError):
    """Malformed command-line input."""
    kind = ErrorKind.VALIDATION


class FilesystemError(DealmailError):
    """Path missing, not a directory, or a read/write/parse failure."""
    kind = ErrorKind.FILESYSTEM

    @property
    def path(self) -> Optional[str]:
        return self.details.get("path")


class RenderError(DealmailError):
    """Headless browser failed to render a page."""
    kind = ErrorKind.RENDER


class SchemaParseError(DealmailError):
    """Model response could not be parsed into a deal record."""
    kind = ErrorKind.SCHEMA_PARSE

    @property
    def raw_text(self) -> str:
        return self.details.get("raw_text", "")


class ApiKeyError(DealmailError):
    """No API key available for the vision model."""
    kind = ErrorKind.API_KEY


class DeadlineExceededError(DealmailError):
    """The run exceeded its overall deadline."""
    kind = ErrorKind.DEADLINE_EXCEEDED
