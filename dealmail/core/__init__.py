"""Core module for dealmail."""

from .errors import (
    DealmailError,
    ErrorKind,
    AuthenticationError,
    ApiError,
    TransportError,
    NotFoundError,
    ValidationError,
    FilesystemError,
    RenderError,
    SchemaParseError,
    ApiKeyError,
    DeadlineExceededError,
)
from .jmap_client import JmapClient, JmapEmail, Mailbox, MailboxRole, find_mailbox_by_role
from .content_builder import EmailRecord, select_body, to_display_html
from .screenshot_service import EmailScreenshotService
from .deal_extractor import DealExtractor, DealRecord
from .orchestrator import DealmailOrchestrator, RunResult

__all__ = [
    "DealmailError",
    "ErrorKind",
    "AuthenticationError",
    "ApiError",
    "TransportError",
    "NotFoundError",
    "ValidationError",
    "FilesystemError",
    "RenderError",
    "SchemaParseError",
    "ApiKeyError",
    "DeadlineExceededError",
    "JmapClient",
    "JmapEmail",
    "Mailbox",
    "MailboxRole",
    "find_mailbox_by_role",
    "EmailRecord",
    "select_body",
    "to_display_html",
    "EmailScreenshotService",
    "DealExtractor",
    "DealRecord",
    "DealmailOrchestrator",
    "RunResult",
]
