"""
Email content normalization.

Selects the best body part of a message and builds a self-contained HTML
document for rendering. Content is not sanitized; pages are only ever
rendered inside the headless browser.
"""

import html
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from .jmap_client import EmailAddress, EmailBodyPart, EmailBodyValue, JmapEmail

logger = logging.getLogger(__name__)

NO_SUBJECT = "No Subject"
NO_CONTENT_NOTICE = "No content available for this email."
HTML_CONTENT_TYPE = "text/html"

COMMON_STYLES = """
    <style>
        body { font-family: Arial, sans-serif; margin: 20px; }
        .email-metadata { background: #f5f5f5; padding: 10px; margin-bottom: 20px; border-radius: 5px; }
        .email-content { padding: 10px; }
        .email-content pre { font-family: sans-serif; white-space: pre-wrap; }
        img { max-width: 100%; height: auto; }
    </style>
"""


class BodyKind(str, Enum):
    HTML = "html"
    TEXT = "text"


@dataclass
class BodyContent:
    """Selected body text and its kind."""
    content: str
    kind: BodyKind


class EmailRecord(BaseModel):
    """
    Sidecar representation of an email, as stored in email-<id>.json.

    htmlBody/textBody hold the selected content as plain strings.
    """
    id: Optional[str] = None
    thread_id: Optional[str] = Field(default=None, alias="threadId")
    subject: Optional[str] = None
    from_: Optional[List[EmailAddress]] = Field(default=None, alias="from")
    to: Optional[List[EmailAddress]] = None
    cc: Optional[List[EmailAddress]] = None
    bcc: Optional[List[EmailAddress]] = None
    received_at: Optional[str] = Field(default=None, alias="receivedAt")
    sent_at: Optional[str] = Field(default=None, alias="sentAt")
    preview: Optional[str] = None
    html_body: Optional[str] = Field(default=None, alias="htmlBody")
    text_body: Optional[str] = Field(default=None, alias="textBody")
    has_attachment: Optional[bool] = Field(default=None, alias="hasAttachment")

    class Config:
        populate_by_name = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the sidecar JSON shape."""
        return self.model_dump(by_alias=True, exclude_none=True)


def _first_resolvable(
    parts: Sequence[EmailBodyPart],
    values: Dict[str, EmailBodyValue],
    content_type: Optional[str] = None
) -> Optional[str]:
    """First non-empty body value, optionally limited to one media type."""
    for part in parts:
        if content_type and (part.type or "").lower() != content_type:
            continue
        if part.part_id and part.part_id in values and values[part.part_id].value:
            return values[part.part_id].value
    return None


def select_body(email: JmapEmail) -> Optional[BodyContent]:
    """
    Pick the message body to display.

    The first text/html part with a non-empty value wins, then the first
    non-empty text part. Plain-text parts listed under htmlBody are not
    treated as HTML. Returns None when neither resolves.
    """
    html_content = _first_resolvable(email.html_body, email.body_values, HTML_CONTENT_TYPE)
    if html_content is not None:
        return BodyContent(html_content, BodyKind.HTML)

    text_content = _first_resolvable(email.text_body, email.body_values)
    if text_content is not None:
        return BodyContent(text_content, BodyKind.TEXT)

    return None


def select_record_body(record: EmailRecord) -> Optional[BodyContent]:
    """Pick the body of a sidecar record: HTML first, then text."""
    if record.html_body:
        return BodyContent(record.html_body, BodyKind.HTML)
    if record.text_body:
        return BodyContent(record.text_body, BodyKind.TEXT)
    return None


def record_from_email(email: JmapEmail) -> EmailRecord:
    """Flatten a JMAP email into its sidecar record."""
    html_content = _first_resolvable(email.html_body, email.body_values, HTML_CONTENT_TYPE)
    text_content = _first_resolvable(email.text_body, email.body_values)

    return EmailRecord(
        id=email.id,
        thread_id=email.thread_id,
        subject=email.subject,
        from_=email.from_,
        to=email.to,
        cc=email.cc,
        bcc=email.bcc,
        received_at=email.received_at,
        sent_at=email.sent_at,
        preview=email.preview,
        html_body=html_content or None,
        text_body=text_content or None,
        has_attachment=email.has_attachment
    )


def load_email_record(data: Dict[str, Any]) -> EmailRecord:
    """
    Build a record from stored JSON.

    Accepts sidecar files as well as raw Email/get records, where htmlBody and
    textBody are part lists resolved through bodyValues.
    """
    raw_parts = isinstance(data.get("htmlBody"), list) or isinstance(data.get("textBody"), list)
    if raw_parts or "bodyValues" in data:
        return record_from_email(JmapEmail.model_validate(data))
    return EmailRecord.model_validate(data)


def _format_addresses(addresses: Optional[List[EmailAddress]]) -> str:
    if not addresses:
        return "Unknown"
    return ", ".join(html.escape(addr.name or addr.email) for addr in addresses)


def _format_date(value: Optional[str]) -> str:
    if not value:
        return "Unknown"
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).strftime("%Y-%m-%d %H:%M:%S %Z").strip()
    except ValueError:
        return html.escape(value)


def build_metadata_html(record: EmailRecord) -> str:
    """Header block showing subject, sender, recipients and date."""
    cc_line = ""
    if record.cc:
        cc_line = f"<p><strong>CC:</strong> {_format_addresses(record.cc)}</p>"

    return f"""
    <div class="email-metadata">
        <h2>{html.escape(record.subject or NO_SUBJECT)}</h2>
        <p><strong>From:</strong> {_format_addresses(record.from_)}</p>
        <p><strong>To:</strong> {_format_addresses(record.to)}</p>
        {cc_line}
        <p><strong>Date:</strong> {_format_date(record.received_at)}</p>
    </div>
    """


def is_full_document(content: str) -> bool:
    """True when content already starts with a doctype or html tag."""
    head = content.lstrip().lower()
    return head.startswith("<!doctype") or head.startswith("<html")


def to_display_html(body: Optional[BodyContent], record: EmailRecord) -> str:
    """
    Build the HTML document to render for an email.

    Full HTML documents are returned unchanged. Fragments are wrapped with a
    metadata header; plain text is escaped inside a <pre> block; a missing
    body is replaced by a fixed notice.
    """
    if body is not None and body.kind == BodyKind.HTML and is_full_document(body.content):
        return body.content

    if body is None or not body.content:
        content_html = f"<p>{NO_CONTENT_NOTICE}</p>"
    elif body.kind == BodyKind.TEXT:
        content_html = f"<pre>{html.escape(body.content)}</pre>"
    else:
        content_html = body.content

    return f"""<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>{html.escape(record.subject or NO_SUBJECT)}</title>
    {COMMON_STYLES}
</head>
<body>
    {build_metadata_html(record)}
    <div class="email-content">
        {content_html}
    </div>
</body>
</html>"""
