"""Shared fixtures: an in-memory JMAP server and fake pipeline components."""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest

from dealmail.core.deal_extractor import CouponCode, DealRecord, Sale
from dealmail.core.errors import RenderError
from dealmail.core.jmap_client import JmapClient
from dealmail.core.screenshot_service import EmailScreenshotService

TOKEN = "secret-token"


def make_email(
    email_id: str,
    received_at: str,
    subject: Optional[str] = "Weekend Sale",
    html: Optional[str] = None,
    text: Optional[str] = None,
    mailbox_id: str = "mb-inbox"
) -> Dict[str, Any]:
    """Build an Email/get record the way a JMAP server returns it."""
    body_values = {}
    html_parts = []
    text_parts = []
    if html is not None:
        body_values["1"] = {"value": html, "isTruncated": False}
        html_parts.append({"partId": "1", "type": "text/html"})
    if text is not None:
        body_values["2"] = {"value": text, "isTruncated": False}
        text_parts.append({"partId": "2", "type": "text/plain"})

    email = {
        "id": email_id,
        "threadId": f"T-{email_id}",
        "mailboxIds": {mailbox_id: True},
        "from": [{"name": "Acme Store", "email": "deals@acme.example"}],
        "to": [{"email": "me@example.com"}],
        "receivedAt": received_at,
        "sentAt": received_at,
        "preview": "Save big this weekend",
        "hasAttachment": False,
        "bodyValues": body_values,
        "htmlBody": html_parts,
        "textBody": text_parts,
    }
    if subject is not None:
        email["subject"] = subject
    return email


class FakeJmapServer:
    """Minimal JMAP server for httpx.MockTransport."""

    SESSION_URL = "https://jmap.test/jmap/session"
    API_URL = "https://jmap.test/jmap/api/"
    ACCOUNT_ID = "acc-1"

    def __init__(self, emails: Optional[List[Dict[str, Any]]] = None, mailboxes: Optional[List[Dict[str, Any]]] = None):
        self.emails = {email["id"]: email for email in emails or []}
        self.mailboxes = mailboxes if mailboxes is not None else [
            {"id": "mb-inbox", "name": "Inbox", "role": "inbox", "totalEmails": len(self.emails)},
            {"id": "mb-archive", "name": "Archive", "role": "archive", "totalEmails": 0},
            {"id": "mb-trash", "name": "Trash", "role": "trash", "totalEmails": 0},
        ]
        self.calls: List[tuple] = []
        self.fail_next: List[int] = []
        self.not_updated: Dict[str, Dict[str, Any]] = {}
        self.no_outcome: set = set()
        self.method_error: Optional[str] = None

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def methods(self, name: str) -> List[Dict[str, Any]]:
        return [args for method, args in self.calls if method == name]

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.fail_next:
            return httpx.Response(self.fail_next.pop(0), text="unavailable")
        if request.headers.get("Authorization") != f"Bearer {TOKEN}":
            return httpx.Response(401, text="unauthorized")

        if request.method == "GET" and str(request.url) == self.SESSION_URL:
            return httpx.Response(200, json={
                "apiUrl": self.API_URL,
                "username": "me@example.com",
                "primaryAccounts": {"urn:ietf:params:jmap:mail": self.ACCOUNT_ID},
                "accounts": {self.ACCOUNT_ID: {"name": "me@example.com"}},
            })

        body = json.loads(request.content)
        name, args, call_id = body["methodCalls"][0]
        self.calls.append((name, args))

        if self.method_error:
            return httpx.Response(200, json={"methodResponses": [["error", {"type": self.method_error}, call_id]]})

        handler = {
            "Mailbox/get": self._mailbox_get,
            "Email/query": self._email_query,
            "Email/get": self._email_get,
            "Email/set": self._email_set,
        }[name]
        return httpx.Response(200, json={"methodResponses": [[name, handler(args), call_id]]})

    def _mailbox_get(self, args):
        return {"accountId": args["accountId"], "state": "1", "list": self.mailboxes, "notFound": []}

    def _email_query(self, args):
        mailbox_id = args["filter"]["inMailbox"]
        matching = [email for email in self.emails.values() if email["mailboxIds"].get(mailbox_id)]
        matching.sort(key=lambda email: email["receivedAt"], reverse=True)
        ids = [email["id"] for email in matching]
        if "limit" in args:
            ids = ids[:args["limit"]]
        return {"accountId": args["accountId"], "ids": ids, "position": 0, "total": len(matching)}

    def _email_get(self, args):
        found = [self.emails[email_id] for email_id in args["ids"] if email_id in self.emails]
        missing = [email_id for email_id in args["ids"] if email_id not in self.emails]
        if args.get("properties") == ["id"]:
            found = [{"id": email["id"]} for email in found]
        # Servers may return records in any order
        return {"accountId": args["accountId"], "state": "1", "list": list(reversed(found)), "notFound": missing}

    def _email_set(self, args):
        updated, not_updated = {}, {}
        for email_id, patch in args["update"].items():
            if email_id in self.not_updated:
                not_updated[email_id] = self.not_updated[email_id]
                continue
            if email_id in self.no_outcome:
                continue
            mailbox_ids = self.emails[email_id]["mailboxIds"]
            for key, value in patch.items():
                mailbox_id = key.split("/", 1)[1]
                if value is None:
                    mailbox_ids.pop(mailbox_id, None)
                else:
                    mailbox_ids[mailbox_id] = value
            updated[email_id] = None
        result = {"accountId": args["accountId"], "updated": updated}
        if not_updated:
            result["notUpdated"] = not_updated
        return result


def client_factory(server: FakeJmapServer):
    def factory(token: str) -> JmapClient:
        return JmapClient(
            bearer_token=token,
            session_url=FakeJmapServer.SESSION_URL,
            transport=server.transport(),
            retry_wait_min=0,
            retry_wait_max=0
        )
    return factory


class FakeScreenshotService(EmailScreenshotService):
    """Writes placeholder PNG bytes instead of launching a browser."""

    def __init__(self, fail_for: Optional[set] = None):
        super().__init__()
        self.rendered: Dict[str, str] = {}
        self.fail_for = fail_for or set()

    async def render(self, html_content, output_path):
        output_path = Path(output_path)
        if output_path.name in self.fail_for:
            raise RenderError(f"Failed to render {output_path.name}", path=str(output_path))
        output_path.write_bytes(b"\x89PNG\r\n\x1a\nfake")
        self.rendered[output_path.name] = html_content
        return output_path


class FakeDealExtractor:
    """Returns a fixed deal, or raises for images in fail_for."""

    def __init__(self, fail_with: Optional[Dict[bytes, Exception]] = None):
        self.fail_with = fail_with or {}
        self.seen: List[bytes] = []

    async def extract_deal(self, image_bytes: bytes) -> DealRecord:
        self.seen.append(image_bytes)
        if image_bytes in self.fail_with:
            raise self.fail_with[image_bytes]
        return DealRecord(
            sender="Acme Store",
            sales=[Sale(description="Weekend sale", discount="30% off", end_date="2026-10-20")],
            coupon_codes=[CouponCode(code="SAVE30", discount="30% off")],
        )


@pytest.fixture
def inbox_emails():
    return [
        make_email("M1", "2026-10-01T09:00:00Z", subject="Oldest", text="Plain deal"),
        make_email("M2", "2026-10-02T09:00:00Z", html="<p>Fragment</p>"),
        make_email("M3", "2026-10-03T09:00:00Z", html="<!DOCTYPE html><html><body>Full</body></html>"),
        make_email("M4", "2026-10-04T09:00:00Z", subject=None, text="No subject here"),
        make_email("M5", "2026-10-05T09:00:00Z", subject="Newest", html="<b>Big sale</b>", text="Big sale"),
    ]


@pytest.fixture
def jmap_server(inbox_emails):
    return FakeJmapServer(emails=inbox_emails)
