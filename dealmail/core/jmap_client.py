"""
JMAP Mail Client.

Talks to a JMAP mail provider (Fastmail by default) over HTTP:
- Resolve the session and primary mail account
- List mailboxes and locate them by role
- Query and fetch messages
- Move messages between mailboxes
"""

import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pydantic import BaseModel, Field, field_validator
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import ApiError, AuthenticationError, NotFoundError, TransportError

logger = logging.getLogger(__name__)

FASTMAIL_SESSION_URL = "https://api.fastmail.com/jmap/session"

JMAP_CORE_CAPABILITY = "urn:ietf:params:jmap:core"
JMAP_MAIL_CAPABILITY = "urn:ietf:params:jmap:mail"

EMAIL_DETAIL_PROPERTIES = [
    "id",
    "threadId",
    "mailboxIds",
    "keywords",
    "from",
    "to",
    "cc",
    "bcc",
    "subject",
    "receivedAt",
    "sentAt",
    "preview",
    "hasAttachment",
    "bodyValues",
    "textBody",
    "htmlBody",
]


# =============================================================================
# Pydantic Models
# =============================================================================

class MailboxRole(str, Enum):
    """Standard mailbox roles."""
    INBOX = "inbox"
    ARCHIVE = "archive"
    DRAFTS = "drafts"
    SENT = "sent"
    TRASH = "trash"
    JUNK = "junk"
    FLAGGED = "flagged"
    IMPORTANT = "important"
    SUBSCRIBED = "subscribed"
    ALL = "all"


class Mailbox(BaseModel):
    """A mailbox (folder) on the server."""
    id: str
    name: str = ""
    role: Optional[MailboxRole] = None
    total_emails: int = Field(default=0, alias="totalEmails")

    class Config:
        populate_by_name = True

    @field_validator("role", mode="before")
    @classmethod
    def _unknown_role_is_none(cls, value: Any) -> Any:
        if value is None:
            return None
        try:
            return MailboxRole(str(value).lower())
        except ValueError:
            return None


class EmailAddress(BaseModel):
    """An address with optional display name."""
    name: Optional[str] = None
    email: str


class EmailBodyPart(BaseModel):
    """Body part reference; content lives in bodyValues."""
    part_id: Optional[str] = Field(default=None, alias="partId")
    type: Optional[str] = None
    blob_id: Optional[str] = Field(default=None, alias="blobId")
    size: Optional[int] = None
    name: Optional[str] = None
    disposition: Optional[str] = None

    class Config:
        populate_by_name = True


class EmailBodyValue(BaseModel):
    """Decoded text of a body part."""
    value: str = ""
    is_truncated: bool = Field(default=False, alias="isTruncated")

    class Config:
        populate_by_name = True


class JmapEmail(BaseModel):
    """An email as returned by Email/get."""
    id: str
    thread_id: str = Field(default="", alias="threadId")
    mailbox_ids: Dict[str, bool] = Field(default_factory=dict, alias="mailboxIds")
    keywords: Optional[Dict[str, bool]] = None
    from_: Optional[List[EmailAddress]] = Field(default=None, alias="from")
    to: Optional[List[EmailAddress]] = None
    cc: Optional[List[EmailAddress]] = None
    bcc: Optional[List[EmailAddress]] = None
    subject: Optional[str] = None
    received_at: Optional[str] = Field(default=None, alias="receivedAt")
    sent_at: Optional[str] = Field(default=None, alias="sentAt")
    preview: Optional[str] = None
    has_attachment: bool = Field(default=False, alias="hasAttachment")
    body_values: Dict[str, EmailBodyValue] = Field(default_factory=dict, alias="bodyValues")
    text_body: List[EmailBodyPart] = Field(default_factory=list, alias="textBody")
    html_body: List[EmailBodyPart] = Field(default_factory=list, alias="htmlBody")

    class Config:
        populate_by_name = True


class JmapSession(BaseModel):
    """Resolved JMAP session resource."""
    api_url: str = Field(alias="apiUrl")
    username: Optional[str] = None
    primary_accounts: Dict[str, str] = Field(default_factory=dict, alias="primaryAccounts")
    accounts: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        populate_by_name = True


def find_mailbox_by_role(mailboxes: Sequence[Mailbox], role: MailboxRole) -> Mailbox:
    """
    Find the first mailbox with the given role.

    When several mailboxes share a role the first one in server order wins.

    Raises:
        NotFoundError: if no mailbox has the role
    """
    role = MailboxRole(role)
    for mailbox in mailboxes:
        if mailbox.role == role:
            logger.info(f"Found {role.value} folder: {mailbox.name} with {mailbox.total_emails} emails")
            return mailbox
    raise NotFoundError(f"Could not find {role.value} folder", role=role.value)


# =============================================================================
# JMAP Client
# =============================================================================

class JmapClient:
    """
    JMAP client over httpx with bearer-token authentication.

    Use as an async context manager so the HTTP client is closed:

        async with JmapClient(token) as client:
            session = await client.authenticate()
            account_id = client.resolve_account(session)
    """

    def __init__(
        self,
        bearer_token: str,
        session_url: str = FASTMAIL_SESSION_URL,
        timeout: float = 30.0,
        max_attempts: int = 3,
        retry_wait_min: float = 0.5,
        retry_wait_max: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize JMAP client.

        Args:
            bearer_token: API token used as bearer credential
            session_url: JMAP session resource URL
            timeout: Per-request timeout in seconds
            max_attempts: Attempts for retryable (transport-class) failures
            retry_wait_min: Minimum backoff between attempts in seconds
            retry_wait_max: Maximum backoff between attempts in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.session_url = session_url
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.retry_wait_min = retry_wait_min
        self.retry_wait_max = retry_wait_max
        self._bearer_token = bearer_token
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._session: Optional[JmapSession] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={
                    "Authorization": f"Bearer {self._bearer_token}",
                    "Content-Type": "application/json"
                },
                timeout=self.timeout,
                transport=self._transport
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _send(self, method: str, url: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send one HTTP request and map failures onto the error taxonomy."""
        client = await self._get_client()
        try:
            response = await client.request(method, url, json=payload)
        except httpx.TransportError as e:
            raise TransportError(f"Request to {url} failed", cause=e, url=url) from e

        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"Credential rejected by {url} (HTTP {response.status_code})",
                status_code=response.status_code
            )
        if response.status_code == 429 or response.status_code >= 500:
            raise TransportError(
                f"Service unavailable at {url} (HTTP {response.status_code})",
                status_code=response.status_code
            )
        if response.status_code >= 400:
            raise ApiError(
                f"Request to {url} rejected (HTTP {response.status_code}): {response.text[:200]}",
                status_code=response.status_code
            )

        try:
            return response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise ApiError(f"Invalid JSON from {url}", cause=e) from e

    async def _send_with_retry(
        self,
        method: str,
        url: str,
        payload: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Send a request, retrying transport-class failures with backoff."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_wait_min, min=self.retry_wait_min, max=self.retry_wait_max),
            retry=retry_if_exception_type(TransportError),
            reraise=True
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(f"Retrying {url} (attempt {attempt.retry_state.attempt_number}/{self.max_attempts})")
                return await self._send(method, url, payload)

    async def authenticate(self) -> JmapSession:
        """
        Fetch the JMAP session resource.

        Returns:
            JmapSession with apiUrl and primary accounts

        Raises:
            AuthenticationError: if the token is rejected
            TransportError: on network failure after retries
        """
        logger.info("Initializing JMAP client...")
        data = await self._send_with_retry("GET", self.session_url)
        try:
            self._session = JmapSession.model_validate(data)
        except ValueError as e:
            raise ApiError("Malformed JMAP session response", cause=e) from e
        return self._session

    def resolve_account(self, session: Optional[JmapSession] = None) -> str:
        """
        Resolve the primary mail account id.

        Raises:
            ApiError: if the session has no mail account
        """
        session = session or self._session
        if session is None:
            raise ApiError("Not authenticated: no JMAP session")

        logger.info("Getting account ID...")
        account_id = session.primary_accounts.get(JMAP_MAIL_CAPABILITY)
        if not account_id and session.accounts:
            account_id = next(iter(session.accounts))
        if not account_id:
            raise ApiError("Failed to get account ID: session lists no mail account")
        return account_id

    async def request(self, method_name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        """
        Invoke a single JMAP method and return its response arguments.

        Raises:
            ApiError: on a method-level error response
            TransportError: on network failure after retries
        """
        if self._session is None:
            await self.authenticate()

        payload = {
            "using": [JMAP_CORE_CAPABILITY, JMAP_MAIL_CAPABILITY],
            "methodCalls": [[method_name, arguments, "0"]]
        }
        data = await self._send_with_retry("POST", self._session.api_url, payload)

        responses = data.get("methodResponses") or []
        if not responses:
            raise ApiError(f"{method_name} returned no method responses")

        name, result, _call_id = responses[0]
        if name == "error":
            raise ApiError(
                f"{method_name} failed: {result.get('type', 'unknown')}"
                + (f" ({result['description']})" if result.get("description") else ""),
                error_type=result.get("type")
            )
        return result

    async def get_mailboxes(self, account_id: str) -> List[Mailbox]:
        """List all mailboxes; empty list when the account has none."""
        logger.info("Fetching mailboxes...")
        result = await self.request("Mailbox/get", {
            "accountId": account_id,
            "properties": ["id", "name", "role", "totalEmails"]
        })
        return [Mailbox.model_validate(item) for item in result.get("list") or []]

    async def query_emails(
        self,
        account_id: str,
        mailbox_id: str,
        limit: Optional[int] = None
    ) -> List[str]:
        """
        Query message ids in a mailbox, newest first.

        Args:
            account_id: JMAP account id
            mailbox_id: Mailbox to query
            limit: Maximum ids to return; None means no cap

        Returns:
            List of message ids (empty when the mailbox is empty)
        """
        logger.info("Fetching emails...")
        arguments: Dict[str, Any] = {
            "accountId": account_id,
            "filter": {"inMailbox": mailbox_id},
            "sort": [{"property": "receivedAt", "isAscending": False}],
            "calculateTotal": True
        }
        if limit is not None:
            arguments["limit"] = limit

        result = await self.request("Email/query", arguments)
        ids = list(result.get("ids") or [])
        if ids:
            logger.info(f"Found {len(ids)} emails")
        else:
            logger.info("No emails found in mailbox")
        return ids

    async def get_email_details(self, account_id: str, email_ids: Sequence[str]) -> List[JmapEmail]:
        """Fetch full message records, including text and HTML body values."""
        if not email_ids:
            return []

        result = await self.request("Email/get", {
            "accountId": account_id,
            "ids": list(email_ids),
            "properties": EMAIL_DETAIL_PROPERTIES,
            "fetchTextBodyValues": True,
            "fetchHTMLBodyValues": True
        })
        emails = [JmapEmail.model_validate(item) for item in result.get("list") or []]
        logger.debug(f"Fetched details for {len(emails)} emails")
        return emails

    async def verify_emails(self, account_id: str, email_ids: Sequence[str]) -> List[str]:
        """
        Confirm that every id exists on the server.

        Raises:
            NotFoundError: listing every missing id
        """
        result = await self.request("Email/get", {
            "accountId": account_id,
            "ids": list(email_ids),
            "properties": ["id"]
        })
        missing = list(result.get("notFound") or [])
        if missing:
            raise NotFoundError(
                f"Some emails were not found: {', '.join(missing)}",
                missing=missing
            )
        return list(email_ids)

    async def move_email(
        self,
        account_id: str,
        email_id: str,
        from_mailbox_id: str,
        to_mailbox_id: str
    ) -> bool:
        """
        Move a message between mailboxes in one Email/set call.

        Returns:
            True if the server reports the message updated, False when the
            server reports neither success nor failure for it.

        Raises:
            ApiError: if the server reports a per-item failure
        """
        logger.info(f"Moving email {email_id}...")
        result = await self.request("Email/set", {
            "accountId": account_id,
            "update": {
                email_id: {
                    f"mailboxIds/{from_mailbox_id}": None,
                    f"mailboxIds/{to_mailbox_id}": True
                }
            }
        })

        if email_id in (result.get("updated") or {}):
            logger.info(f"Successfully moved email {email_id}")
            return True

        not_updated = result.get("notUpdated") or {}
        if email_id in not_updated:
            error = not_updated[email_id]
            raise ApiError(
                f"Failed to move email {email_id}: {json.dumps(error)}",
                email_id=email_id,
                error_type=error.get("type") if isinstance(error, dict) else None
            )

        logger.warning(f"Server gave no outcome for email {email_id}")
        return False
