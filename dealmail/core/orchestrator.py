"""
Dealmail Orchestrator.

Coordinates the four pipeline commands:
1. get-emails: fetch inbox messages over JMAP and save JSON sidecars
2. get-image: render sidecars to PNG screenshots with Playwright
3. extract: send screenshots to Gemini Vision and merge deals into sidecars
4. archive: move verified messages from the inbox to the archive

Failure policy:
- get-emails stops at the first error.
- get-image and extract keep going after a per-item error and count it.
- archive stops if any id fails verification, then counts per-item moves.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from pydantic import ValidationError as PydanticValidationError

from .content_builder import load_email_record, record_from_email, select_body, select_record_body, to_display_html
from .deal_extractor import DealExtractor
from .errors import ApiError, DeadlineExceededError, DealmailError, FilesystemError, ValidationError
from .filesystem import ensure_output_directory, read_bytes, read_json_file, validate_input_files, write_json_file
from .jmap_client import JmapClient, MailboxRole, find_mailbox_by_role
from .screenshot_service import EmailScreenshotService

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEAL_INFO_FIELD = "dealInfo"


@dataclass
class RunResult:
    """Result of a command run."""
    command: str
    status: str  # "success", "partial", "failed"
    processed: int = 0
    failed: int = 0
    outputs: List[Path] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def exit_code(self) -> int:
        return 0 if self.status == "success" else 1


def parse_limit(value: Any) -> Optional[int]:
    """
    Parse an email limit: a positive integer, or "all" for no cap (None).

    Raises:
        ValidationError: for zero, negative or non-numeric values
    """
    if isinstance(value, int) and not isinstance(value, bool):
        limit = value
    else:
        text = str(value).strip()
        if text.lower() == "all":
            return None
        try:
            limit = int(text, 10)
        except ValueError:
            limit = 0
    if limit <= 0:
        raise ValidationError(f'Invalid limit: {value}. Must be a positive number or "all"', value=str(value))
    return limit


def require_value(field_name: str, value: Optional[str]) -> str:
    """Reject missing or blank required values."""
    if value is None or not str(value).strip():
        raise ValidationError(f"{field_name} is required", field=field_name)
    return value


def validate_email_ids(email_ids: Sequence[str]) -> List[str]:
    """Require at least one id and no blank ids."""
    if not email_ids:
        raise ValidationError("At least one email ID is required")
    for email_id in email_ids:
        if not email_id or not email_id.strip():
            raise ValidationError("Email ID cannot be empty")
    return [email_id.strip() for email_id in email_ids]


def pair_extract_inputs(image_paths: Sequence[str], file_paths: Sequence[str]) -> List[Tuple[str, str]]:
    """
    Pair each image with its sidecar file.

    Raises:
        ValidationError: when no images are given, a path is blank, the
            counts differ, or one sidecar file is named twice
    """
    if not image_paths:
        raise ValidationError("At least one image path is required")
    for path in list(image_paths) + list(file_paths):
        if not path or not str(path).strip():
            raise ValidationError("Image and file paths cannot be empty")
    if len(image_paths) != len(file_paths):
        raise ValidationError(
            f"Number of images ({len(image_paths)}) must match number of files ({len(file_paths)})",
            images=len(image_paths),
            files=len(file_paths)
        )

    # Sidecars are rewritten in place: one pair per file
    seen: Dict[Path, str] = {}
    for file_path in file_paths:
        resolved = Path(file_path).expanduser().resolve()
        if resolved in seen:
            raise ValidationError(
                f"File {file_path} is given more than once (also as {seen[resolved]})",
                file=str(file_path)
            )
        seen[resolved] = file_path
    return list(zip(image_paths, file_paths))


def safe_file_stem(value: str) -> str:
    """Make a message id safe to use in a file name."""
    return re.sub(r'[^A-Za-z0-9._-]', '_', value)


async def run_with_deadline(awaitable: Awaitable[T], deadline_seconds: Optional[float]) -> T:
    """
    Await with an optional overall deadline; pending work is cancelled on expiry.

    Raises:
        DeadlineExceededError: when the deadline passes
    """
    if deadline_seconds is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=deadline_seconds)
    except asyncio.TimeoutError as e:
        raise DeadlineExceededError(
            f"Run exceeded deadline of {deadline_seconds}s",
            deadline_seconds=deadline_seconds
        ) from e


class DealmailOrchestrator:
    """
    Orchestrates the dealmail pipeline commands.

    Component construction is injected so the orchestrator never reads
    configuration itself.
    """

    def __init__(
        self,
        mail_client_factory: Optional[Callable[[str], JmapClient]] = None,
        screenshot_service: Optional[EmailScreenshotService] = None,
        deal_extractor_factory: Optional[Callable[[Optional[str]], DealExtractor]] = None,
        concurrency: int = 4
    ):
        """
        Initialize orchestrator with component factories.

        Args:
            mail_client_factory: Builds a JMAP client from an API token
            screenshot_service: Playwright screenshot service
            deal_extractor_factory: Builds a Gemini deal extractor from an API key
            concurrency: Worker count for per-item work
        """
        self.mail_client_factory = mail_client_factory or JmapClient
        self.screenshot_service = screenshot_service or EmailScreenshotService()
        self.deal_extractor_factory = deal_extractor_factory or DealExtractor
        self.concurrency = max(1, concurrency)

    async def _run_bounded(self, items: Sequence[T], worker: Callable[[T], Awaitable[Any]]) -> List[Any]:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run_one(item: T):
            async with semaphore:
                return await worker(item)

        return await asyncio.gather(*[run_one(item) for item in items])

    async def get_emails(
        self,
        password: str,
        output_dir: str,
        limit: Optional[int] = 100,
        screenshots: bool = False
    ) -> RunResult:
        """
        Fetch inbox messages and save one JSON sidecar per message.

        Workflow:
        1. Authenticate and resolve the mail account
        2. Locate the inbox
        3. Query the newest message ids (limit None means all)
        4. Fetch message details
        5. Write email-<id>.json (and email-<id>.png with screenshots=True)
           sequentially, newest first

        Raises:
            DealmailError: on the first failure
        """
        start_time = time.monotonic()
        output_path = ensure_output_directory(output_dir)
        logger.info(f"Output directory: {output_path}")
        logger.info(f"Email limit: {'all' if limit is None else limit}")

        async with self.mail_client_factory(password) as client:
            session = await client.authenticate()
            account_id = client.resolve_account(session)
            mailboxes = await client.get_mailboxes(account_id)
            inbox = find_mailbox_by_role(mailboxes, MailboxRole.INBOX)
            email_ids = await client.query_emails(account_id, inbox.id, limit)
            emails = await client.get_email_details(account_id, email_ids)

        # Email/get does not promise query order
        position = {email_id: index for index, email_id in enumerate(email_ids)}
        emails.sort(key=lambda email: position.get(email.id, len(position)))

        result = RunResult(command="get-emails", status="success")
        if not emails:
            logger.info("No emails to process")

        for email in emails:
            stem = f"email-{safe_file_stem(email.id)}"
            record = record_from_email(email)
            json_path = write_json_file(output_path / f"{stem}.json", record.to_dict())
            result.outputs.append(json_path)

            if screenshots:
                html = to_display_html(select_body(email), record)
                png_path = await self.screenshot_service.render(html, output_path / f"{stem}.png")
                result.outputs.append(png_path)

            result.processed += 1
            logger.info(f"Saved email {email.id}: {email.subject or 'No Subject'}")

        result.duration_seconds = time.monotonic() - start_time
        logger.info(f"Completed processing {result.processed} emails")
        return result

    async def get_images(self, input_paths: Sequence[str], output_dir: str) -> RunResult:
        """
        Render stored emails to PNG screenshots.

        All input paths are checked before any rendering starts. A file that
        cannot be read or rendered is logged and counted; the rest continue.
        """
        start_time = time.monotonic()
        if not input_paths:
            raise ValidationError("At least one input file is required")
        inputs = validate_input_files(input_paths)
        output_path = ensure_output_directory(output_dir)
        logger.info(f"Processing {len(inputs)} email files...")

        result = RunResult(command="get-image", status="success")
        jobs = []
        for path in inputs:
            try:
                data = read_json_file(path)
                if not isinstance(data, dict):
                    raise FilesystemError(f"Expected a JSON object in {path}", path=str(path))
                record = load_email_record(data)
            except (FilesystemError, PydanticValidationError) as e:
                logger.warning(f"Skipping {path}: {e}")
                result.failed += 1
                result.errors[str(path)] = str(e)
                continue

            stem = f"email-{safe_file_stem(record.id)}" if record.id else path.stem
            html = to_display_html(select_record_body(record), record)
            jobs.append((html, record.id or path.stem, output_path / f"{stem}.png"))

        screenshot_results = await self.screenshot_service.capture_batch(jobs, max_concurrent=self.concurrency)
        for screenshot in screenshot_results:
            if screenshot.success:
                result.processed += 1
                result.outputs.append(screenshot.output_path)
            else:
                result.failed += 1
                result.errors[screenshot.email_id] = screenshot.error or "unknown"

        result.status = self._status(result)
        result.duration_seconds = time.monotonic() - start_time
        logger.info(f"Successfully generated {result.processed} images ({result.failed} failed)")
        return result

    async def extract_deals(
        self,
        image_paths: Sequence[str],
        file_paths: Sequence[str],
        api_key: Optional[str]
    ) -> RunResult:
        """
        Extract deals from screenshots and merge them into their sidecars.

        Each sidecar gains a dealInfo field and is rewritten in place; all
        other fields are preserved.
        """
        start_time = time.monotonic()
        pairs = pair_extract_inputs(image_paths, file_paths)
        extractor = self.deal_extractor_factory(api_key)
        validate_input_files([path for pair in pairs for path in pair])
        logger.info(f"Processing {len(pairs)} images...")

        result = RunResult(command="extract", status="success")

        async def process_pair(pair: Tuple[str, str]) -> Tuple[str, Optional[str]]:
            image_path, file_path = pair
            try:
                sidecar = read_json_file(file_path)
                if not isinstance(sidecar, dict):
                    raise FilesystemError(f"Expected a JSON object in {file_path}", path=str(file_path))
                deal = await extractor.extract_deal(read_bytes(image_path))
                sidecar[DEAL_INFO_FIELD] = deal.to_dict()
                write_json_file(file_path, sidecar)
            except DealmailError as e:
                logger.warning(f"Extraction failed for {image_path}: {e}")
                return image_path, str(e)

            logger.info(
                f"Extracted {len(deal.sales)} sales and {len(deal.coupon_codes)} coupon codes "
                f"from {image_path} ({deal.sender})"
            )
            return file_path, None

        for path, error in await self._run_bounded(pairs, process_pair):
            if error is None:
                result.processed += 1
                result.outputs.append(Path(path))
            else:
                result.failed += 1
                result.errors[path] = error

        result.status = self._status(result)
        result.duration_seconds = time.monotonic() - start_time
        logger.info(f"Completed extraction: {result.processed} updated, {result.failed} failed")
        return result

    async def archive_emails(self, password: str, email_ids: Sequence[str]) -> RunResult:
        """
        Move messages from the inbox to the archive.

        Every id is verified before anything moves; a missing id aborts the
        run with NotFoundError. Moves then run independently and are counted.
        """
        start_time = time.monotonic()
        ids = validate_email_ids(email_ids)
        logger.info(f"Email IDs to archive: {', '.join(ids)}")

        result = RunResult(command="archive", status="success")

        async with self.mail_client_factory(password) as client:
            session = await client.authenticate()
            account_id = client.resolve_account(session)
            mailboxes = await client.get_mailboxes(account_id)
            inbox = find_mailbox_by_role(mailboxes, MailboxRole.INBOX)
            archive = find_mailbox_by_role(mailboxes, MailboxRole.ARCHIVE)
            verified_ids = await client.verify_emails(account_id, ids)

            logger.info(f"Archiving {len(verified_ids)} emails...")

            async def move(email_id: str) -> Tuple[str, Optional[str]]:
                try:
                    moved = await client.move_email(account_id, email_id, inbox.id, archive.id)
                except ApiError as e:
                    logger.warning(f"Archive failed for {email_id}: {e}")
                    return email_id, str(e)
                return email_id, None if moved else "server reported no outcome"

            outcomes = await self._run_bounded(verified_ids, move)

        for email_id, error in outcomes:
            if error is None:
                result.processed += 1
            else:
                result.failed += 1
                result.errors[email_id] = error

        result.status = self._status(result)
        result.duration_seconds = time.monotonic() - start_time
        logger.info(f"Completed archiving {result.processed} emails")
        return result

    @staticmethod
    def _status(result: RunResult) -> str:
        if result.failed == 0:
            return "success"
        return "partial" if result.processed else "failed"
