"""
Command line entry point for dealmail.

Commands:
    get-emails  Fetch inbox emails over JMAP and save JSON sidecars
    get-image   Render email JSON files to PNG screenshots
    extract     Extract deal information from screenshots into sidecars
    archive     Move emails from the inbox to the archive
"""

import argparse
import asyncio
import logging
import sys
from typing import Callable, Dict, List, Optional

from . import __version__
from .config import PipelineConfig, get_pipeline_config
from .core.deal_extractor import DealExtractor
from .core.errors import DealmailError, ErrorKind, ValidationError
from .core.jmap_client import JmapClient
from .core.orchestrator import DealmailOrchestrator, RunResult, parse_limit, require_value, run_with_deadline
from .core.screenshot_service import EmailScreenshotService

logger = logging.getLogger("dealmail")

ERROR_LABELS: Dict[ErrorKind, str] = {
    ErrorKind.AUTHENTICATION: "Authentication failed",
    ErrorKind.API: "Mail API error",
    ErrorKind.TRANSPORT: "Network error",
    ErrorKind.NOT_FOUND: "Not found",
    ErrorKind.VALIDATION: "Invalid input",
    ErrorKind.FILESYSTEM: "File error",
    ErrorKind.RENDER: "Screenshot failed",
    ErrorKind.SCHEMA_PARSE: "Could not parse model response",
    ErrorKind.API_KEY: "API key error",
    ErrorKind.DEADLINE_EXCEEDED: "Deadline exceeded",
}


def format_error(error: DealmailError) -> str:
    """User-facing message for any pipeline error."""
    return f"{ERROR_LABELS[error.kind]}: {error}"


class DealmailArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that raises ValidationError instead of exiting."""

    def error(self, message):
        raise ValidationError(message)


def build_parser() -> argparse.ArgumentParser:
    parser = DealmailArgumentParser(
        prog="dealmail",
        description="Extract deal information from emails"
    )
    parser.add_argument("--version", action="version", version=f"dealmail v{__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors")
    parser.add_argument("--config", help="YAML config file (fallback to DEALMAIL_CONFIG env var)")
    parser.add_argument("--deadline", type=float, default=None,
                        help="Abort the whole run after this many seconds")

    subparsers = parser.add_subparsers(dest="command", metavar="<command>")

    get_emails = subparsers.add_parser("get-emails", help="Fetch emails from Fastmail and save as JSON files")
    _add_credentials(get_emails)
    get_emails.add_argument("-o", "--output", default="./emails",
                            help="Directory to save email JSON files (default: ./emails)")
    get_emails.add_argument("-l", "--limit", default="100",
                            help='Maximum number of emails to fetch or "all" (default: 100)')
    get_emails.add_argument("--screenshots", action="store_true",
                            help="Also render a PNG screenshot next to each JSON file")

    get_image = subparsers.add_parser("get-image", help="Generate PNG screenshots from email JSON files")
    get_image.add_argument("-i", "--input", dest="inputs", action="append", default=[],
                           help="Path to email JSON file (can be specified multiple times)")
    get_image.add_argument("-o", "--output", default="./screenshots",
                           help="Directory to save images (default: ./screenshots)")
    _add_concurrency(get_image)

    extract = subparsers.add_parser("extract", help="Extract deal information from email images")
    extract.add_argument("-i", "--image", dest="images", action="append", default=[],
                         help="Path to email image (can be specified multiple times)")
    extract.add_argument("-f", "--file", dest="files", action="append", default=[],
                         help="Path to the matching email JSON file (one per image)")
    extract.add_argument("-k", "--api-key", dest="api_key", default=None,
                         help="Google Gemini API key (fallback to GEMINI_API_KEY env var)")
    _add_concurrency(extract)

    archive = subparsers.add_parser("archive", help="Archive emails from inbox to archive folder")
    _add_credentials(archive)
    archive.add_argument("-i", "--id", dest="ids", action="append", default=[],
                         help="Email ID to archive (can be specified multiple times)")
    _add_concurrency(archive)

    return parser


def _add_credentials(parser: argparse.ArgumentParser):
    parser.add_argument("-u", "--username", default=None,
                        help="Fastmail username (fallback to FASTMAIL_USERNAME env var)")
    parser.add_argument("-p", "--password", default=None,
                        help="Fastmail API token/password (fallback to FASTMAIL_PASSWORD env var)")


def _add_concurrency(parser: argparse.ArgumentParser):
    parser.add_argument("-c", "--concurrency", type=int, default=None,
                        help="Maximum items processed at once (fallback to DEALMAIL_CONCURRENCY, default: 4)")


def configure_logging(verbose: bool = False, quiet: bool = False):
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_orchestrator(config: PipelineConfig, concurrency: Optional[int] = None) -> DealmailOrchestrator:
    """Wire components from configuration."""
    jmap = config.jmap
    vision = config.vision
    screenshot = config.screenshot

    def mail_client_factory(token: str) -> JmapClient:
        return JmapClient(
            bearer_token=token,
            session_url=jmap.session_url,
            timeout=jmap.timeout_seconds,
            max_attempts=jmap.max_retries
        )

    def deal_extractor_factory(api_key: Optional[str]) -> DealExtractor:
        return DealExtractor(
            api_key=api_key,
            model_name=vision.model_name,
            temperature=vision.temperature,
            max_output_tokens=vision.max_output_tokens,
            max_attempts=vision.max_retries
        )

    if concurrency is not None and concurrency < 1:
        raise ValidationError(f"Invalid concurrency: {concurrency}. Must be a positive number")

    return DealmailOrchestrator(
        mail_client_factory=mail_client_factory,
        screenshot_service=EmailScreenshotService(
            viewport_width=screenshot.viewport_width,
            viewport_height=screenshot.viewport_height,
            timeout_ms=screenshot.timeout_ms
        ),
        deal_extractor_factory=deal_extractor_factory,
        concurrency=concurrency or config.run.concurrency
    )


async def run_command(args: argparse.Namespace, config: PipelineConfig) -> RunResult:
    """Validate arguments for a command, then run it."""
    orchestrator = build_orchestrator(config, getattr(args, "concurrency", None))
    deadline = args.deadline if args.deadline is not None else config.run.deadline_seconds
    if deadline is not None and deadline <= 0:
        raise ValidationError(f"Invalid deadline: {deadline}. Must be a positive number of seconds")

    if args.command == "get-emails":
        username = require_value("Username", args.username or config.jmap.username)
        password = require_value("Password/token", args.password or config.jmap.password)
        limit = parse_limit(args.limit)
        logger.info(f"Connecting to Fastmail as {username}")
        run = orchestrator.get_emails(password, args.output, limit, screenshots=args.screenshots)

    elif args.command == "get-image":
        run = orchestrator.get_images(args.inputs, args.output)

    elif args.command == "extract":
        run = orchestrator.extract_deals(args.images, args.files, args.api_key or config.vision.api_key)

    elif args.command == "archive":
        username = require_value("Username", args.username or config.jmap.username)
        password = require_value("Password/token", args.password or config.jmap.password)
        logger.info(f"Connecting to Fastmail as {username}")
        run = orchestrator.archive_emails(password, args.ids)

    else:
        raise ValidationError(f"Unknown command: {args.command}")

    return await run_with_deadline(run, deadline)


def report(result: RunResult):
    for item, error in result.errors.items():
        logger.error(f"{item}: {error}")
    logger.info(
        f"{result.command} finished with status {result.status}: "
        f"{result.processed} succeeded, {result.failed} failed in {result.duration_seconds:.1f}s"
    )


def main(argv: Optional[List[str]] = None, runner: Callable = asyncio.run) -> int:
    """
    Run the CLI and return the process exit code (0 success, 1 failure).
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    if not argv:
        argv = ["--help"]

    try:
        args = parser.parse_args(argv)
    except ValidationError as e:
        configure_logging()
        logger.error(format_error(e))
        return 1

    configure_logging(args.verbose, args.quiet)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        config = get_pipeline_config(args.config)
        result = runner(run_command(args, config))
    except DealmailError as e:
        logger.error(format_error(e))
        logger.info(f"{args.command} failed")
        return 1
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return 1

    report(result)
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
