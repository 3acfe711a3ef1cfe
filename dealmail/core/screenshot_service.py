"""
Email Screenshot Service using Playwright.

Renders email HTML and captures full-page PNG screenshots to disk.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .errors import RenderError

logger = logging.getLogger(__name__)


@dataclass
class ScreenshotResult:
    """Result of screenshot capture."""
    email_id: str
    success: bool
    output_path: Optional[Path] = None
    error: Optional[str] = None


class EmailScreenshotService:
    """
    Playwright-based email screenshot generation.

    Each render launches its own headless Chromium and closes it afterwards,
    on success and on failure.
    """

    BROWSER_ARGS = [
        '--disable-gpu',
        '--disable-dev-shm-usage',
        '--no-sandbox',
        '--disable-setuid-sandbox'
    ]

    def __init__(
        self,
        viewport_width: int = 1200,
        viewport_height: int = 800,
        timeout_ms: int = 30000,
        image_wait_ms: int = 5000
    ):
        """
        Initialize screenshot service.

        Args:
            viewport_width: Browser viewport width in pixels
            viewport_height: Browser viewport height in pixels
            timeout_ms: Deadline for a whole render in milliseconds
            image_wait_ms: Extra time allowed for images to finish loading
        """
        self.viewport_width = viewport_width
        self.viewport_height = viewport_height
        self.timeout_ms = timeout_ms
        self.image_wait_ms = image_wait_ms

    async def render(self, html_content: str, output_path: Union[str, Path]) -> Path:
        """
        Render HTML and write a full-page PNG to output_path.

        Raises:
            RenderError: if launching, loading or capturing fails, or the
                render exceeds its deadline
        """
        output_path = Path(output_path)
        try:
            await asyncio.wait_for(
                self._render(html_content, output_path),
                timeout=self.timeout_ms / 1000
            )
        except asyncio.TimeoutError as e:
            raise RenderError(
                f"Render of {output_path.name} exceeded {self.timeout_ms}ms",
                path=str(output_path)
            ) from e
        except RenderError:
            raise
        except Exception as e:
            raise RenderError(f"Failed to render {output_path.name}", cause=e, path=str(output_path)) from e

        logger.debug(f"Screenshot written to {output_path}")
        return output_path

    async def _render(self, html_content: str, output_path: Path):
        from playwright.async_api import async_playwright

        async with async_playwright() as playwright:
            browser = await playwright.chromium.launch(headless=True, args=self.BROWSER_ARGS)
            try:
                page = await browser.new_page(
                    viewport={
                        'width': self.viewport_width,
                        'height': self.viewport_height
                    }
                )
                await page.set_content(html_content, wait_until='networkidle', timeout=self.timeout_ms)
                await self._wait_for_images(page)
                await page.screenshot(path=str(output_path), full_page=True, type='png')
            finally:
                await browser.close()

    async def _wait_for_images(self, page):
        """
        Wait for all images to load.

        Args:
            page: Playwright page object
        """
        try:
            await page.evaluate("""
                (timeoutMs) => {
                    const images = document.querySelectorAll('img[src]');
                    const promises = Array.from(images).map(img => {
                        if (img.complete) return Promise.resolve();
                        return new Promise((resolve) => {
                            img.addEventListener('load', resolve);
                            img.addEventListener('error', resolve); // Resolve even on error
                            setTimeout(resolve, timeoutMs);
                        });
                    });
                    return Promise.all(promises);
                }
            """, self.image_wait_ms)
        except Exception as e:
            logger.warning(f"Image wait failed: {e}")

    async def capture_batch(
        self,
        emails: List[Tuple[str, str, Path]],
        max_concurrent: int = 4
    ) -> List[ScreenshotResult]:
        """
        Render multiple emails with bounded concurrency.

        Args:
            emails: List of (html_content, email_id, output_path) tuples
            max_concurrent: Maximum concurrent renders

        Returns:
            List of ScreenshotResult objects, in input order
        """
        semaphore = asyncio.Semaphore(max(1, max_concurrent))

        async def capture_with_semaphore(html: str, email_id: str, output_path: Path) -> ScreenshotResult:
            async with semaphore:
                try:
                    path = await self.render(html, output_path)
                    return ScreenshotResult(email_id=email_id, success=True, output_path=path)
                except RenderError as e:
                    logger.warning(f"Screenshot failed for {email_id}: {e}")
                    return ScreenshotResult(email_id=email_id, success=False, error=str(e))

        results = await asyncio.gather(*[
            capture_with_semaphore(html, email_id, output_path)
            for html, email_id, output_path in emails
        ])

        successful = sum(1 for r in results if r.success)
        logger.info(f"Batch screenshot complete: {successful}/{len(emails)} successful")
        return list(results)
