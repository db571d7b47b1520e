"""
Rendering engine backed by a persistent Chromium browser (Playwright).

The core only talks to the engine through the RenderEngine protocol: create,
reset and destroy exclusive handles, and render one request on a handle that
the caller already holds. ChromiumEngine implements it with one browser per
worker process and one isolated browser context + page per handle.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import ViewportSize, async_playwright

from render_service import prometheus_metrics
from render_service.errors import EngineError, RenderTimeout
from render_service.render_request import SOURCE_URL

if TYPE_CHECKING:
    from playwright.async_api import Browser, BrowserContext, Page, Playwright, Route

    from render_service.config import Settings
    from render_service.render_request import RenderRequest


OUTPUT_SIGNATURES = {
    "jpeg": b"\xff\xd8\xff",
    "png": b"\x89PNG\r\n\x1a\n",
    "pdf": b"%PDF-",
}


class RenderEngine(Protocol):
    """Narrow capability the orchestration core consumes."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    def is_running(self) -> bool: ...

    def health_check(self) -> bool: ...

    def get_version(self) -> str | None: ...

    async def create_handle(self) -> Any: ...

    async def reset_handle(self, handle: Any) -> None: ...

    async def destroy_handle(self, handle: Any) -> None: ...

    async def render(self, handle: Any, request: RenderRequest) -> bytes: ...


@dataclass
class PageHandle:
    """A browser context with its single page, pre-configured once at creation."""

    context: BrowserContext
    page: Page


def check_output(output_format: str, data: bytes | None) -> bytes:
    """
    Verify that the engine produced bytes of the requested format.

    Raises:
        EngineError: If the output is empty or carries the wrong signature.
    """
    if not data:
        raise EngineError(f"Engine returned empty {output_format} output")
    signature = OUTPUT_SIGNATURES[output_format]
    if not data.startswith(signature):
        raise EngineError(f"Engine returned malformed {output_format} output")
    return data


class ChromiumEngine:
    """
    Manager for a persistent headless Chromium instance.

    Handles are cheap compared to a browser launch, so the browser is shared by
    all handles of a worker. A browser that lost its connection is relaunched
    the next time a handle is created.
    """

    def __init__(self, settings: Settings, logger: logging.Logger | None = None) -> None:
        self.log = logger or logging.getLogger(__name__)
        self.device_scale_factor = settings.device_scale_factor
        self.javascript_enabled = settings.javascript_enabled
        self.blocked_resource_types = settings.blocked_resource_types
        self.navigation_timeout_ms = settings.render_timeout * 1000

        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._lock = asyncio.Lock()
        self._started = False

    async def start(self) -> None:
        """Start the persistent Chromium browser process."""
        async with self._lock:
            await self._start_internal()

    async def _start_internal(self) -> None:
        if self._started:
            self.log.warning("Chromium already started")
            return

        try:
            self.log.info("Starting Chromium browser process via Playwright...")
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(
                headless=True,
                args=[
                    "--no-sandbox",
                    "--disable-setuid-sandbox",
                    "--disable-gpu",
                    "--disable-dev-shm-usage",
                    "--disable-accelerated-2d-canvas",
                    "--disable-extensions",
                    "--disable-audio-output",
                    "--hide-scrollbars",
                ],
            )
            self._started = True
            self.log.info("Chromium browser started successfully")

        except ImportError as e:
            self.log.error("Playwright not installed: %s", e)
            raise RuntimeError("Playwright library is required for ChromiumEngine") from e
        except Exception as e:
            self.log.error("Failed to start Chromium: %s", e)
            self._started = False
            raise

    async def stop(self) -> None:
        """Stop the persistent Chromium browser process."""
        async with self._lock:
            await self._stop_internal()

    async def _stop_internal(self) -> None:
        if not self._started:
            return

        try:
            if self._browser:
                try:
                    await self._browser.close()
                except Exception as e:  # noqa: BLE001
                    self.log.error("Error closing browser: %s", e)

            if self._playwright:
                try:
                    await self._playwright.stop()
                except Exception as e:  # noqa: BLE001
                    self.log.error("Error stopping Playwright: %s", e)

            self.log.info("Chromium browser stopped successfully")
        finally:
            self._started = False
            self._browser = None
            self._playwright = None

    async def _ensure_browser(self) -> Browser:
        async with self._lock:
            if not self._started:
                raise EngineError("Chromium not started. Call start() first.")
            if self._browser is None or not self._browser.is_connected():
                self.log.warning("Chromium browser disconnected, restarting...")
                await self._stop_internal()
                await self._start_internal()
                prometheus_metrics.chromium_restarts_total.inc()
            if self._browser is None:
                raise EngineError("Chromium browser is not available")
            return self._browser

    def is_running(self) -> bool:
        """Check if the Chromium browser is running."""
        return self._started and self._browser is not None

    def health_check(self) -> bool:
        """
        Perform a health check on the Chromium browser.

        Returns:
            True if the browser is running and connected, False otherwise.
        """
        try:
            return self.is_running() and self._browser is not None and self._browser.is_connected()
        except Exception as e:  # noqa: BLE001
            self.log.error("Health check failed: %s", e)
            return False

    def get_version(self) -> str | None:
        """
        Get the Chromium browser version.

        Returns:
            Chromium version string (e.g., "131.0.6778.69") or None if browser is not running.
        """
        try:
            if not self.is_running() or not self._browser:
                return None

            version_string = self._browser.version
            # Extract version number from "HeadlessChrome/131.0.6778.69" format
            if "/" in version_string:
                return version_string.split("/")[1]
            return version_string
        except Exception as e:  # noqa: BLE001
            self.log.error("Failed to get Chromium version: %s", e)
            return None

    async def create_handle(self) -> PageHandle:
        """
        Create a pre-configured rendering handle.

        The handle's page aborts blocked sub-resource requests and runs with
        scripts disabled unless configured otherwise, so none of this has to be
        repeated per render.
        """
        browser = await self._ensure_browser()
        context: BrowserContext | None = None
        try:
            context = await browser.new_context(
                device_scale_factor=self.device_scale_factor,
                viewport=ViewportSize(width=800, height=600),
                java_script_enabled=self.javascript_enabled,
            )
            page = await context.new_page()
            page.set_default_timeout(self.navigation_timeout_ms)
            if self.blocked_resource_types:
                await page.route("**/*", self._route_request)
            return PageHandle(context=context, page=page)
        except PlaywrightError as e:
            if context is not None:
                await self._close_quietly(context)
            raise EngineError(f"Failed to create rendering handle: {e}") from e

    async def _route_request(self, route: Route) -> None:
        if route.request.resource_type in self.blocked_resource_types:
            await route.abort()
        else:
            await route.continue_()

    async def reset_handle(self, handle: PageHandle) -> None:
        """Navigate the handle back to a blank document before it is reused."""
        try:
            await handle.page.goto("about:blank")
        except PlaywrightError as e:
            raise EngineError(f"Failed to reset rendering handle: {e}") from e

    async def destroy_handle(self, handle: PageHandle) -> None:
        """Close the page and its context. Errors are logged, never raised."""
        try:
            await handle.page.close()
        except Exception as e:  # noqa: BLE001
            self.log.warning("Error closing page: %s", e)
        await self._close_quietly(handle.context)

    async def _close_quietly(self, context: BrowserContext) -> None:
        try:
            await context.close()
        except Exception as e:  # noqa: BLE001
            self.log.warning("Error closing context: %s", e)

    async def render(self, handle: PageHandle, request: RenderRequest) -> bytes:
        """
        Render one request on an already-acquired handle.

        Raises:
            RenderTimeout: If Chromium reports a navigation or capture timeout.
            EngineError: On any other browser failure or malformed output.
        """
        options = request.options
        page = handle.page
        try:
            await page.set_viewport_size(ViewportSize(width=options.width, height=options.height))
            if request.source == SOURCE_URL:
                await page.goto(request.content, wait_until="domcontentloaded")
            else:
                await page.set_content(request.content, wait_until="domcontentloaded")

            if options.format == "pdf":
                data = await page.pdf(
                    width=f"{options.width}px",
                    height=f"{options.height}px",
                    print_background=True,
                )
            elif options.format == "jpeg":
                data = await page.screenshot(type="jpeg", quality=options.quality, full_page=options.full_page)
            else:
                data = await page.screenshot(type="png", full_page=options.full_page)

        except PlaywrightTimeoutError as e:
            raise RenderTimeout(f"Chromium timed out while rendering: {e}") from e
        except PlaywrightError as e:
            raise EngineError(f"Chromium failed to render: {e}") from e

        return check_output(options.format, data)
