"""
Exclusive per-job resources for automation.

A pool hands each job its own resource and takes it back exactly once.
The browser pool shares one Chromium process and isolates jobs in separate
browser contexts (cookies, storage and pages are never shared).
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

from keysmith.config import AutomationConfig
from keysmith.errors import ResourceError

logger = logging.getLogger(__name__)

BROWSER_ARGS = [
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--window-size=1280,900",
]


class ResourcePool(ABC):
    """Hands out exclusive resources keyed by job id."""

    @abstractmethod
    async def acquire(self, job_id: str) -> Any:
        """Return a fresh resource for ``job_id``. Raises ResourceError."""

    @abstractmethod
    async def release(self, resource: Any) -> None:
        """Give a resource back. Releasing twice is a no-op."""

    @abstractmethod
    async def close(self) -> None:
        """Release everything and shut the pool down."""

    @property
    @abstractmethod
    def active_count(self) -> int:
        """Resources currently handed out."""


class PlaywrightBrowserPool(ResourcePool):
    """One lazily launched Chromium, one isolated BrowserContext per job."""

    def __init__(self, config: AutomationConfig | None = None):
        self.config = config or AutomationConfig()
        self._playwright: Any = None
        self._browser: Any = None
        self._contexts: dict[int, Any] = {}
        self._launch_lock = asyncio.Lock()

    @property
    def active_count(self) -> int:
        return len(self._contexts)

    async def _ensure_browser(self) -> Any:
        async with self._launch_lock:
            if self._browser is None or not self._browser.is_connected():
                from playwright.async_api import async_playwright

                if self._playwright is None:
                    self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(
                    headless=self.config.headless,
                    args=BROWSER_ARGS,
                )
                logger.info("Launched Chromium (headless=%s)", self.config.headless)
            return self._browser

    async def acquire(self, job_id: str) -> Any:
        try:
            browser = await self._ensure_browser()
            context = await browser.new_context(
                user_agent=self.config.user_agent,
                viewport={"width": 1280, "height": 900},
                ignore_https_errors=False,
                bypass_csp=False,
                accept_downloads=False,
                locale="en-US",
            )
        except Exception as e:
            raise ResourceError(f"Could not start browser for job {job_id}: {e}") from e
        self._contexts[id(context)] = context
        logger.debug("Browser context opened for job %s", job_id)
        return context

    async def release(self, resource: Any) -> None:
        if resource is None or self._contexts.pop(id(resource), None) is None:
            return
        try:
            await resource.close()
        except Exception as e:
            logger.warning("Failed to close browser context: %s", e)

    async def close(self) -> None:
        for context in list(self._contexts.values()):
            await self.release(context)
        if self._browser is not None:
            try:
                await self._browser.close()
            except Exception as e:
                logger.warning("Failed to close browser: %s", e)
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
