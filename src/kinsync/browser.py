"""Playwright page pool shared by provider scrapers.

Usage:
    async with PagePool(BrowserConfig(cdp_url="http://localhost:9222")) as pool:
        async with pool.acquire() as page:
            record = await scraper.scrape_person_by_id(page, "KWQ7-ABC")
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import structlog
from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

logger = structlog.get_logger(__name__)


@dataclass
class BrowserConfig:
    """Configuration for the shared browser session."""
    cdp_url: str | None = None  # attach to a running Chrome instead of launching one
    headless: bool = True
    timeout_ms: int = 30000
    pool_size: int = 1
    viewport_width: int = 1280
    viewport_height: int = 720


class PagePool:
    """Bounded pool of worker pages plus one page reserved for login flows.

    Pages are only handed out through :meth:`acquire`, which always returns
    the page to the pool, including on error and task cancellation.
    """

    def __init__(self, config: BrowserConfig | None = None) -> None:
        self.config = config or BrowserConfig()
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._idle: asyncio.Queue[Page] = asyncio.Queue()
        self._created = 0
        self._create_lock = asyncio.Lock()
        self._interactive: Page | None = None
        self._interactive_lock = asyncio.Lock()

    async def __aenter__(self) -> PagePool:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    async def start(self) -> None:
        self._playwright = await async_playwright().start()
        if self.config.cdp_url:
            self._browser = await self._playwright.chromium.connect_over_cdp(self.config.cdp_url)
            contexts = self._browser.contexts
            self._context = contexts[0] if contexts else await self._browser.new_context()
            logger.info("browser.attached", cdp_url=self.config.cdp_url)
        else:
            self._browser = await self._playwright.chromium.launch(headless=self.config.headless)
            self._context = await self._browser.new_context(
                viewport={"width": self.config.viewport_width, "height": self.config.viewport_height}
            )
            logger.info("browser.launched", headless=self.config.headless)
        self._context.set_default_timeout(self.config.timeout_ms)

    async def close(self) -> None:
        while not self._idle.empty():
            page = self._idle.get_nowait()
            await page.close()
        if self._interactive is not None:
            await self._interactive.close()
            self._interactive = None
        # An attached browser belongs to the user; only disconnect from it.
        if self._context is not None and not self.config.cdp_url:
            await self._context.close()
        if self._browser is not None:
            await self._browser.close()
        if self._playwright is not None:
            await self._playwright.stop()
        self._context = self._browser = self._playwright = None
        self._created = 0

    async def _new_page(self) -> Page:
        if self._context is None:
            raise RuntimeError("Browser not initialized. Use 'async with PagePool()' or call start().")
        return await self._context.new_page()

    async def _checkout(self) -> Page:
        async with self._create_lock:
            if self._idle.empty() and self._created < self.config.pool_size:
                self._created += 1
                try:
                    return await self._new_page()
                except BaseException:
                    self._created -= 1
                    raise
        return await self._idle.get()

    def _release(self, page: Page) -> None:
        if page.is_closed():
            self._created -= 1
            return
        self._idle.put_nowait(page)

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[Page]:
        """Borrow a worker page for the duration of the ``async with`` block."""
        page = await self._checkout()
        try:
            yield page
        finally:
            self._release(page)

    @asynccontextmanager
    async def interactive_page(self) -> AsyncIterator[Page]:
        """The single page used for login and other interactive flows."""
        async with self._interactive_lock:
            if self._interactive is None or self._interactive.is_closed():
                self._interactive = await self._new_page()
            yield self._interactive
