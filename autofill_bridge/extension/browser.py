from __future__ import annotations

import logging
import os

from playwright.async_api import (
    BrowserContext,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from ..config import settings


class BrowserSession:
    """Chromium page the bridge collects from and fills.

    With ``user_data_dir`` set (argument or settings) the session reuses a
    persistent profile; otherwise it runs in a throwaway context.
    """

    def __init__(self, user_data_dir: str | None = None, headless: bool | None = None) -> None:
        self.context: BrowserContext | None = None
        self.page: Page | None = None
        self._playwright: Playwright | None = None
        self._browser = None
        profile = user_data_dir or settings.user_data_dir
        self.user_data_dir = os.path.expanduser(profile) if profile else None
        self.headless = settings.headless if headless is None else headless

    async def __aenter__(self) -> "BrowserSession":
        self._playwright = await async_playwright().start()
        chromium = self._playwright.chromium
        if self.user_data_dir:
            self.context = await chromium.launch_persistent_context(
                user_data_dir=self.user_data_dir,
                headless=self.headless,
            )
        else:
            self._browser = await chromium.launch(headless=self.headless)
            self.context = await self._browser.new_context()
        self.context.set_default_navigation_timeout(settings.navigation_timeout_ms)
        self.page = await self.context.new_page()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.context:
            await self.context.close()
        if self._browser:
            await self._browser.close()
        if self._playwright:
            await self._playwright.stop()

    def _require_page(self) -> Page:
        if not self.page:
            raise RuntimeError("Browser page is not initialized. Use within an async context manager.")
        return self.page

    async def goto(self, url: str, wait_ms: int = 0) -> Page:
        """
        Navigate to a URL and wait for the forms to settle.
        """
        page = self._require_page()
        await page.goto(url, wait_until="domcontentloaded")
        try:
            await page.wait_for_load_state("networkidle", timeout=5000)
        except PlaywrightTimeoutError:
            logging.warning("networkidle_timeout url=%s", url)

        if wait_ms > 0:
            await page.wait_for_timeout(wait_ms)
        return page

    async def set_content(self, html: str) -> Page:
        page = self._require_page()
        await page.set_content(html, wait_until="domcontentloaded")
        return page

    def __repr__(self) -> str:
        return f"BrowserSession(headless={self.headless}, persistent={self.user_data_dir is not None})"
