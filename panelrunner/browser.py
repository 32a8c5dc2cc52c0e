# panelrunner/browser.py
"""
Playwright session acquisition.

Every team gets its own browser process and one context; inside that context
each game gets one persistent page that stays logged in across jobs. The
team browser is deliberately kept out of the registry's browser set so a
sweep can never take a persistent session down with it. Ephemeral sessions
are fully registered and are reclaimed by ``BrowserRegistry.cleanup_all``.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from playwright.async_api import async_playwright

from .config import CONFIG
from .registry import BrowserRegistry

logger = logging.getLogger(__name__)

LAUNCH_ARGS = ["--no-sandbox", "--disable-setuid-sandbox"]

# Selectors whose visibility means the panel kicked us back to its login form
LOGIN_INDICATORS = [
    "text=Session expired",
    "text=Please log in",
    'input[type="password"]',
    'input[placeholder*="password" i]',
]
LOGIN_URL_MARKERS = ["/login", "/signin", "/auth"]


@dataclass(eq=False)
class BrowserSession:
    browser: Any
    context: Any
    page: Any
    persistent: bool = False
    team_id: Optional[int] = None
    game_id: Optional[int] = None
    restored: bool = field(default=False, compare=False)


class BrowserSessions:
    def __init__(self, registry: BrowserRegistry, playwright=None, headless: bool = None,
                 step_timeout_ms: int = None):
        self.registry = registry
        self.headless = CONFIG.headless if headless is None else headless
        self.step_timeout_ms = step_timeout_ms or CONFIG.step_timeout_ms
        self._playwright = playwright
        self._owns_playwright = playwright is None
        self._browsers: Dict[int, Any] = {}
        self._contexts: Dict[int, Any] = {}
        self._pages: Dict[Tuple[int, int], Any] = {}

    async def _chromium(self):
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        return self._playwright.chromium

    async def _launch(self):
        chromium = await self._chromium()
        return await chromium.launch(headless=self.headless, args=LAUNCH_ARGS)

    async def _team_browser(self, team_id: int):
        browser = self._browsers.get(team_id)
        if browser is None or not browser.is_connected():
            logger.info("Launching browser for team %s", team_id)
            browser = await self._launch()
            self._browsers[team_id] = browser
            self._contexts.pop(team_id, None)
        return browser

    async def _team_context(self, team_id: int, browser):
        context = self._contexts.get(team_id)
        if context is None or not self.registry.is_tracked(context):
            context = await browser.new_context()
            self._contexts[team_id] = context
            self.registry.register_context(context)
        return context

    async def acquire(self, team_id: int, game_id: int) -> BrowserSession:
        """Return the persistent session for ``team_id``+``game_id``, creating it if needed."""
        key = (team_id, game_id)
        page = self._pages.get(key)
        if page is not None and not page.is_closed():
            logger.info("Using existing persistent page for team %s, game %s", team_id, game_id)
            return BrowserSession(self._browsers[team_id], self._contexts[team_id], page,
                                  persistent=True, team_id=team_id, game_id=game_id)

        logger.info("Creating persistent page for team %s, game %s", team_id, game_id)
        if page is not None:
            self.registry.unregister_page(page)
        browser = await self._team_browser(team_id)
        context = await self._team_context(team_id, browser)
        page = await context.new_page()
        page.set_default_timeout(self.step_timeout_ms)
        self._pages[key] = page
        self.registry.register_persistent_page(page)
        return BrowserSession(browser, context, page, persistent=True, team_id=team_id, game_id=game_id)

    async def acquire_ephemeral(self, owner: str = None) -> BrowserSession:
        """Launch a throwaway browser; every part is registered under ``owner`` for scoped sweeps."""
        browser = await self._launch()
        self.registry.register_browser(browser, owner)
        context = await browser.new_context()
        self.registry.register_context(context, owner)
        page = await context.new_page()
        page.set_default_timeout(self.step_timeout_ms)
        self.registry.register_page(page, owner)
        return BrowserSession(browser, context, page, persistent=False)

    async def release(self, session: BrowserSession):
        """Close an ephemeral session; persistent sessions stay open for the next job."""
        if session.persistent:
            return
        for kind, resource, unregister in (
            ("page", session.page, self.registry.unregister_page),
            ("context", session.context, self.registry.unregister_context),
            ("browser", session.browser, self.registry.unregister_browser),
        ):
            try:
                await resource.close()
            except Exception as exc:
                logger.warning("Failed to close ephemeral %s: %s", kind, exc)
            unregister(resource)

    async def forget(self, team_id: int, game_id: int):
        """Drop the persistent page for team+game so the next acquire starts fresh."""
        page = self._pages.pop((team_id, game_id), None)
        if page is None:
            return
        self.registry.unregister_page(page)
        try:
            await page.close()
        except Exception as exc:
            logger.warning("Failed to close persistent page for team %s, game %s: %s", team_id, game_id, exc)

    async def restore_state(self, session: BrowserSession, session_data: Optional[Dict[str, Any]]) -> int:
        cookies = (session_data or {}).get("cookies") or []
        if not cookies:
            return 0
        try:
            await session.context.add_cookies(cookies)
        except Exception as exc:
            logger.warning("Could not restore %d cookie(s) for team %s: %s", len(cookies), session.team_id, exc)
            return 0
        session.restored = True
        return len(cookies)

    async def capture_state(self, session: BrowserSession) -> Dict[str, Any]:
        return await session.context.storage_state()

    async def is_session_valid(self, page) -> bool:
        """Heuristic: a visible login form or a login URL means the panel session is gone."""
        try:
            url = (page.url or "").lower()
            if url in ("", "about:blank"):
                return False
            if any(marker in url for marker in LOGIN_URL_MARKERS):
                return False
            for indicator in LOGIN_INDICATORS:
                try:
                    if await page.locator(indicator).first.is_visible():
                        return False
                except Exception:
                    continue
            return True
        except Exception as exc:
            logger.warning("Session validity check failed: %s", exc)
            return False

    def stats(self):
        return {
            "browsers": len(self._browsers),
            "contexts": len(self._contexts),
            "pages": len(self._pages),
            "keys": [f"{team}-{game}" for team, game in self._pages],
            "registry": self.registry.resource_counts(),
        }

    async def close_all(self):
        """Shut down every persistent resource and the Playwright driver."""
        for (team_id, game_id) in list(self._pages):
            await self.forget(team_id, game_id)
        for team_id, context in list(self._contexts.items()):
            self.registry.unregister_context(context)
            try:
                await context.close()
            except Exception as exc:
                logger.warning("Failed to close context for team %s: %s", team_id, exc)
        self._contexts.clear()
        for team_id, browser in list(self._browsers.items()):
            try:
                await browser.close()
            except Exception as exc:
                logger.warning("Failed to close browser for team %s: %s", team_id, exc)
        self._browsers.clear()
        await self.registry.cleanup_all()
        if self._owns_playwright and self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
