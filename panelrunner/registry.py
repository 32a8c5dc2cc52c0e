# panelrunner/registry.py
"""
Bookkeeping for every live Playwright browser, context and page.

One ``BrowserRegistry`` is built per process and handed to the session
manager and the worker. Pages registered as persistent survive ``cleanup_all``
together with the context that hosts them; everything else is swept.
Browsers that host persistent contexts must not be registered here, because
the sweep closes every tracked browser.

Resources may carry an owner tag (the job id that created them). A sweep
with ``owner`` set only touches that job's resources, so one job's timeout
never reaches into a job running in another partition.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from .errors import CleanupTimeoutError, ResourceLeakError

logger = logging.getLogger(__name__)


class BrowserRegistry:
    def __init__(self):
        # insertion-ordered, resource -> owner tag
        self._browsers: Dict[object, Optional[str]] = {}
        self._contexts: Dict[object, Optional[str]] = {}
        self._pages: Dict[object, Optional[str]] = {}
        self._persistent_pages: Dict[object, None] = {}
        self._sweep_lock = asyncio.Lock()

    def register_browser(self, browser, owner: str = None):
        self._browsers[browser] = owner

    def register_context(self, context, owner: str = None):
        self._contexts[context] = owner

    def register_page(self, page, owner: str = None):
        self._pages[page] = owner

    def unregister_browser(self, browser):
        self._browsers.pop(browser, None)

    def unregister_context(self, context):
        self._contexts.pop(context, None)

    def unregister_page(self, page):
        self._pages.pop(page, None)
        self._persistent_pages.pop(page, None)

    def register_persistent_page(self, page):
        self._pages[page] = None
        self._persistent_pages[page] = None

    def unregister_persistent_page(self, page):
        """Drop protection; the page stays tracked and is swept next time."""
        self._persistent_pages.pop(page, None)

    def is_persistent(self, page) -> bool:
        return page in self._persistent_pages

    def is_tracked(self, resource) -> bool:
        return resource in self._pages or resource in self._contexts or resource in self._browsers

    def resource_counts(self):
        return {
            "browsers": len(self._browsers),
            "contexts": len(self._contexts),
            "pages": len(self._pages),
            "persistent_pages": len(self._persistent_pages),
        }

    def _protected_contexts(self):
        protected = []
        for page in self._persistent_pages:
            context = getattr(page, "context", None)
            if context is not None and context not in protected:
                protected.append(context)
        return protected

    async def _close(self, kind: str, resource, leaks: List[ResourceLeakError]):
        try:
            if kind == "page" and resource.is_closed():
                return
            if kind == "browser" and not resource.is_connected():
                return
            await resource.close()
            logger.debug("BrowserRegistry: closed %s", kind)
        except Exception as exc:
            leak = ResourceLeakError(kind, exc)
            logger.error("BrowserRegistry: %s", leak)
            leaks.append(leak)

    @staticmethod
    def _owned(resources: Dict[object, Optional[str]], owner: Optional[str]):
        return [r for r, tag in resources.items() if owner is None or tag == owner]

    async def cleanup_all(self, owner: str = None) -> List[ResourceLeakError]:
        """
        Close every tracked page, context and browser that is not protected.

        With ``owner`` set, only resources registered under that tag are swept.

        A close that raises is logged and recorded; the sweep always carries on
        with the remaining resources. Returns the recorded leaks.
        """
        leaks: List[ResourceLeakError] = []
        async with self._sweep_lock:
            logger.info("BrowserRegistry: starting cleanup (owner=%s) of %s", owner, self.resource_counts())

            for page in self._owned(self._pages, owner):
                if page in self._persistent_pages:
                    continue
                await self._close("page", page, leaks)
                self._pages.pop(page, None)

            protected = self._protected_contexts()
            for context in self._owned(self._contexts, owner):
                if context in protected:
                    continue
                await self._close("context", context, leaks)
                self._contexts.pop(context, None)

            for browser in self._owned(self._browsers, owner):
                await self._close("browser", browser, leaks)
                self._browsers.pop(browser, None)

        logger.info("BrowserRegistry: cleanup finished with %d leak(s)", len(leaks))
        return leaks

    async def cleanup_all_with_timeout(self, timeout: float = 10.0, owner: str = None) -> List[ResourceLeakError]:
        """
        Run ``cleanup_all`` bounded by ``timeout`` seconds.

        On expiry one more sweep is attempted, bounded by the same budget, and
        ``CleanupTimeoutError`` is raised afterwards.
        """
        try:
            return await asyncio.wait_for(self.cleanup_all(owner), timeout)
        except asyncio.TimeoutError:
            logger.error("BrowserRegistry: cleanup timed out after %.3fs, forcing one more sweep", timeout)
            try:
                await asyncio.wait_for(self.cleanup_all(owner), timeout)
            except asyncio.TimeoutError:
                logger.error("BrowserRegistry: forced sweep also timed out")
            raise CleanupTimeoutError(f"Browser cleanup timed out after {timeout}s") from None
