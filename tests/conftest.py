"""Shared fixtures and Playwright fakes."""

import asyncio
import os
import tempfile

# Job logs and screenshots land here; must be set before panelrunner.config loads.
os.environ.setdefault("PANEL_STORAGE_DIR", tempfile.mkdtemp(prefix="panelrunner-tests-"))

import pytest
from playwright.async_api import Error as PlaywrightError

from panelrunner.actions.base import ActionScript
from panelrunner.broadcast import ScreenshotBroadcaster
from panelrunner.browser import BrowserSessions
from panelrunner.registry import BrowserRegistry
from panelrunner.store import SessionStore

CLOSED_MESSAGE = "Target page, context or browser has been closed"


class FakeLocator:
    def __init__(self, visible: bool = False):
        self.visible = visible

    @property
    def first(self):
        return self

    async def is_visible(self):
        return self.visible


class FakePage:
    def __init__(self, context=None, url="about:blank", image=b"png", hang=False, close_error=None,
                 screenshot_errors=None, close_delay=0, goto_error=None):
        self.context = context
        self.url = url
        self.image = image
        self.hang = hang
        self.close_error = close_error
        self.screenshot_errors = list(screenshot_errors or [])
        self.close_delay = close_delay
        self.goto_error = goto_error
        self.visited = []
        self.close_calls = 0
        self.default_timeout = None
        self._closed = False

    def is_closed(self):
        return self._closed

    async def close(self):
        self.close_calls += 1
        if self.hang:
            await asyncio.sleep(3600)
        if self.close_delay:
            await asyncio.sleep(self.close_delay)
        if self.close_error:
            raise self.close_error
        self._closed = True

    async def screenshot(self, **kwargs):
        if self._closed:
            raise PlaywrightError(CLOSED_MESSAGE)
        if self.screenshot_errors:
            raise self.screenshot_errors.pop(0)
        return self.image

    def set_default_timeout(self, timeout):
        self.default_timeout = timeout

    async def goto(self, url, **kwargs):
        if self.goto_error:
            raise self.goto_error
        self.url = url
        self.visited.append(url)

    def locator(self, selector):
        return FakeLocator(visible=False)


class FakeContext:
    def __init__(self, browser=None, close_error=None):
        self.browser = browser
        self.close_error = close_error
        self.pages = []
        self.cookies = []
        self.closed = False

    async def new_page(self):
        page = FakePage(context=self)
        self.pages.append(page)
        return page

    async def add_cookies(self, cookies):
        self.cookies.extend(cookies)

    async def storage_state(self):
        return {"cookies": list(self.cookies), "origins": []}

    async def close(self):
        if self.close_error:
            raise self.close_error
        self.closed = True
        for page in self.pages:
            page._closed = True


class FakeBrowser:
    def __init__(self, close_error=None):
        self.close_error = close_error
        self.contexts = []
        self.connected = True

    def is_connected(self):
        return self.connected

    async def new_context(self, **kwargs):
        context = FakeContext(browser=self)
        self.contexts.append(context)
        return context

    async def close(self):
        if self.close_error:
            raise self.close_error
        self.connected = False


class FakeChromium:
    def __init__(self):
        self.launched = []

    async def launch(self, **kwargs):
        browser = FakeBrowser()
        self.launched.append((browser, kwargs))
        return browser


class FakePlaywright:
    def __init__(self):
        self.chromium = FakeChromium()
        self.stopped = False

    async def stop(self):
        self.stopped = True


class ScriptedAction(ActionScript):
    """Returns (or raises) the queued results in order; the last one repeats."""

    def __init__(self, name, *results, requires_login=False):
        super().__init__(step_timeout_ms=100, result_timeout_ms=100)
        self.name = name
        self.requires_login = requires_login
        self.results = list(results)
        self.calls = []

    async def run(self, page, context, params):
        self.calls.append(dict(params))
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, BaseException):
            raise result
        if callable(result):
            return await result(page, params)
        return result


@pytest.fixture
def registry():
    return BrowserRegistry()


@pytest.fixture
def store(tmp_path):
    store = SessionStore(f"sqlite:///{tmp_path / 'panelrunner-test.db'}")
    store.create_all()
    return store


@pytest.fixture
def game(store):
    return store.save_game(
        "firekirin",
        login_url="https://panel.example/login",
        dashboard_url="https://panel.example/home",
    )


@pytest.fixture
def credential(store, game):
    return store.save_credential(team_id=1, game_id=game.id, username="agent01", password="s3cret")


@pytest.fixture
def fake_playwright():
    return FakePlaywright()


@pytest.fixture
def sessions(registry, fake_playwright):
    return BrowserSessions(registry, playwright=fake_playwright, headless=True, step_timeout_ms=100)


@pytest.fixture
def broadcaster():
    return ScreenshotBroadcaster(queue_size=8)
