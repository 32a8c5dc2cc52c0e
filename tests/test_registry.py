import asyncio

import pytest

from panelrunner.errors import CleanupTimeoutError, ResourceLeakError

from conftest import FakeBrowser, FakeContext, FakePage


async def test_cleanup_keeps_persistent_page_and_its_context(registry):
    kept_context = FakeContext()
    kept_page = FakePage(context=kept_context)
    swept_context = FakeContext()
    swept_page = FakePage(context=swept_context)
    browser = FakeBrowser()

    registry.register_browser(browser)
    registry.register_context(kept_context)
    registry.register_context(swept_context)
    registry.register_persistent_page(kept_page)
    registry.register_page(swept_page)

    leaks = await registry.cleanup_all()

    assert leaks == []
    assert not kept_page.is_closed()
    assert not kept_context.closed
    assert swept_page.is_closed()
    assert swept_context.closed
    assert not browser.is_connected()
    assert registry.resource_counts() == {"browsers": 0, "contexts": 1, "pages": 1, "persistent_pages": 1}


async def test_cleanup_continues_after_a_close_fails(registry):
    bad_page = FakePage(close_error=RuntimeError("renderer crashed"))
    good_page = FakePage()
    bad_browser = FakeBrowser(close_error=RuntimeError("pipe closed"))

    registry.register_page(bad_page)
    registry.register_page(good_page)
    registry.register_browser(bad_browser)

    leaks = await registry.cleanup_all()

    assert [leak.kind for leak in leaks] == ["page", "browser"]
    assert all(isinstance(leak, ResourceLeakError) for leak in leaks)
    assert good_page.is_closed()
    assert registry.resource_counts()["pages"] == 0
    assert registry.resource_counts()["browsers"] == 0


async def test_already_closed_resources_are_not_closed_again(registry):
    page = FakePage()
    page._closed = True
    browser = FakeBrowser()
    browser.connected = False
    registry.register_page(page)
    registry.register_browser(browser)

    assert await registry.cleanup_all() == []
    assert page.close_calls == 0


async def test_unprotected_page_is_swept_next_time(registry):
    page = FakePage(context=FakeContext())
    registry.register_persistent_page(page)
    registry.unregister_persistent_page(page)

    assert registry.is_tracked(page)
    assert not registry.is_persistent(page)

    await registry.cleanup_all()
    assert page.is_closed()
    assert not registry.is_tracked(page)


async def test_cleanup_with_timeout_returns_when_fast(registry):
    registry.register_page(FakePage())
    assert await registry.cleanup_all_with_timeout(timeout=1.0) == []


async def test_cleanup_with_timeout_raises_when_close_hangs(registry):
    page = FakePage(hang=True)
    registry.register_page(page)

    with pytest.raises(CleanupTimeoutError) as excinfo:
        await registry.cleanup_all_with_timeout(timeout=0.05)

    assert isinstance(excinfo.value, TimeoutError)
    # initial sweep plus the forced one
    assert page.close_calls == 2


async def test_sweeps_do_not_overlap(registry):
    pages = [FakePage() for _ in range(3)]
    for page in pages:
        registry.register_page(page)

    results = await asyncio.gather(registry.cleanup_all(), registry.cleanup_all())

    assert results == [[], []]
    assert all(page.close_calls == 1 for page in pages)


async def test_slow_cleanup_within_budget_succeeds(registry):
    page = FakePage(close_delay=0.05)
    registry.register_page(page)

    assert await registry.cleanup_all_with_timeout(timeout=1.0) == []
    assert page.is_closed()
    assert page.close_calls == 1
    assert not registry.is_tracked(page)


async def test_owner_sweep_only_touches_that_owner(registry):
    mine = FakePage(context=FakeContext())
    my_browser = FakeBrowser()
    theirs = FakePage(context=FakeContext())
    their_browser = FakeBrowser()
    shared_context = FakeContext()

    registry.register_browser(my_browser, owner="job-a")
    registry.register_context(mine.context, owner="job-a")
    registry.register_page(mine, owner="job-a")
    registry.register_browser(their_browser, owner="job-b")
    registry.register_context(theirs.context, owner="job-b")
    registry.register_page(theirs, owner="job-b")
    registry.register_context(shared_context)

    assert await registry.cleanup_all_with_timeout(timeout=1.0, owner="job-a") == []

    assert mine.is_closed()
    assert mine.context.closed
    assert not my_browser.is_connected()
    assert not theirs.is_closed()
    assert not theirs.context.closed
    assert their_browser.is_connected()
    assert not shared_context.closed
    assert registry.resource_counts() == {"browsers": 1, "contexts": 2, "pages": 1, "persistent_pages": 0}

    # an unscoped sweep still takes everything
    await registry.cleanup_all()
    assert theirs.is_closed()
    assert shared_context.closed
