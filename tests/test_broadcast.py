import asyncio

from playwright.async_api import Error as PlaywrightError

from panelrunner.broadcast import ScreenshotBroadcaster, ScreenshotSampler

from conftest import CLOSED_MESSAGE, FakePage

TAGS = dict(game_id=3, game_name="firekirin", action="recharge", team_id=1, session_id="s-1")


async def test_sampler_publishes_frames(broadcaster):
    page = FakePage(image=b"frame-bytes")
    sub = broadcaster.subscribe(team_ids=[1])

    async with ScreenshotSampler(page, broadcaster, interval=0.01, **TAGS) as sampler:
        await asyncio.sleep(0.05)
        assert sampler.running

    assert not sampler.running
    assert sampler.frames >= 1
    frame = sub.queue.get_nowait()
    assert frame.image == b"frame-bytes"
    assert frame.game_name == "firekirin"
    assert frame.session_id == "s-1"


async def test_sampler_stops_quietly_on_closed_page(broadcaster):
    page = FakePage()
    page._closed = True
    sampler = ScreenshotSampler(page, broadcaster, interval=0.01, **TAGS)

    sampler.start()
    await asyncio.sleep(0.03)

    assert not sampler.running
    assert sampler.frames == 0
    await sampler.stop()


async def test_sampler_stops_when_page_closes_mid_capture(broadcaster):
    page = FakePage(screenshot_errors=[PlaywrightError(CLOSED_MESSAGE)])
    sampler = ScreenshotSampler(page, broadcaster, interval=0.01, **TAGS)

    sampler.start()
    await asyncio.sleep(0.03)

    assert not sampler.running
    assert sampler.frames == 0


async def test_sampler_survives_transient_errors(broadcaster):
    page = FakePage(screenshot_errors=[PlaywrightError("Protocol error"), RuntimeError("decode")])

    async with ScreenshotSampler(page, broadcaster, interval=0.005, **TAGS) as sampler:
        await asyncio.sleep(0.06)

    assert sampler.frames >= 1


async def test_filters_by_team_and_game():
    broadcaster = ScreenshotBroadcaster()
    team_two = broadcaster.subscribe(team_ids=[2])
    game_three = broadcaster.subscribe(game_ids=[3])
    everyone = broadcaster.subscribe()

    delivered = broadcaster.publish_screenshot(b"x", **TAGS)

    assert delivered == 2
    assert team_two.queue.empty()
    assert game_three.queue.qsize() == 1
    assert everyone.queue.qsize() == 1


async def test_slow_subscriber_loses_oldest_frames():
    broadcaster = ScreenshotBroadcaster(queue_size=2)
    sub = broadcaster.subscribe()

    for n in range(3):
        broadcaster.publish_log(game_id=3, game_name="firekirin", team_id=1, current_log=f"step {n}")

    assert sub.dropped == 1
    assert (await sub.get()).current_log == "step 1"
    assert (await sub.get()).all_logs == ["step 2"]


async def test_subscription_context_unsubscribes():
    broadcaster = ScreenshotBroadcaster()
    with broadcaster.subscribe():
        assert broadcaster.subscriber_count == 1
    assert broadcaster.subscriber_count == 0
    assert broadcaster.publish_log(game_id=1, game_name="g") == 0
