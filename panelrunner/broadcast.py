# panelrunner/broadcast.py
"""
Live screenshot fan-out.

``ScreenshotSampler`` captures the job page on a fixed interval while the
action script runs, and hands every frame to a ``ScreenshotBroadcaster``.
Subscribers (the WebSocket endpoint in ``main.py``) each get their own bounded
queue, so a slow client only ever loses its own oldest frames.
"""

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional, Set, Union

from playwright.async_api import Error as PlaywrightError

from .models import LogUpdate, ScreenshotFrame

logger = logging.getLogger(__name__)

Event = Union[ScreenshotFrame, LogUpdate]

CLOSED_MARKERS = (
    "has been closed",
    "target closed",
    "cannot register cleanup after operation has finished",
)


def _is_closed_error(exc: BaseException) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in CLOSED_MARKERS)


class Subscription:
    def __init__(self, broadcaster, team_ids=None, game_ids=None, maxsize: int = 16):
        self._broadcaster = broadcaster
        self.team_ids = set(team_ids) if team_ids else None
        self.game_ids = set(game_ids) if game_ids else None
        self.queue: "asyncio.Queue[Event]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def wants(self, event: Event) -> bool:
        if self.team_ids is not None and event.team_id not in self.team_ids:
            return False
        if self.game_ids is not None and event.game_id not in self.game_ids:
            return False
        return True

    def offer(self, event: Event):
        if self.queue.full():
            with contextlib.suppress(asyncio.QueueEmpty):
                self.queue.get_nowait()
                self.dropped += 1
        self.queue.put_nowait(event)

    async def get(self) -> Event:
        return await self.queue.get()

    def close(self):
        self._broadcaster.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Event:
        return await self.get()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class ScreenshotBroadcaster:
    """Publish-only hub; publishing never waits on subscribers."""

    def __init__(self, queue_size: int = 16):
        self._subscribers: Set[Subscription] = set()
        self._queue_size = queue_size

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, team_ids: Optional[Iterable[int]] = None, game_ids: Optional[Iterable[int]] = None) -> Subscription:
        sub = Subscription(self, team_ids, game_ids, self._queue_size)
        self._subscribers.add(sub)
        return sub

    def unsubscribe(self, sub: Subscription):
        self._subscribers.discard(sub)

    def publish(self, event: Event) -> int:
        delivered = 0
        for sub in list(self._subscribers):
            if sub.wants(event):
                sub.offer(event)
                delivered += 1
        return delivered

    def publish_screenshot(self, image: bytes, *, game_id: int, game_name: str, action: str,
                           team_id: int, session_id: str) -> int:
        frame = ScreenshotFrame(
            image=image,
            game_id=game_id,
            game_name=game_name,
            action=action,
            team_id=team_id,
            session_id=session_id,
            timestamp=datetime.now(timezone.utc),
        )
        return self.publish(frame)

    def publish_log(self, *, game_id: int, game_name: str, team_id: int = None,
                    is_executing: bool = False, current_log: str = None, all_logs=None) -> int:
        update = LogUpdate(
            game_id=game_id,
            game_name=game_name,
            team_id=team_id,
            is_executing=is_executing,
            current_log=current_log,
            all_logs=list(all_logs or ([current_log] if current_log else [])),
            timestamp=datetime.now(timezone.utc),
        )
        return self.publish(update)


class ScreenshotSampler:
    """
    Background capture loop scoped to one job.

    Use as ``async with ScreenshotSampler(...)``; the loop is cancelled on exit
    whatever happened inside the block. A page that closes under the sampler
    ends the loop quietly.
    """

    def __init__(self, page, broadcaster: ScreenshotBroadcaster, *, game_id: int, game_name: str,
                 action: str, team_id: int, session_id: str = "unknown", interval: float = 0.5):
        self.page = page
        self.broadcaster = broadcaster
        self.tags = dict(game_id=game_id, game_name=game_name, action=action,
                         team_id=team_id, session_id=session_id)
        self.interval = interval
        self.frames = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self):
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def __aenter__(self):
        self.start()
        return self

    async def __aexit__(self, *exc):
        await self.stop()

    async def _run(self):
        label = f"{self.tags['game_name']} - {self.tags['action']}"
        while True:
            if self.page.is_closed():
                logger.debug("Page closed for %s, stopping screenshot capture", label)
                return
            try:
                image = await self.page.screenshot()
            except PlaywrightError as exc:
                if self.page.is_closed() or _is_closed_error(exc):
                    logger.debug("Page closed for %s, stopping screenshot capture", label)
                    return
                logger.debug("Screenshot failed for %s: %s", label, exc)
            except Exception as exc:
                logger.debug("Screenshot failed for %s: %s", label, exc)
            else:
                self.frames += 1
                self.broadcaster.publish_screenshot(image, **self.tags)
            await asyncio.sleep(self.interval)
