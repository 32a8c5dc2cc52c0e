# panelrunner/worker.py
"""
Queue consumers.

``WorkerPool`` runs one consumer task per queue partition, so jobs sharing a
team+game panel session run strictly one after another while different
partitions proceed concurrently. ``Worker.process`` takes one job from
``waiting`` to a terminal state and never raises.
"""

import asyncio
import logging
from typing import Dict, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .automation import ActionRunner, _first_line, _safe_screenshot
from .broadcast import ScreenshotBroadcaster, ScreenshotSampler
from .browser import BrowserSessions
from .config import CONFIG
from .errors import CleanupTimeoutError, CredentialNotFoundError
from .jobqueue import JobQueue, JobRecord
from .logger import JobLogger
from .models import ActionOutcome, JobRequest
from .registry import BrowserRegistry
from .store import SessionStore

logger = logging.getLogger(__name__)


class Worker:
    def __init__(self, queue: JobQueue, store: SessionStore, registry: BrowserRegistry,
                 sessions: BrowserSessions, runner: ActionRunner, broadcaster: ScreenshotBroadcaster,
                 job_timeout: float = None, cleanup_timeout: float = None, screenshot_interval: float = None):
        self.queue = queue
        self.store = store
        self.registry = registry
        self.sessions = sessions
        self.runner = runner
        self.broadcaster = broadcaster
        self.job_timeout = job_timeout or CONFIG.job_timeout_secs
        self.cleanup_timeout = cleanup_timeout or CONFIG.cleanup_timeout_secs
        self.screenshot_interval = screenshot_interval or CONFIG.screenshot_interval_secs

    def _status(self, job: JobRequest, executing: bool, message: str):
        self.broadcaster.publish_log(
            game_id=job.game_id or 0,
            game_name=job.game_name,
            team_id=job.team_id,
            is_executing=executing,
            current_log=message,
        )

    async def process(self, record: JobRecord):
        job_id = record.job_id
        job = record.request
        if self.queue.is_cancelled(job_id):
            logger.info("Job %s was cancelled before start", job_id)
            return

        self.queue.mark_active(job_id)
        job_logger = JobLogger(job_id)
        record.logs = job_logger.entries
        job_logger.log("job_start", True, f"Starting {job.action} for {job.game_name}")
        self._status(job, True, f"Starting {job.action}...")

        try:
            outcome = await asyncio.wait_for(self._execute(record, job_logger), self.job_timeout)
        except asyncio.TimeoutError:
            message = f"Job execution timed out after {self.job_timeout:g}s"
            job_logger.log("timeout", False, message)
            await self._recover_after_timeout(record, job_logger)
            self.queue.mark_failed(job_id, message)
            self._status(job, False, message)
            return
        except CredentialNotFoundError as exc:
            job_logger.log("credential", False, str(exc))
            self.queue.mark_failed(job_id, str(exc))
            self._status(job, False, str(exc))
            return
        except Exception as exc:
            logger.exception("Job %s crashed", job_id)
            message = f"Unexpected error: {exc}"
            job_logger.log("worker_exception", False, message)
            self.queue.mark_failed(job_id, message)
            self._status(job, False, message)
            return

        job_logger.log("job_done", outcome.success, outcome.message, extra={"status": outcome.status})
        self.queue.mark_done(job_id, outcome)
        self._status(job, False, outcome.message)

    async def _recover_after_timeout(self, record: JobRecord, job_logger: JobLogger):
        job = record.request
        try:
            # only what this job opened
            await self.registry.cleanup_all_with_timeout(self.cleanup_timeout, owner=record.job_id)
        except CleanupTimeoutError as exc:
            job_logger.log("cleanup_timeout", False, str(exc))
        if not job.ephemeral and job.game_id is not None:
            # the persistent page may be stuck mid-script
            await self.sessions.forget(job.team_id, job.game_id)

    async def _execute(self, record: JobRecord, job_logger: JobLogger) -> ActionOutcome:
        job = record.request
        credential = await asyncio.to_thread(self.store.get_credential, job.game_credential_id)
        if credential.team_id != job.team_id:
            raise CredentialNotFoundError(job.game_credential_id)
        game = credential.game
        job = job.model_copy(update={"game_id": game.id, "game_name": job.game_name or game.name})
        record.request = job

        if job.ephemeral:
            session = await self.sessions.acquire_ephemeral(owner=record.job_id)
        else:
            session = await self.sessions.acquire(job.team_id, game.id)
        self.queue.update_progress(record.job_id, 20)
        try:
            return await self._run_in_session(record, session, credential, game, job_logger)
        finally:
            await self.sessions.release(session)

    async def _run_in_session(self, record: JobRecord, session, credential, game, job_logger: JobLogger) -> ActionOutcome:
        job = record.request
        saved = await asyncio.to_thread(self.store.check_session, credential.id, user_id=job.user_id)
        if saved.has_session and not session.restored:
            restored = await self.sessions.restore_state(session, saved.session_data)
            job_logger.log("restore_session", True, f"Restored {restored} cookie(s)")
            landing = game.dashboard_url or game.login_url
            if landing and session.page.url in ("", "about:blank"):
                try:
                    await session.page.goto(landing)
                except PlaywrightTimeoutError as exc:
                    return await self._landing_failed(job, f"Timed out opening panel: {_first_line(exc)}", job_logger)
                except PlaywrightError as exc:
                    return await self._landing_failed(job, f"Error opening panel: {_first_line(exc)}", job_logger)

        sampler = ScreenshotSampler(
            session.page, self.broadcaster,
            game_id=game.id, game_name=job.game_name, action=job.action,
            team_id=job.team_id, session_id=job.session_id, interval=self.screenshot_interval,
        )
        async with sampler:
            self._status(job, True, f"Processing {job.action}...")
            if job.action == "login":
                outcome = await self._login(job, session, credential, game, job_logger, job.params)
            else:
                outcome = await self.runner.run(job.action, session, job.params, job, job_logger)
                if outcome.needs_login:
                    outcome = await self._login_and_retry(job, session, credential, game, job_logger)
            self.queue.update_progress(record.job_id, 90)

        shot = await _safe_screenshot(session.page)
        if shot:
            job_logger.save_screenshot(shot)
        return outcome

    async def _landing_failed(self, job, message: str, job_logger: JobLogger) -> ActionOutcome:
        outcome = ActionOutcome.fail(message)
        job_logger.log("restore_session", False, message)
        await self.runner.audit(job, job.action, job.params, outcome)
        return outcome

    async def _login_and_retry(self, job, session, credential, game, job_logger) -> ActionOutcome:
        self._status(job, True, "Session expired, logging in...")
        job_logger.log("session_expired", False, f"Session expired for {job.game_name}, logging in")
        login = await self._login(job, session, credential, game, job_logger)
        if not login.success:
            return ActionOutcome.fail(f"Automatic login failed: {login.message}", needs_login=True)
        self._status(job, True, f"Login successful, retrying {job.action}...")
        return await self.runner.run(job.action, session, job.params, job, job_logger)

    async def _login(self, job, session, credential, game, job_logger, overrides: Optional[Dict] = None) -> ActionOutcome:
        overrides = overrides or {}
        username = overrides.get("username") or credential.username
        password = overrides.get("password") or credential.password
        if not username or not password:
            return ActionOutcome.fail(
                f"No saved credentials found for {job.game_name}. Please login manually first."
            )
        params = {
            "username": username,
            "password": password,
            "login_url": game.login_url or CONFIG.game_urls.get(game.name),
        }
        outcome = await self.runner.run("login", session, params, job, job_logger)
        if outcome.success:
            state = await self.sessions.capture_state(session)
            await asyncio.to_thread(self.store.get_or_create_session, job.user_id, credential.id, state)
            if overrides.get("username") and overrides.get("password"):
                await asyncio.to_thread(self.store.save_credential, job.team_id, game.id, username, password)
            job_logger.log("session_saved", True, f"Saved session for {job.game_name}")
        return outcome


class WorkerPool:
    def __init__(self, queue: JobQueue, worker: Worker):
        self.queue = queue
        self.worker = worker
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self):
        for partition in self.queue.partitions():
            self._spawn(partition)
        self.queue.add_partition_listener(self._spawn)

    def _spawn(self, partition: str):
        if partition in self._tasks:
            return
        logger.info("Starting consumer for %s", partition)
        self._tasks[partition] = asyncio.create_task(self._consume(partition))

    async def _consume(self, partition: str):
        while True:
            record = await self.queue.next_job(partition)
            try:
                await self.worker.process(record)
            except Exception:
                logger.exception("Consumer for %s failed on job %s", partition, record.job_id)

    async def stop(self):
        self.queue.remove_partition_listener(self._spawn)
        tasks, self._tasks = list(self._tasks.values()), {}
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def stats(self):
        return {"running": self.running, "partitions": sorted(self._tasks), "concurrency_per_partition": 1}
