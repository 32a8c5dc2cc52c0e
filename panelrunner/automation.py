# panelrunner/automation.py
"""
Action execution wrapper.

``ActionRunner.run`` executes one registered script against a browser
session and always comes back with an ``ActionOutcome``: validation problems,
Playwright timeouts and unexpected script errors are all folded into a failed
outcome here, so nothing from the browser layer escapes to the queue. Every
call appends exactly one row to the action audit log.
"""

import asyncio
import logging
import time
import traceback
from typing import Any, Dict, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .actions import build_actions, resolve_action
from .errors import IndeterminateOutcomeError, TargetMismatchError, ValidationError
from .logger import JobLogger
from .models import ActionOutcome, JobRequest

logger = logging.getLogger(__name__)


async def _safe_screenshot(page):
    """Capture screenshot bytes safely."""
    try:
        if page.is_closed():
            return None
        return await page.screenshot()
    except Exception:
        return None


class ActionRunner:
    def __init__(self, store, actions=None, sessions=None):
        self.store = store
        self.actions = actions if actions is not None else build_actions()
        self.sessions = sessions

    def script_for(self, action: str):
        return resolve_action(self.actions, action)

    async def _execute(self, script_id: str, session, params: Dict[str, Any]) -> ActionOutcome:
        script = self.script_for(script_id)
        if script.requires_login and self.sessions is not None:
            if not await self.sessions.is_session_valid(session.page):
                return ActionOutcome.fail("Session expired, login required", needs_login=True)
        return await script.run(session.page, session.context, params)

    async def run(self, script_id: str, session, params: Dict[str, Any], job: JobRequest,
                  job_logger: Optional[JobLogger] = None) -> ActionOutcome:
        params = dict(params or {})
        started = time.monotonic()
        if job_logger:
            job_logger.log("action_start", True, f"Running {script_id}", extra={"params": _loggable(params)})
        try:
            outcome = await self._execute(script_id, session, params)
        except ValidationError as exc:
            outcome = ActionOutcome.fail(str(exc))
        except TargetMismatchError as exc:
            outcome = ActionOutcome.fail(str(exc), username=exc.account)
        except IndeterminateOutcomeError as exc:
            outcome = ActionOutcome.unknown(f"Could not determine result: {exc}")
        except PlaywrightTimeoutError as exc:
            outcome = ActionOutcome.fail(f"Timed out during {script_id}: {_first_line(exc)}")
        except PlaywrightError as exc:
            outcome = ActionOutcome.fail(f"Error during {script_id}: {_first_line(exc)}")
        except asyncio.CancelledError:
            # already being cancelled, so no thread hop
            self._record(job, script_id, params, ActionOutcome.fail(f"{script_id} was interrupted"),
                         time.monotonic() - started)
            raise
        except Exception as exc:
            logger.exception("Script %s crashed", script_id)
            if job_logger:
                job_logger.log("action_exception", False, str(exc), extra={"traceback": traceback.format_exc()})
            outcome = ActionOutcome.fail(f"Script execution error: {exc}")

        elapsed = time.monotonic() - started
        await self.audit(job, script_id, params, outcome, elapsed)
        if job_logger:
            job_logger.log("action_result", outcome.success, outcome.message,
                           extra={"status": outcome.status, "elapsed_secs": round(elapsed, 3)})
        return outcome

    async def audit(self, job: JobRequest, script_id: str, params, outcome: ActionOutcome, elapsed: float = 0.0):
        """Append the audit row from a worker thread so the event loop keeps sampling."""
        await asyncio.to_thread(self._record, job, script_id, params, outcome, elapsed)

    def _record(self, job: JobRequest, script_id: str, params, outcome: ActionOutcome, elapsed: float):
        try:
            self.store.record_action_status(
                team_id=job.team_id,
                game_id=job.game_id or 0,
                user_id=job.user_id,
                action=script_id,
                status=outcome.status,
                inputs=_loggable(params),
                execution_time_secs=round(elapsed, 3),
                message=outcome.message,
            )
        except Exception:
            logger.exception("Failed to record action status for %s (team %s)", script_id, job.team_id)


def _first_line(exc: BaseException) -> str:
    text = str(exc).strip()
    return text.splitlines()[0] if text else type(exc).__name__


def _loggable(params: Dict[str, Any]) -> Dict[str, Any]:
    return {k: ("***" if "password" in k.lower() else v) for k, v in params.items()}
