import asyncio
from types import SimpleNamespace

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from panelrunner.actions import build_actions
from panelrunner.automation import ActionRunner
from panelrunner.errors import TargetMismatchError
from panelrunner.logger import JobLogger
from panelrunner.models import ActionOutcome, JobRequest

from conftest import FakeContext, FakePage, ScriptedAction


@pytest.fixture
def job(game):
    return JobRequest(
        user_id="u-1", team_id=1, game_name="firekirin", action="recharge",
        game_credential_id=1, game_id=game.id,
    )


@pytest.fixture
def session():
    context = FakeContext()
    return SimpleNamespace(page=FakePage(context=context, url="https://panel.example/home"), context=context)


def _runner(store, *scripts, sessions=None):
    return ActionRunner(store, actions=build_actions(scripts), sessions=sessions)


async def test_success_writes_one_audit_row(store, job, session):
    script = ScriptedAction("recharge", ActionOutcome.ok("Recharge successful", amount=5.0))
    runner = _runner(store, script)

    outcome = await runner.run("recharge", session, {"account_name": "PlayerOne", "amount": 5}, job)

    assert outcome.success
    rows = store.list_action_statuses(1)
    assert len(rows) == 1
    assert rows[0].status == "success"
    assert rows[0].action == "recharge"
    assert rows[0].user_id == "u-1"
    assert rows[0].inputs == {"account_name": "PlayerOne", "amount": 5}
    assert rows[0].execution_time_secs >= 0


async def test_passwords_are_masked_in_audit(store, job, session):
    runner = _runner(store, ScriptedAction("passwordReset", ActionOutcome.ok("Password reset successful")))

    await runner.run("passwordReset", session, {"account_name": "PlayerOne", "new_password": "hunter2"}, job)

    assert store.list_action_statuses(1)[0].inputs["new_password"] == "***"


async def test_unknown_action_is_a_failed_outcome(store, job, session):
    runner = _runner(store)

    outcome = await runner.run("transfer", session, {}, job)

    assert outcome.status == "fail"
    assert outcome.message == "Unknown action 'transfer'"
    assert [r.action for r in store.list_action_statuses(1)] == ["transfer"]


async def test_playwright_timeout_is_normalised(store, job, session):
    runner = _runner(store, ScriptedAction("recharge", PlaywrightTimeoutError("Timeout 5000ms exceeded.\n=== logs ===")))

    outcome = await runner.run("recharge", session, {}, job)

    assert outcome.message == "Timed out during recharge: Timeout 5000ms exceeded."
    assert len(store.list_action_statuses(1)) == 1


async def test_target_mismatch_keeps_account(store, job, session):
    runner = _runner(store, ScriptedAction("recharge", TargetMismatchError("No user exists", "PlayerOne")))

    outcome = await runner.run("recharge", session, {}, job)

    assert outcome.message == "No user exists"
    assert outcome.username == "PlayerOne"


async def test_unexpected_error_is_logged_to_job(store, job, session, tmp_path):
    runner = _runner(store, ScriptedAction("recharge", RuntimeError("boom")))
    job_logger = JobLogger("recharge-test", storage=tmp_path)

    outcome = await runner.run("recharge", session, {}, job, job_logger)

    assert outcome.message == "Script execution error: boom"
    steps = [e["step"] for e in job_logger.entries]
    assert steps == ["action_start", "action_exception", "action_result"]
    assert job_logger.path.exists()


async def test_expired_panel_session_asks_for_login(store, job, sessions):
    script = ScriptedAction("recharge", ActionOutcome.ok("Recharge successful"), requires_login=True)
    runner = _runner(store, script, sessions=sessions)
    blank = SimpleNamespace(page=FakePage(url="about:blank"), context=None)

    outcome = await runner.run("recharge", blank, {}, job)

    assert outcome.needs_login
    assert outcome.message == "Session expired, login required"
    assert script.calls == []


async def test_interrupted_script_is_still_audited(store, job, session):
    async def hang(page, params):
        await asyncio.sleep(3600)

    runner = _runner(store, ScriptedAction("recharge", hang))
    task = asyncio.create_task(runner.run("recharge", session, {}, job))
    await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    rows = store.list_action_statuses(1)
    assert len(rows) == 1
    assert rows[0].message == "recharge was interrupted"
