# panelrunner/actions/base.py
"""
Action script variants.

An ``ActionScript`` drives one page through a fixed sequence of UI steps and
returns an ``ActionOutcome``. ``AccountActionScript`` carries the shared policy
of every script that touches a player account: search the account, verify the
matched row, submit the mutating form, then read the confirmation signal.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from ..config import CONFIG
from ..errors import IndeterminateOutcomeError, TargetMismatchError, ValidationError
from ..models import ActionOutcome
from ..utils import match_account, normalize_cell

logger = logging.getLogger(__name__)

Marker = Union[str, "re.Pattern[str]"]

NO_USER_MESSAGE = "No user exists"
ROW_MISMATCH_MESSAGE = "Account in row does not match"
ACCOUNT_EXISTS_MESSAGE = "Account already exists"


def pick(params: Dict[str, Any], *names, default=None):
    """First non-empty value among ``names``; API params arrive in snake_case or camelCase."""
    for name in names:
        value = params.get(name)
        if value is not None and value != "":
            return value
    return default


async def first_visible(scope, selectors: Sequence[str]):
    for selector in selectors:
        locator = scope.locator(selector).first
        try:
            if await locator.is_visible():
                return locator
        except Exception:
            continue
    return None


class ActionScript:
    """One named automation. Subclasses implement ``run``."""

    name: str = ""
    # False for scripts that establish the panel session themselves
    requires_login: bool = True

    def __init__(self, step_timeout_ms: int = None, result_timeout_ms: int = None):
        self.step_timeout_ms = step_timeout_ms or CONFIG.step_timeout_ms
        self.result_timeout_ms = result_timeout_ms or CONFIG.result_timeout_ms

    async def run(self, page, context, params: Dict[str, Any]) -> ActionOutcome:
        raise NotImplementedError

    def __repr__(self):
        return f"<{type(self).__name__} {self.name!r}>"


class AccountActionScript(ActionScript):
    """
    Search -> verify -> submit -> confirm, for scripts targeting one account.

    ``must_exist`` scripts abort with ``TargetMismatchError`` when the search
    does not return the requested account; ``must_exist = False`` (account
    creation) aborts when it does. ``submit`` is never reached after an abort.
    """

    account_params: Tuple[str, ...] = ("account_name", "target_username", "username", "accountName")
    account_column = 2
    must_exist = True

    # checked in this order after submit
    success_markers: Sequence[Tuple[Marker, str]] = ()
    error_markers: Sequence[Tuple[Marker, str]] = ()
    banner_selector: Optional[str] = None
    indeterminate_message = "Could not determine result"

    def account(self, params: Dict[str, Any]) -> str:
        account = pick(params, *self.account_params)
        if not account or not str(account).strip():
            raise ValidationError(f"Target username is required for {self.name}")
        return str(account).strip()

    def prepare(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Validate and normalise script-specific inputs before touching the page."""
        return {}

    def outcome_fields(self, account: str, inputs: Dict[str, Any]) -> Dict[str, Any]:
        return {"username": account}

    # -- page steps, overridden per panel -----------------------------------

    async def open(self, page):
        """Navigate to the screen holding the account list and return its frame."""
        raise NotImplementedError

    async def search_rows(self, frame, account: str) -> List[List[str]]:
        """Search ``account`` and return the result rows as lists of cell text."""
        raise NotImplementedError

    async def submit(self, page, frame, account: str, inputs: Dict[str, Any]):
        raise NotImplementedError

    async def read_marker(self, frame, marker: Marker) -> Optional[str]:
        """Return the text of ``marker`` if it becomes visible within the result timeout."""
        locator = frame.locator("div").filter(has_text=marker).nth(1)
        try:
            await locator.wait_for(state="visible", timeout=self.result_timeout_ms)
        except Exception:
            return None
        text = (await locator.text_content()) or ""
        try:
            await locator.click(timeout=self.result_timeout_ms)
        except Exception:
            pass
        return normalize_cell(text)

    async def read_banner(self, frame) -> Optional[str]:
        if not self.banner_selector:
            return None
        locator = frame.locator(self.banner_selector).first
        try:
            await locator.wait_for(state="visible", timeout=self.result_timeout_ms)
        except Exception:
            return None
        text = normalize_cell(await locator.text_content())
        return text or None

    # -- policy -------------------------------------------------------------

    def verify(self, rows: List[List[str]], account: str):
        matched = match_account(rows, account, self.account_column)
        if self.must_exist:
            if not rows:
                raise TargetMismatchError(NO_USER_MESSAGE, account)
            if matched is None:
                raise TargetMismatchError(ROW_MISMATCH_MESSAGE, account)
        elif matched is not None:
            raise TargetMismatchError(ACCOUNT_EXISTS_MESSAGE, account)
        return matched

    async def resolve(self, frame, account: str, inputs: Dict[str, Any]) -> ActionOutcome:
        fields = self.outcome_fields(account, inputs)
        for marker, message in self.success_markers:
            if await self.read_marker(frame, marker) is not None:
                return ActionOutcome.ok(message.format(account=account, **inputs), **fields)
        for marker, message in self.error_markers:
            text = await self.read_marker(frame, marker)
            if text is not None:
                return ActionOutcome.fail(message.format(account=account, text=text, **inputs), **fields)
        banner = await self.read_banner(frame)
        if banner:
            return ActionOutcome.fail(f"Panel says: {banner}", **fields)
        raise IndeterminateOutcomeError(self.indeterminate_message)

    async def run(self, page, context, params: Dict[str, Any]) -> ActionOutcome:
        account = self.account(params)
        inputs = self.prepare(params)
        fields = self.outcome_fields(account, inputs)
        frame = await self.open(page)
        rows = await self.search_rows(frame, account)
        try:
            self.verify(rows, account)
        except TargetMismatchError as exc:
            logger.info("%s aborted before submit for %r: %s", self.name, account, exc)
            return ActionOutcome.fail(str(exc), **fields)
        await self.submit(page, frame, account, inputs)
        try:
            return await self.resolve(frame, account, inputs)
        except IndeterminateOutcomeError as exc:
            return ActionOutcome.unknown(f"Could not determine result: {exc}", **fields)
