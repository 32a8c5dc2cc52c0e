# panelrunner/actions/login.py
"""
Panel login.

Fills the panel login form with the stored credential and waits for the
password field to go away. Captcha or anti-bot pages are reported back as a
failure needing a human, never guessed at.
"""

import logging
from typing import Any, Dict

from ..errors import ValidationError
from ..models import ActionOutcome
from .base import ActionScript, first_visible, pick

logger = logging.getLogger(__name__)

PROTECTION_HOSTS = ["hsprotect", "perimeterx", "arkoselabs", "captcha-delivery"]
CAPTCHA_KEYWORDS = ["captcha", "verification code", "prove you're not", "press and hold"]

USERNAME_SELECTORS = [
    'input[placeholder*="username" i]',
    'input[placeholder*="account" i]',
    'input[name="username"]',
    'input[name="account"]',
    'input[id="username"]',
    'input[id="account"]',
]
PASSWORD_SELECTORS = [
    'input[placeholder*="password" i]',
    'input[name="password"]',
    'input[id="password"]',
    'input[type="password"]',
]
SUBMIT_SELECTORS = [
    'button:has-text("Sign in")',
    'button:has-text("Login")',
    'button:has-text("Log in")',
    'input[type="submit"]',
    'button[type="submit"]',
]
CAPTCHA_SELECTORS = [
    'input[name*="captcha" i]',
    'input[id*="captcha" i]',
    'input[placeholder*="captcha" i]',
    'input[name="txtVerifyCode"]',
    'input[placeholder*="verification" i]',
    'img[src*="captcha" i]',
]

PASSWORD_GONE_JS = """() => {
  const inputs = document.querySelectorAll('input[type="password"]');
  return inputs.length === 0 || Array.from(inputs).every(i => !i.offsetParent);
}"""


def _contains_captcha_text(text: str) -> bool:
    """Check if HTML/text contains common captcha phrases."""
    if not text:
        return False
    t = text.lower()
    return any(k in t for k in CAPTCHA_KEYWORDS)


def _is_protection_page(page) -> bool:
    """Check if current page/frame URLs belong to known bot-protection hosts."""
    try:
        urls = [page.url.lower()] + [fr.url.lower() for fr in page.frames if fr.url]
        return any(any(host in u for host in PROTECTION_HOSTS) for u in urls)
    except Exception:
        return False


async def _has_captcha(page) -> bool:
    if _is_protection_page(page):
        return True
    if await first_visible(page, CAPTCHA_SELECTORS) is not None:
        return True
    try:
        return _contains_captcha_text(await page.content())
    except Exception:
        return False


class LoginScript(ActionScript):
    name = "login"
    requires_login = False
    login_timeout_ms = 30000

    async def run(self, page, context, params: Dict[str, Any]) -> ActionOutcome:
        username = pick(params, "username")
        password = pick(params, "password")
        login_url = pick(params, "login_url", "loginUrl")
        if not username or not password:
            raise ValidationError("Username and password are required for login")
        if not login_url:
            raise ValidationError("Login URL is not configured for this game")

        await page.goto(login_url, wait_until="networkidle", timeout=self.login_timeout_ms)

        if await _has_captcha(page):
            logger.warning("Captcha or protection page at %s", page.url)
            return ActionOutcome.fail("Captcha detected, manual login required", username=username)

        user_input = await first_visible(page, USERNAME_SELECTORS)
        if user_input is None:
            return ActionOutcome.fail("Username field not found", username=username)
        await user_input.fill(str(username), timeout=self.step_timeout_ms)

        password_input = await first_visible(page, PASSWORD_SELECTORS)
        if password_input is None:
            return ActionOutcome.fail("Password field not found", username=username)
        await password_input.fill(str(password), timeout=self.step_timeout_ms)

        button = await first_visible(page, SUBMIT_SELECTORS)
        if button is None:
            return ActionOutcome.fail("Login button not found", username=username)
        await button.click(timeout=self.step_timeout_ms)

        await page.wait_for_function(PASSWORD_GONE_JS, timeout=self.login_timeout_ms)
        return ActionOutcome.ok("Login successful", username=username)
