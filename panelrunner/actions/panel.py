# panelrunner/actions/panel.py
"""Navigation shared by scripts that work on the panel's "Player List" screen."""

import logging
from typing import List

from .base import AccountActionScript

logger = logging.getLogger(__name__)

MENU_LINK = " Player Management "
LIST_LINK = " Player List"
NO_DATA_SELECTOR = 'tbody > tr > td[colspan] span.help-block'
MAX_ROWS = 20


class PlayerListScript(AccountActionScript):
    banner_selector = ".layui-layer-content"

    def list_frame(self, page):
        return page.get_by_role("tabpanel", name=LIST_LINK).locator("iframe").content_frame

    async def open(self, page):
        await page.wait_for_load_state("networkidle", timeout=self.step_timeout_ms)
        await page.get_by_role("link", name=MENU_LINK).click(timeout=self.step_timeout_ms)
        await page.get_by_role("link", name=LIST_LINK).click(timeout=self.step_timeout_ms)
        return self.list_frame(page)

    async def search_rows(self, frame, account: str) -> List[List[str]]:
        await frame.get_by_role("textbox", name="Account").fill(account, timeout=self.step_timeout_ms)
        await frame.get_by_role("button", name="Search").click(timeout=self.step_timeout_ms)
        await frame.locator("tbody").wait_for(timeout=self.step_timeout_ms)

        if await frame.locator(NO_DATA_SELECTOR).filter(has_text="No data.").count() > 0:
            return []

        rows = frame.locator("tbody > tr")
        try:
            await rows.first.wait_for(timeout=self.step_timeout_ms)
        except Exception:
            return []
        result = []
        for index in range(min(await rows.count(), MAX_ROWS)):
            cells = await rows.nth(index).locator("td").all_text_contents()
            result.append(cells)
        logger.debug("Search for %r returned %d row(s)", account, len(result))
        return result

    async def open_row_menu(self, frame, entry: str):
        await frame.get_by_role("button", name="editor").first.click(timeout=self.step_timeout_ms)
        await frame.locator("a").filter(has_text=entry).first.click(timeout=self.step_timeout_ms)
