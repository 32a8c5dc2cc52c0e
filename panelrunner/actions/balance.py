# panelrunner/actions/balance.py
import re
from typing import Any, Dict

from ..utils import format_amount, parse_amount
from .base import pick
from .panel import PlayerListScript


class BalanceScript(PlayerListScript):
    """Recharge and redeem share one dialog; only the menu entry and wording differ."""

    menu_entry = ""
    amount_params = ("amount", "recharge_amount", "redeem_amount", "rechargeAmount", "redeemAmount")

    def prepare(self, params: Dict[str, Any]) -> Dict[str, Any]:
        amount = parse_amount(pick(params, *self.amount_params))
        remarks = pick(params, "remarks", "remark", default="")
        return {"amount": amount, "amount_text": format_amount(amount), "remarks": str(remarks)}

    def outcome_fields(self, account, inputs):
        return {"username": account, "amount": inputs.get("amount")}

    async def submit(self, page, frame, account, inputs):
        await self.open_row_menu(frame, self.menu_entry)
        dialog = self.list_frame(page)
        await dialog.get_by_placeholder("Input score").fill(inputs["amount_text"], timeout=self.step_timeout_ms)
        await dialog.get_by_role("textbox", name="Input remark").fill(inputs["remarks"], timeout=self.step_timeout_ms)
        await dialog.get_by_role("button", name="Submit").click(timeout=self.step_timeout_ms)


class RechargeScript(BalanceScript):
    name = "recharge"
    menu_entry = "Recharge"
    success_markers = (("success", "Recharge successful"),)
    error_markers = (
        (re.compile(r"^The score must be greater than 0\.$"), "Amount should be greater than 0"),
        ("The score is insufficient", "Amount is insufficient"),
    )
    indeterminate_message = "Try again, maybe the amount is insufficient"


class RedeemScript(BalanceScript):
    name = "redeem"
    menu_entry = "Redeem"
    success_markers = (("success", 'Successfully redeemed {amount_text} for user "{account}"'),)
    error_markers = (
        (re.compile(r"^The score must be greater than 0\.$"), "Amount should be greater than 0"),
        ("The score is insufficient", "Player balance is insufficient"),
    )
    indeterminate_message = "Try again, redeem result was not shown"
