# panelrunner/actions/accounts.py
from typing import Any, Dict

from ..errors import ValidationError
from .base import pick
from .panel import PlayerListScript


class NewAccountScript(PlayerListScript):
    name = "newAccount"
    account_params = ("new_account_name", "account_name", "newAccountName", "username")
    must_exist = False
    success_markers = (("success", 'Successfully created user "{account}"'),)
    error_markers = (("The Accounts has already been", "Account already exists: {text}"),)

    def prepare(self, params: Dict[str, Any]) -> Dict[str, Any]:
        password = pick(params, "new_password", "password", "newPassword")
        if not password:
            raise ValidationError("New password is required for newAccount")
        return {"password": str(password)}

    def outcome_fields(self, account, inputs):
        return {"account_name": account}

    async def submit(self, page, frame, account, inputs):
        await frame.locator("button.dialog-create").click(timeout=self.step_timeout_ms)
        dialog = self.list_frame(page)
        await dialog.get_by_role("textbox", name="Input Account").fill(account, timeout=self.step_timeout_ms)
        await dialog.get_by_role("textbox", name="Input Password").fill(inputs["password"], timeout=self.step_timeout_ms)
        await dialog.get_by_text("Submit").click(timeout=self.step_timeout_ms)


class PasswordResetScript(PlayerListScript):
    name = "passwordReset"
    success_markers = (("success", "Password reset successful"),)
    error_markers = (("failed", "Old password cannot be the new password"),)
    indeterminate_message = "Try again"

    def prepare(self, params: Dict[str, Any]) -> Dict[str, Any]:
        password = pick(params, "new_password", "password", "newPassword")
        if not password:
            raise ValidationError("New password is required for passwordReset")
        return {"password": str(password)}

    async def submit(self, page, frame, account, inputs):
        await self.open_row_menu(frame, "Reset Password")
        await frame.get_by_role("textbox", name="Input Password").fill(inputs["password"], timeout=self.step_timeout_ms)
        await frame.get_by_role("button", name="Submit").click(timeout=self.step_timeout_ms)
