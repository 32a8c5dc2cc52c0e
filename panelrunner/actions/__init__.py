# panelrunner/actions/__init__.py
"""Registered action scripts, keyed by the action name jobs carry."""

from typing import Dict, Iterable, Optional

from ..errors import ValidationError
from .accounts import NewAccountScript, PasswordResetScript
from .balance import RechargeScript, RedeemScript
from .base import AccountActionScript, ActionScript
from .login import LoginScript


def build_actions(scripts: Optional[Iterable[ActionScript]] = None) -> Dict[str, ActionScript]:
    scripts = list(scripts) if scripts is not None else [
        LoginScript(),
        NewAccountScript(),
        PasswordResetScript(),
        RechargeScript(),
        RedeemScript(),
    ]
    actions: Dict[str, ActionScript] = {}
    for script in scripts:
        if script.name in actions:
            raise ValueError(f"duplicate action script {script.name!r}")
        actions[script.name] = script
    return actions


def resolve_action(actions: Dict[str, ActionScript], name: str) -> ActionScript:
    script = actions.get(name)
    if script is None:
        raise ValidationError(f"Unknown action '{name}'")
    return script


__all__ = [
    "AccountActionScript",
    "ActionScript",
    "LoginScript",
    "NewAccountScript",
    "PasswordResetScript",
    "RechargeScript",
    "RedeemScript",
    "build_actions",
    "resolve_action",
]
