# panelrunner/utils.py
import base64
import math
from typing import Optional, Sequence

from .errors import ValidationError

Row = Sequence[str]


def normalize_cell(text) -> str:
    return " ".join(str(text or "").split())


def account_matches(cell_text, target: str) -> bool:
    """Exact match after trimming, or containment to tolerate UI padding."""
    if not target:
        return False
    cell = str(cell_text or "")
    return cell.strip() == target or target in cell


def match_account(rows: Sequence[Row], target: str, column: int = 0) -> Optional[Row]:
    """
    Return the first row whose ``column`` cell names ``target``.

    Rows shorter than ``column`` are skipped. ``None`` means the target is not
    present, which callers must treat as "do not mutate".
    """
    for row in rows:
        if len(row) <= column:
            continue
        if account_matches(row[column], target):
            return row
    return None


def parse_amount(value) -> float:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError("Amount is required")
    if isinstance(value, bool):
        raise ValidationError(f"Amount must be a number, got {value!r}")
    try:
        amount = float(str(value).strip())
    except ValueError:
        raise ValidationError(f"Amount must be a number, got {value!r}") from None
    if math.isnan(amount) or math.isinf(amount):
        raise ValidationError(f"Amount must be a number, got {value!r}")
    if amount <= 0:
        raise ValidationError("Amount must be greater than 0")
    return amount


def format_amount(amount: float) -> str:
    """Render an amount the way the panels expect it typed (``1`` not ``1.0``)."""
    return str(int(amount)) if float(amount).is_integer() else str(amount)


def encode_frame(image: bytes) -> str:
    return base64.b64encode(image).decode("ascii")

