# panelrunner/logger.py
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from .config import CONFIG

_LOGGER = logging.getLogger("panelrunner.jobs")


def now_iso():
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class JobLogger:
    """Per-job step log, mirrored to a JSONL file and to the ``logging`` stack."""

    def __init__(self, job_id: str, storage: Path = None):
        self.job_id = job_id
        storage = Path(storage or CONFIG.storage_dir)
        storage.mkdir(parents=True, exist_ok=True)
        self.path = storage / f"{job_id}.log.jsonl"
        self.entries = []

    def log(self, step: str, success: bool, message: str, extra: dict = None):
        entry = {
            "timestamp": now_iso(),
            "step": step,
            "success": success,
            "message": message,
            "extra": extra or {}
        }
        self.entries.append(entry)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
        level = logging.INFO if success else logging.WARNING
        _LOGGER.log(level, "[%s] %s: %s", self.job_id, step, message)
        return entry

    def save_screenshot(self, img_bytes: bytes, name_suffix="final.png"):
        out = self.path.parent / f"{self.job_id}_{name_suffix}"
        with open(out, "wb") as f:
            f.write(img_bytes)
        return str(out)
