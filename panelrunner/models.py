# panelrunner/models.py
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

JobState = Literal["waiting", "active", "completed", "failed", "cancelled"]
AuditStatus = Literal["success", "fail", "unknown"]


class JobRequest(BaseModel):
    user_id: str
    team_id: int
    game_name: str
    action: str
    game_credential_id: int
    game_id: Optional[int] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    session_id: str = "unknown"
    # throwaway browser instead of the team+game persistent page
    ephemeral: bool = False


class ActionOutcome(BaseModel):
    model_config = ConfigDict(extra="allow")

    success: bool
    message: str
    status: AuditStatus = "fail"
    amount: Optional[float] = None
    username: Optional[str] = None
    account_name: Optional[str] = None
    needs_login: bool = False

    @classmethod
    def ok(cls, message: str, **fields):
        return cls(success=True, message=message, status="success", **fields)

    @classmethod
    def fail(cls, message: str, **fields):
        return cls(success=False, message=message, status="fail", **fields)

    @classmethod
    def unknown(cls, message: str, **fields):
        return cls(success=False, message=message, status="unknown", **fields)

    def public(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class LogEntry(BaseModel):
    timestamp: str
    step: str
    success: bool
    message: str
    extra: Optional[Dict[str, Any]] = None


class JobStatus(BaseModel):
    job_id: str
    status: JobState
    progress: int = 0
    message: str
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[float] = None  # seconds
    params: Dict[str, Any] = Field(default_factory=dict)
    logs: List[LogEntry] = []


class QueueStats(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    total: int = 0


class ScreenshotFrame(BaseModel):
    image: bytes
    game_id: int
    game_name: str
    action: str
    team_id: int
    session_id: str
    timestamp: datetime


class LogUpdate(BaseModel):
    game_id: int
    game_name: str
    team_id: Optional[int] = None
    is_executing: bool = False
    current_log: Optional[str] = None
    all_logs: List[str] = []
    timestamp: datetime


class SessionCheck(BaseModel):
    has_session: bool
    has_credentials: bool
    session_token: Optional[str] = None
    session_data: Optional[Dict[str, Any]] = None
    username: Optional[str] = None
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class SaveSessionRequest(BaseModel):
    user_id: str
    game_credential_id: int
    session_data: Dict[str, Any] = Field(default_factory=dict)
