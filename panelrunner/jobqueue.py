# panelrunner/jobqueue.py
"""
In-process job queue.

Jobs are routed to named partitions (by default one per team+game
credential) and each partition is drained by exactly one consumer, which is
what keeps two jobs from driving the same persistent panel session at once.
Job records stay in memory after they finish so callers can poll their
status; finished records that have been read become eligible for eviction
once a team holds more than the retention limit for their state.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Union
from uuid import uuid4

import pydantic

from .config import CONFIG
from .errors import JobNotCancellableError, JobNotFoundError, ValidationError
from .models import ActionOutcome, JobRequest, JobStatus, QueueStats

logger = logging.getLogger(__name__)

TERMINAL_STATES = {"completed", "failed", "cancelled"}
CANCELLABLE_STATES = {"waiting", "active"}

STATE_MESSAGES = {
    "waiting": "Job is waiting in queue...",
    "active": "Processing...",
    "completed": "Job completed successfully",
    "failed": "Job failed",
    "cancelled": "Job cancelled by user",
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobRecord:
    def __init__(self, job_id: str, request: JobRequest, partition: str):
        self.job_id = job_id
        self.request = request
        self.partition = partition
        self.state = "waiting"
        self.progress = 0
        self.result: Optional[Dict[str, Any]] = None
        self.error: Optional[str] = None
        self.cancel_requested = False
        self.observed = False
        self.logs: List[dict] = []
        self.created_at = _now()
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None

    @property
    def team_id(self) -> int:
        return self.request.team_id

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def message(self) -> str:
        if self.state == "cancelled":
            return STATE_MESSAGES["cancelled"]
        if self.state == "completed" and self.result and self.result.get("message"):
            return self.result["message"]
        if self.state == "failed" and self.error:
            return self.error
        return STATE_MESSAGES[self.state]

    def to_status(self) -> JobStatus:
        duration = None
        if self.started_at:
            duration = ((self.finished_at or _now()) - self.started_at).total_seconds()
        return JobStatus(
            job_id=self.job_id,
            status=self.state,
            progress=self.progress,
            message=self.message(),
            result=self.result,
            error=self.error,
            start_time=self.started_at,
            end_time=self.finished_at,
            duration=duration,
            params=self.request.params,
            logs=self.logs,
        )


class JobQueue:
    def __init__(self, partition_by: str = None, keep_completed: int = None, keep_failed: int = None,
                 keep_cancelled: int = None):
        self.partition_by = partition_by or CONFIG.partition_by
        self.keep_completed = CONFIG.keep_completed if keep_completed is None else keep_completed
        self.keep_failed = CONFIG.keep_failed if keep_failed is None else keep_failed
        self.keep_cancelled = CONFIG.keep_cancelled if keep_cancelled is None else keep_cancelled
        self._records: Dict[str, JobRecord] = {}
        self._partitions: Dict[str, "asyncio.Queue[str]"] = {}
        self._listeners: List[Callable[[str], None]] = []

    # -- producer side ------------------------------------------------------

    def partition_key(self, request: JobRequest) -> str:
        # the credential pins the game, so spelling variants of game_name share a page
        if self.partition_by == "team":
            return f"team-{request.team_id}"
        return f"team-{request.team_id}:cred-{request.game_credential_id}"

    @staticmethod
    def _coerce(job_data: Union[JobRequest, Dict[str, Any]]) -> JobRequest:
        if isinstance(job_data, JobRequest):
            data = job_data.model_dump()
        elif isinstance(job_data, dict):
            data = dict(job_data)
        else:
            raise ValidationError("Invalid job data: expected a mapping")
        for required in ("action", "game_name"):
            if not str(data.get(required) or "").strip():
                raise ValidationError(f"Invalid job data: missing {required}")
        try:
            return JobRequest(**data)
        except pydantic.ValidationError as exc:
            missing = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
            raise ValidationError(f"Invalid job data: {missing}") from None

    def add_job(self, job_data: Union[JobRequest, Dict[str, Any]]) -> str:
        """Validate and enqueue; returns the new job id without waiting for execution."""
        request = self._coerce(job_data)
        job_id = f"{request.action}-{int(time.time() * 1000)}-{uuid4().hex[:9]}"
        partition = self.partition_key(request)
        record = JobRecord(job_id, request, partition)
        self._records[job_id] = record
        self._partition(partition).put_nowait(job_id)
        logger.info("Job %s added to %s (action: %s)", job_id, partition, request.action)
        return job_id

    def add_jobs(self, jobs: Iterable[Union[JobRequest, Dict[str, Any]]]) -> List[str]:
        return [self.add_job(job) for job in jobs]

    def _partition(self, name: str) -> "asyncio.Queue[str]":
        queue = self._partitions.get(name)
        if queue is None:
            queue = asyncio.Queue()
            self._partitions[name] = queue
            for listener in list(self._listeners):
                listener(name)
        return queue

    def add_partition_listener(self, listener: Callable[[str], None]):
        self._listeners.append(listener)

    def remove_partition_listener(self, listener: Callable[[str], None]):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def partitions(self) -> List[str]:
        return list(self._partitions)

    # -- queries ------------------------------------------------------------

    def get_job_status(self, job_id: str, team_id: int) -> Optional[JobStatus]:
        record = self._records.get(job_id)
        if record is None or record.team_id != team_id:
            return None
        status = record.to_status()
        if record.terminal and not record.observed:
            record.observed = True
            self._evict(team_id)
        return status

    def get_queue_stats(self, team_id: int) -> QueueStats:
        counts = {state: 0 for state in STATE_MESSAGES}
        for record in self._records.values():
            if record.team_id == team_id:
                counts[record.state] += 1
        return QueueStats(total=sum(counts.values()), **counts)

    def list_jobs(self, team_id: int, game_name: str = None) -> List[JobStatus]:
        return [
            r.to_status() for r in self._records.values()
            if r.team_id == team_id and (game_name is None or r.request.game_name == game_name)
        ]

    def get_record(self, job_id: str) -> JobRecord:
        record = self._records.get(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        return record

    # -- cancellation -------------------------------------------------------

    def cancel_job(self, job_id: str) -> JobStatus:
        """
        Cancel a waiting or active job.

        A waiting job never reaches a worker. An active job is only flagged:
        the script already running is not interrupted, its result is kept but
        the job reports ``cancelled``.
        """
        record = self.get_record(job_id)
        if record.state not in CANCELLABLE_STATES:
            raise JobNotCancellableError(job_id, record.state)
        if record.state == "waiting":
            record.state = "cancelled"
            record.finished_at = _now()
            logger.info("Job %s removed from %s before start", job_id, record.partition)
        else:
            record.cancel_requested = True
            record.state = "cancelled"
            logger.info("Job %s marked cancelled while active", job_id)
        return record.to_status()

    # -- worker side --------------------------------------------------------

    async def next_job(self, partition: str) -> JobRecord:
        """Wait for the next job still waiting in ``partition``."""
        queue = self._partition(partition)
        while True:
            job_id = await queue.get()
            queue.task_done()
            record = self._records.get(job_id)
            if record is not None and record.state == "waiting":
                return record
            logger.debug("Skipping job %s no longer waiting", job_id)

    def mark_active(self, job_id: str) -> JobRecord:
        record = self.get_record(job_id)
        if record.state == "waiting":
            record.state = "active"
            record.started_at = _now()
            record.progress = 10
        return record

    def update_progress(self, job_id: str, progress: int):
        record = self.get_record(job_id)
        record.progress = max(0, min(100, int(progress)))

    def is_cancelled(self, job_id: str) -> bool:
        record = self._records.get(job_id)
        return record is None or record.cancel_requested or record.state == "cancelled"

    def mark_done(self, job_id: str, outcome: Union[ActionOutcome, Dict[str, Any]]) -> JobRecord:
        record = self.get_record(job_id)
        record.result = outcome.public() if isinstance(outcome, ActionOutcome) else dict(outcome)
        record.progress = 100
        record.finished_at = _now()
        if record.state != "cancelled":
            record.state = "completed"
        self._evict(record.team_id)
        return record

    def mark_failed(self, job_id: str, reason: str) -> JobRecord:
        record = self.get_record(job_id)
        record.error = reason
        record.progress = 100
        record.finished_at = _now()
        if record.state != "cancelled":
            record.state = "failed"
        self._evict(record.team_id)
        return record

    def _evict(self, team_id: int):
        retention = (
            ("completed", self.keep_completed),
            ("failed", self.keep_failed),
            ("cancelled", self.keep_cancelled),
        )
        for state, keep in retention:
            finished = sorted(
                (r for r in self._records.values() if r.team_id == team_id and r.state == state),
                key=lambda r: r.finished_at or r.created_at,
            )
            excess = len(finished) - keep
            for record in finished:
                if excess <= 0:
                    break
                # a job cancelled while active has no finished_at until its worker lets go
                if record.observed and record.finished_at is not None:
                    del self._records[record.job_id]
                    excess -= 1
