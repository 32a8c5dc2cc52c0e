# panelrunner/errors.py
"""Exception types raised across the job queue, registry and action layers."""


class PanelRunnerError(Exception):
    """Base class for every error raised by panelrunner."""


class ValidationError(PanelRunnerError):
    """Bad or missing input at enqueue time or script invocation."""


class TargetMismatchError(PanelRunnerError):
    """The searched account row does not match the requested account."""

    def __init__(self, message: str, account: str = None):
        super().__init__(message)
        self.account = account


class IndeterminateOutcomeError(PanelRunnerError):
    """The form was submitted but no known confirmation signal appeared."""


class ResourceLeakError(PanelRunnerError):
    """A browser resource could not be closed during cleanup."""

    def __init__(self, kind: str, cause: BaseException):
        super().__init__(f"failed to close {kind}: {cause}")
        self.kind = kind
        self.cause = cause


class CleanupTimeoutError(PanelRunnerError, TimeoutError):
    """Browser cleanup did not finish within its time budget."""


class CredentialNotFoundError(PanelRunnerError):
    def __init__(self, game_credential_id):
        super().__init__(f"Game credential not found: {game_credential_id}")
        self.game_credential_id = game_credential_id


class JobNotFoundError(PanelRunnerError):
    def __init__(self, job_id: str):
        super().__init__(f"job {job_id} not found")
        self.job_id = job_id


class JobNotCancellableError(PanelRunnerError):
    def __init__(self, job_id: str, state: str):
        super().__init__(f"job {job_id} cannot be cancelled in {state} state")
        self.job_id = job_id
        self.state = state
