"""
Exception hierarchy for SceneScore.

Every per-job failure is one of these, so callers can tell a bad credential
from a flaky network or a generation the service itself rejected. The
``kind`` attribute is the stable, serializable name used in job outcomes,
batch reports and API responses.
"""

from __future__ import annotations


class SceneScoreError(Exception):
    """Base exception for all project-specific errors."""

    kind = "error"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ConfigurationError(SceneScoreError):
    """Missing or invalid credential/endpoint. Never retried."""

    kind = "configuration"


class ContractViolation(SceneScoreError):
    """The service answered "not found" for a job it handed out.

    Either the job id is wrong or the status endpoint is misconfigured.
    """

    kind = "contract_violation"


class TransientTransportError(SceneScoreError):
    """Non-success response while polling. The next tick retries.

    Attributes:
        status_code: HTTP status of the failed response, or None when the
            request never got a response (connect error, timeout).
    """

    kind = "transient_transport"

    def __init__(self, reason: str, *, status_code: int | None = None):
        super().__init__(reason)
        self.status_code = status_code


class TerminalTransportError(SceneScoreError):
    """Failure while submitting or downloading. Fatal for that job."""

    kind = "terminal_transport"

    def __init__(self, reason: str, *, status_code: int | None = None):
        super().__init__(reason)
        self.status_code = status_code


class RemoteReportedFailure(SceneScoreError):
    """The service reported the generation as failed."""

    kind = "remote_failure"


class GenerationTimeout(SceneScoreError):
    """The job's wall-clock polling budget ran out."""

    kind = "timeout"

    def __init__(self, reason: str = "timeout"):
        super().__init__(reason)


class PersistenceWarning(SceneScoreError):
    """A durable write failed. In-memory state is kept as-is."""

    kind = "persistence"


class GenerationInProgressError(SceneScoreError):
    """The requester already has a generation outstanding.

    Attributes:
        requester: The logical caller that is still waiting on a job.
    """

    kind = "in_progress"

    def __init__(self, requester: str):
        super().__init__(f"Generation already in progress for requester {requester!r}")
        self.requester = requester
