"""
Control Plane Errors

Error taxonomy shared by the queue backends, executor and result handler.
The ``retryable`` flag drives the worker's choice between a retry and a
dead job.
"""


class ServalError(Exception):
    """Base class for all control plane errors."""

    retryable = False


class JobValidationError(ServalError):
    """Malformed job: empty test cases, unresolved placeholder, bad level."""


class JobNotFoundError(ServalError):
    """No job record exists for the given id."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidTransitionError(ServalError):
    """Requested status change is not allowed from the job's current status."""

    def __init__(self, job_id: str, current: str, requested: str):
        super().__init__(
            f"Job {job_id} cannot move from {current} to {requested}"
        )
        self.job_id = job_id
        self.current = current
        self.requested = requested


class QueueBackendError(ServalError):
    """Queue backend unreachable or returned an unexpected reply."""

    retryable = True


class ResultStoreError(ServalError):
    """Result store unreachable while recording responses."""

    retryable = True
