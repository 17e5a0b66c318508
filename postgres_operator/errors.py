"""
Error taxonomy for the PostgresCluster operator

Errors raised by the platform client are mapped onto these classes so the
reconcile loop can tell "object is gone" apart from "somebody else wrote
first" and "namespace is terminating".
"""

from typing import Optional


class OperatorError(Exception):
    """Base class for all operator errors"""


class ApiError(OperatorError):
    """Generic failure talking to the Kubernetes API"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class NotFoundError(ApiError):
    """The requested object does not exist"""

    def __init__(self, message: str):
        super().__init__(message, status=404)


class ConflictError(ApiError):
    """Optimistic concurrency or ownership conflict"""

    def __init__(self, message: str):
        super().__init__(message, status=409)


class AlreadyOwnedError(ConflictError):
    """The object already has a different controller owner"""


class ForbiddenError(ApiError):
    """The API rejected the request, e.g. the namespace is terminating"""

    def __init__(self, message: str):
        super().__init__(message, status=403)


class ReconcileCancelled(OperatorError):
    """The reconcile attempt ran past its deadline or was cancelled"""


class StageError(OperatorError):
    """
    A pipeline stage failed

    Carries the stage name and the cluster key so a log line is enough to
    diagnose the failure without re-running.
    """

    def __init__(self, stage: str, key: str, cause: BaseException):
        super().__init__(f"{stage} failed for {key}: {cause}")
        self.stage = stage
        self.key = key
        self.cause = cause
