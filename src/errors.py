"""
Error taxonomy for the node upgrade orchestrator.

Engines raise these; the cluster upgrade coordinator contains them at the
node level so a failure on one node never aborts the cycle for the others.
"""

from typing import List, Optional


class UpgradeError(RuntimeError):
    """Base class for all orchestrator errors."""


class ApiError(UpgradeError):
    """Cluster API returned a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(ApiError):
    """Target resource does not exist (HTTP 404)."""


class ConflictError(ApiError):
    """Resource changed or disappeared concurrently (HTTP 409)."""


class TooManyRequestsError(ApiError):
    """Request refused, e.g. eviction blocked by a disruption budget (HTTP 429)."""


class StepTimeoutError(UpgradeError):
    """An engine call exceeded its deadline."""


class StoreError(UpgradeError):
    """Upgrade state could not be persisted."""


class DrainError(UpgradeError):
    """Drain did not complete; the node is left cordoned."""

    TIMEOUT = "Timeout"
    LOCAL_STORAGE = "LocalStorage"
    UNMANAGED = "Unmanaged"
    API = "ApiError"

    def __init__(self, reason: str, remaining_pods: Optional[List[str]] = None):
        self.reason = reason
        self.remaining_pods = list(remaining_pods or [])
        detail = ", ".join(self.remaining_pods[:5])
        if len(self.remaining_pods) > 5:
            detail += f" (+{len(self.remaining_pods) - 5} more)"
        super().__init__(
            f"drain failed: {reason}" + (f" [{detail}]" if detail else "")
        )


class DeleteError(UpgradeError):
    """Pod deletion failed."""


class UncordonError(UpgradeError):
    """Node could not be marked schedulable."""


class SnapshotError(UpgradeError):
    """Cluster snapshot could not be built; the whole cycle is aborted."""
