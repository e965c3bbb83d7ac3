# Dispatch Error Taxonomy
# File: errors.py

"""
Exceptions raised by the dispatch core. Each carries a stable error code so the
transport boundary and any outer API layer can map them without string matching.
"""

from typing import Any, Optional


class ErrorCodes:
    """Error codes shared with drones and operators"""

    DRONE_001 = "DRONE_001"  # drone not found
    DRONE_002 = "DRONE_002"  # drone busy / in flight
    ORDER_001 = "ORDER_001"  # order not found
    ORDER_002 = "ORDER_002"  # order cannot be cancelled or modified
    ORDER_003 = "ORDER_003"  # order outside service area
    JOB_001 = "JOB_001"      # no jobs available
    JOB_002 = "JOB_002"      # job not found
    VALIDATION_001 = "VALIDATION_001"
    AUTH_002 = "AUTH_002"
    STATE_001 = "STATE_001"  # snapshot write failed


ERROR_MESSAGES = {
    ErrorCodes.DRONE_001: "Drone not found",
    ErrorCodes.DRONE_002: "Drone already assigned to job",
    ErrorCodes.ORDER_001: "Order not found",
    ErrorCodes.ORDER_002: "Order cannot be cancelled",
    ErrorCodes.ORDER_003: "Order outside service area",
    ErrorCodes.JOB_001: "No jobs available",
    ErrorCodes.JOB_002: "Job not found",
    ErrorCodes.VALIDATION_001: "Invalid input format",
    ErrorCodes.AUTH_002: "Insufficient permissions",
    ErrorCodes.STATE_001: "State could not be persisted",
}


class DispatchError(Exception):
    """Base class for all dispatch core errors"""

    def __init__(self, code: str, message: Optional[str] = None, details: Any = None):
        self.code = code
        self.message = message or ERROR_MESSAGES.get(code, code)
        self.details = details
        super().__init__(self.message)

    def to_dict(self):
        data = {'error': self.code, 'message': self.message}
        if self.details is not None:
            data['details'] = self.details
        return data


class NotFoundError(DispatchError):
    """Unknown drone, order or job id"""


class ConflictError(DispatchError):
    """Operation is not allowed in the entity's current state"""


class ValidationFailure(DispatchError):
    """Input rejected: geofence mismatch, out-of-area order, malformed telemetry"""

    def __init__(self, message: str, code: str = ErrorCodes.VALIDATION_001, details: Any = None):
        super().__init__(code, message, details)


class NoJobsAvailable(NotFoundError):
    """Pending queue is empty for this drone. Normal and retryable."""

    def __init__(self, message: str = "No jobs available"):
        super().__init__(ErrorCodes.JOB_001, message)


class PermissionDenied(DispatchError):
    """Authenticated actor lacks the role required for the operation"""

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(ErrorCodes.AUTH_002, message)


class PersistenceError(DispatchError):
    """State snapshot could not be written; the change was rolled back"""

    def __init__(self, message: str = "State could not be persisted"):
        super().__init__(ErrorCodes.STATE_001, message)
