"""
Exception taxonomy for ChargeSync.

Every error carries the upstream ``errno`` when one is known so that route
handlers can surface it in the response envelope, plus the HTTP status the
error maps to.
"""

from typing import Optional


class ChargeSyncError(Exception):
    """Base class for all ChargeSync errors."""
    status_code = 500
    default_errno = -1

    def __init__(self, message: str = "", errno: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.errno = self.default_errno if errno is None else errno

    def to_dict(self):
        return {'errno': self.errno, 'error': self.message}


class ValidationError(ChargeSyncError):
    """Bad rule, config or quick-control input. Rejected before any side effect."""
    status_code = 400
    default_errno = 400


class NotFound(ValidationError):
    status_code = 404
    default_errno = 404


class DeviceNotConfigured(ChargeSyncError):
    status_code = 400
    default_errno = -1

    def __init__(self, message: str = "No device SN configured", errno: Optional[int] = None):
        super().__init__(message, errno)


class UpstreamError(ChargeSyncError):
    """Inverter, price or weather provider failure."""
    status_code = 502
    retryable = True


class UpstreamTimeout(UpstreamError):
    status_code = 504
    default_errno = 408


class UpstreamUnavailable(UpstreamError):
    default_errno = 503


class RateLimited(UpstreamError):
    """Provider asked us to back off (FoxESS errno 40402, Amber HTTP 429)."""
    status_code = 429
    default_errno = 40402

    def __init__(self, message: str = "", errno: Optional[int] = None, retry_after: Optional[float] = None):
        super().__init__(message, errno)
        self.retry_after = retry_after


class HardwareRejection(ChargeSyncError):
    """The inverter refused a control-plane write, or a segment failed validation."""
    status_code = 502


class SegmentRejected(HardwareRejection):
    """A segment could not be built within the current day."""
    default_errno = -2


class CycleInProgress(ChargeSyncError):
    """Another automation cycle is already running for this user."""
    status_code = 409
    default_errno = 409
