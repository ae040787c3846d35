"""
Error types raised by the live-location pipeline
"""


class LiveTrackError(Exception):
    """Base class for errors surfaced to API callers"""

    status_code = 500

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(LiveTrackError):
    """Malformed or out-of-range GPS fix"""

    status_code = 400


class AuthorizationError(LiveTrackError):
    """Bad API key, bad token or wrong tenant"""

    status_code = 401


class NotFoundError(LiveTrackError):
    status_code = 404


class ThrottledError(LiveTrackError):
    """Fix arrived sooner than the per-bus minimum interval"""

    status_code = 429


class InfrastructureError(LiveTrackError):
    """Cache or storage backend unreachable"""

    status_code = 503
