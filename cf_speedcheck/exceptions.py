"""Exceptions raised by the speedcheck engine"""

from typing import Optional


class SpeedTestError(Exception):
    """Base class for every failure the speed test can report"""


class TransportError(SpeedTestError):
    """Raised when a single request fails before its response completes"""
    def __init__(self, message: str = "", cause: Optional[BaseException] = None, status_code: Optional[int] = None):
        self.cause = cause
        self.status_code = status_code
        if not message:
            if status_code is not None:
                message = f"HTTP error {status_code} from speed test endpoint."
            elif cause is not None:
                message = f"Request failed: {cause}"
            else:
                message = "Request failed."
        super().__init__(message)


class InvalidInputError(SpeedTestError, ValueError):
    """Raised when a statistics function gets an empty or invalid sample set"""


class ConfigurationError(SpeedTestError):
    """Raised when the configured network interface does not resolve"""
    def __init__(self, message: str = "Invalid interface", interface: Optional[str] = None):
        self.interface = interface
        super().__init__(message)


class EndpointError(SpeedTestError):
    """Raised when the endpoint metadata (trace) lookup fails"""
