"""Exceptions raised by the image generation layer."""
from typing import Optional


class GenerationError(Exception):
    """Base exception for one generation attempt"""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class ValidationError(GenerationError):
    """Missing credential, empty prompt or out-of-range parameter. No network call was made."""
    pass


class RemoteSubmissionError(GenerationError):
    """Prediction creation was rejected; message carries the service detail"""
    pass


class RemoteQueryError(GenerationError):
    """Status check failed at the transport or HTTP level"""
    pass


class RemoteFailureStatus(GenerationError):
    """The service reported the prediction as failed or canceled"""
    def __init__(self, message: str, handle=None):
        self.handle = handle
        super().__init__(message)


class PollingTimeoutError(GenerationError):
    """Polling budget (attempts or wall-clock) ran out before a terminal status"""
    pass


class GenerationCancelled(GenerationError):
    """Polling was cancelled explicitly or superseded by a newer submission"""
    pass


class DownloadError(GenerationError):
    """A generated image could not be fetched"""
    pass
