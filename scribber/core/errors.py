"""Error taxonomy shared by the services and converted to HTTP responses in main."""
from enum import Enum
from typing import List, Optional


class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    UNAVAILABLE = "unavailable"
    EMPTY = "empty"
    FATAL = "fatal"

    @property
    def retryable(self) -> bool:
        return self is not ErrorKind.FATAL


class ScribberError(Exception):
    # message safe to hand back to the client
    public_message = "Internal server error."
    status_code = 500


class ValidationFailure(ScribberError):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.public_message = message


class ConfigurationError(ScribberError):
    def __init__(self, message: str):
        super().__init__(message)
        self.public_message = message


class UpstreamServiceFailure(ScribberError):
    public_message = "Upstream service failed."


class GenerationFailure(UpstreamServiceFailure):
    public_message = "Failed to generate story."

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.FATAL,
        models_tried: Optional[List[str]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.models_tried = list(models_tried or [])
        self.cause = cause


class MailDeliveryFailure(UpstreamServiceFailure):
    public_message = "Failed to send email."


class RenderFailure(ScribberError):
    public_message = "Failed to render images."

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class ArchiveFailure(ScribberError):
    public_message = "Failed to create zip file."


class SocialPostNotImplemented(ScribberError):
    def __init__(self, message: str):
        super().__init__(message)
        self.public_message = message
