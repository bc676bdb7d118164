"""Exception types raised by the sync engine."""

from typing import Optional


class ConfigurationError(Exception):
    """Raised at startup when required settings are missing or invalid."""

    pass


class ConnectWiseClientError(Exception):
    """
    Raised when a ConnectWise API request fails.

    Wraps transport errors, timeouts and non-2xx responses so callers only
    need to handle a single exception type.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429


class RecordShapeError(ValueError):
    """Raised when a single remote record cannot be mapped to a local row."""

    pass


class SyncStageError(Exception):
    """Raised when a whole sync stage fails."""

    def __init__(self, entity_type: str, cause: BaseException):
        super().__init__(f"{entity_type} stage failed: {cause}")
        self.entity_type = entity_type
        self.cause = cause
