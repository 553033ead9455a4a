"""
Storage error taxonomy
- Stable error kinds surfaced to the hosting service
- EngineError carries the status of the failed Elasticsearch call
"""

from typing import Optional


class StorageError(Exception):
    """Base storage error"""

    code = "internal"

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(StorageError):
    """Unparseable filter, malformed field mask, bad page token or config"""

    code = "invalid_argument"


class AlreadyExistsError(StorageError):
    """Project or note name already taken"""

    code = "already_exists"


class NotFoundError(StorageError):
    """No document for the requested logical name"""

    code = "not_found"


class InternalError(StorageError):
    """Engine failure, decode failure or failed migration step"""

    code = "internal"


class EngineError(InternalError):
    """Elasticsearch request failed or returned an unusable response"""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_type: Optional[str] = None,
        details: dict = None,
    ):
        super().__init__(message, details=details)
        self.status_code = status_code
        self.error_type = error_type

    def to_dict(self) -> dict:
        result = super().to_dict()
        result["status_code"] = self.status_code
        result["engine_error_type"] = self.error_type
        return result
