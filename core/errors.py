"""Error kinds raised by the PAR2Protect engine"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Category of a failure, carried in every error response."""
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    EXECUTION = "execution"
    FILES_EXIST = "files_exist"
    TIMEOUT = "timeout"
    RESOURCE = "resource"
    CONSISTENCY = "consistency"
    STORAGE = "storage"


class Par2ProtectError(Exception):
    """Engine error with a kind and structured context.

    Validation errors are raised before anything is enqueued; execution
    errors are recorded on the failing operation instead of propagating.
    """

    def __init__(self, kind: ErrorKind, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.message,
            "kind": self.kind.value,
            "context": self.context,
        }

    def __repr__(self) -> str:
        return f"Par2ProtectError({self.kind.value}, {self.message!r})"


def validation_error(message: str, **context) -> Par2ProtectError:
    return Par2ProtectError(ErrorKind.VALIDATION, message, context)


def not_found_error(message: str, **context) -> Par2ProtectError:
    return Par2ProtectError(ErrorKind.NOT_FOUND, message, context)
