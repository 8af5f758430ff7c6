"""Errors raised by the file tree services.

Each error carries the API error code and HTTP status it maps to.
"""

from collections.abc import Iterable

__all__ = [
    "FileServiceException",
    "ValidationError",
    "QuotaExceeded",
    "NotFoundOrForbidden",
    "NameConflict",
    "InvalidMoveCycle",
    "CorruptTree",
    "TransientStoreError",
    "StoreTimeout",
    "ConcurrentModification",
]


class FileServiceException(Exception):
    """Exception raised by file service."""

    error_code = "E500"
    status = 500


class ValidationError(FileServiceException):
    """Malformed input such as an empty or illegal name."""

    error_code = "E400"
    status = 400


class QuotaExceeded(ValidationError):
    """An upload would take the owner past their storage quota."""

    error_code = "E_QUOTA"
    status = 403

    def __init__(self, used: int, size: int, quota: int) -> None:
        self.used = used
        self.size = size
        self.quota = quota
        super().__init__(
            f"Storage quota exceeded: {used} + {size} bytes is more than {quota}"
        )


class NotFoundOrForbidden(FileServiceException):
    """The entity does not exist, was deleted, or belongs to another owner."""

    error_code = "E404"
    status = 404


class NameConflict(FileServiceException):
    """One or more names collide with live siblings."""

    error_code = "E409"
    status = 409

    def __init__(self, names: Iterable[str], message: str | None = None) -> None:
        self.names = list(names)
        quoted = ", ".join(f'"{n}"' for n in self.names)
        super().__init__(message or f"Name already exists in target folder: {quoted}")


class InvalidMoveCycle(FileServiceException):
    """Moving a folder into itself or one of its descendants."""

    error_code = "E_MOVE_CYCLE"
    status = 400

    def __init__(self, item_id: int, target_id: int) -> None:
        self.item_id = item_id
        self.target_id = target_id
        super().__init__(
            f"Cannot move folder {item_id} into itself or its descendant {target_id}"
        )


class CorruptTree(FileServiceException):
    """An ancestry walk did not terminate at the root.

    Indicates a data integrity problem rather than a caller error.
    """

    error_code = "E_CORRUPT_TREE"
    status = 500

    def __init__(self, entity_id: int, reason: str) -> None:
        self.entity_id = entity_id
        super().__init__(f"Corrupt tree at entity {entity_id}: {reason}")


class TransientStoreError(FileServiceException):
    """The store failed in a way that is safe to retry."""

    error_code = "E503"
    status = 503


class StoreTimeout(TransientStoreError):
    """The unit of work did not complete within its timeout."""

    error_code = "E504"
    status = 504


class ConcurrentModification(TransientStoreError):
    """A row changed underneath the operation."""

    error_code = "E_CONFLICT_RETRY"
    status = 503
