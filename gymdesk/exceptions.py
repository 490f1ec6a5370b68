from typing import List, Optional


class GymDeskError(Exception):
    """Base class for errors that are reported back to the operator.

    The message is short and user facing. `code` is a stable identifier the
    HTTP layer maps to a status code.
    """

    code = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(GymDeskError):
    code = "not_found"


class PlanNotFoundError(NotFoundError):
    pass


class ValidationError(GymDeskError, ValueError):
    """Malformed input. Raised before anything touches the database.

    `errors` holds every failing field message; the exception message is the
    first of them.
    """

    code = "validation"

    def __init__(self, errors: List[str], field: Optional[str] = None):
        if isinstance(errors, str):
            errors = [errors]
        super().__init__(errors[0])
        self.errors = errors
        self.field = field


class ReferentialConflictError(GymDeskError):
    code = "conflict"


class TransactionFailure(GymDeskError):
    """A store operation failed mid-transaction; nothing was committed."""

    code = "transaction"


class ConcurrentModificationError(TransactionFailure):
    """The member row changed between read and write (version mismatch)."""


class DataIntegrityError(GymDeskError):
    """A stored value is outside its allowed set (e.g. an unknown status)."""

    code = "data_integrity"
