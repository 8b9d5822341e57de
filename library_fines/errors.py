"""
Error taxonomy for the fine and ban subsystem.

Administrative callers receive these as typed failures. The scheduled jobs
catch them per loan or member and only log.
"""


class LibraryFinesError(Exception):
    """Base class for all fine subsystem errors"""


class NotFound(LibraryFinesError, LookupError):
    """A loan, member, operator or transaction does not exist"""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.capitalize()} {entity_id} not found")


class AlreadySettled(LibraryFinesError):
    """The loan's fine is already PAID or WAIVED"""

    def __init__(self, loan_id: str, fine_status: str):
        self.loan_id = loan_id
        self.fine_status = fine_status
        super().__init__(f"Fine for loan {loan_id} is already {fine_status.lower()}")


class InsufficientAmount(LibraryFinesError):
    """Payment is below the outstanding fine; partial payments are not accepted"""

    def __init__(self, loan_id: str, amount, required):
        self.loan_id = loan_id
        self.amount = amount
        self.required = required
        super().__init__(
            f"Payment of {amount} is less than the fine of {required} due on loan {loan_id}"
        )


class InvalidInput(LibraryFinesError, ValueError):
    """Request arguments are malformed (empty reason, non-positive amount, ...)"""


class InvalidTransition(LibraryFinesError, ValueError):
    """A fine status change would move backward or leave a terminal state"""


class PersistenceConflict(LibraryFinesError):
    """A concurrent update won the race on a loan or member record"""


class NotificationFailure(LibraryFinesError):
    """A notification could not be delivered. Always logged, never propagated."""
