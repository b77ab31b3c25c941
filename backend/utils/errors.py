class LedgerError(Exception):
    """Base class for every error raised by the split allocator and balance ledger"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidSplitParams(LedgerError):
    """Malformed or insufficient split policy parameters"""


class InvalidSettlement(LedgerError):
    """Non-positive settlement amount or a member settling with themselves"""


class GroupNotFound(LedgerError):
    def __init__(self, groupId: str):
        super().__init__(f"Group not found with ID: {groupId}")
        self.groupId = groupId


class MemberNotFound(LedgerError):
    def __init__(self, groupId: str, memberId: str):
        super().__init__(f"Member {memberId} not found in group {groupId}")
        self.groupId = groupId
        self.memberId = memberId


class ExpenseNotFound(LedgerError):
    def __init__(self, expenseId: str):
        super().__init__(f"Expense not found with ID: {expenseId}")
        self.expenseId = expenseId


class ExpenseConflict(LedgerError):
    """The stored expense changed since it was loaded"""


class InvalidExpenseTransition(LedgerError):
    """Raised when an expense is asked to leave the reversed state"""


class NonZeroBalanceOnRemoval(LedgerError):
    """A member (or a whole group) with outstanding debt cannot be removed"""


class PersistenceFailure(LedgerError):
    """The persistence collaborator failed to read or write"""


class LedgerInconsistency(LedgerError):
    """
    Internal invariant violation, e.g. a group whose balances no longer sum to zero.

    This is a programming error. It is never corrected silently.
    """


class DuplicateMember(LedgerError):
    """The user already belongs to the group"""


class InvalidGroupRequest(LedgerError, ValueError):
    """A group or member request with a missing name or a repeated user"""


class DepartedMember(MemberNotFound):
    """
    An expense involves a member who has since left the group

    Its effect on balances can no longer be undone, so it cannot be updated
    or deleted.
    """

    def __init__(self, groupId: str, memberId: str, expenseId: str):
        super().__init__(groupId, memberId)
        self.message = (
            f"Expense {expenseId} involves member {memberId}, who has left group {groupId}; "
            f"it can no longer be updated or deleted"
        )
        self.args = (self.message,)
        self.expenseId = expenseId
