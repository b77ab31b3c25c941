import asyncio
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Dict, List, Optional

from models.ledger import Activity, Expense, Group, Member
from utils.errors import ExpenseConflict, ExpenseNotFound, GroupNotFound, MemberNotFound

# Configure module logger
logger = logging.getLogger(__name__)


class ExpenseStore(ABC):
    """
    Persistence collaborator of the balance ledger

    Every method is a coroutine: implementations are expected to talk to a
    database or a remote API. Failures are raised as PersistenceFailure;
    callers never get a partial success back.
    """

    @abstractmethod
    async def loadGroupMembers(self, groupId: str) -> List[Member]:
        """Members of a group with their stored balances; GroupNotFound if missing"""

    @abstractmethod
    async def saveMemberBalance(self, groupId: str, memberId: str, newBalance: Decimal) -> None:
        """Overwrite one member's balance"""

    @abstractmethod
    async def loadExpense(self, expenseId: str) -> Optional[Expense]:
        """The stored expense or None"""

    @abstractmethod
    async def saveExpense(self, expense: Expense) -> None:
        """
        Insert or update an expense

        Raises:
            ExpenseConflict: If expense.version is not exactly one above the
                stored version (or 0 for a new expense)
        """

    @abstractmethod
    async def deleteExpense(self, expenseId: str) -> None:
        """Remove an expense; ExpenseNotFound if missing"""

    @abstractmethod
    async def listExpenses(self, groupId: str) -> List[Expense]:
        """All stored expenses of a group, newest first"""

    @abstractmethod
    async def saveGroup(self, group: Group) -> None:
        """Insert or update a group's descriptive fields and members"""

    @abstractmethod
    async def loadGroup(self, groupId: str) -> Optional[Group]:
        """The stored group or None"""

    @abstractmethod
    async def listGroups(self) -> List[Group]:
        """All stored groups"""

    @abstractmethod
    async def deleteGroup(self, groupId: str) -> None:
        """Remove a group with its expenses"""

    @abstractmethod
    async def addMember(self, groupId: str, member: Member) -> None:
        """Add a member to a group"""

    @abstractmethod
    async def removeMember(self, groupId: str, memberId: str) -> None:
        """Remove a member from a group"""

    @abstractmethod
    async def saveActivity(self, activity: Activity) -> None:
        """Append an entry to the activity feed"""

    @abstractmethod
    async def listActivities(self, groupId: Optional[str] = None) -> List[Activity]:
        """Activity entries, newest first, optionally restricted to one group"""


class InMemoryExpenseStore(ExpenseStore):
    """
    Process-local ExpenseStore

    Models are deep-copied on the way in and out so no caller can mutate
    stored state by reference. An optional latency is awaited on every call
    to model a real backend's I/O.
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.groups: Dict[str, Group] = {}
        self.expenses: Dict[str, Expense] = {}
        self.activities: List[Activity] = []
        logger.debug(f"InMemoryExpenseStore initialized with latency {latency}s")

    async def _io(self):
        await asyncio.sleep(self.latency)

    def _get_group(self, groupId: str) -> Group:
        group = self.groups.get(groupId)
        if group is None:
            raise GroupNotFound(groupId)
        return group

    async def loadGroupMembers(self, groupId: str) -> List[Member]:
        await self._io()
        return [member.model_copy(deep=True) for member in self._get_group(groupId).members]

    async def saveMemberBalance(self, groupId: str, memberId: str, newBalance: Decimal) -> None:
        await self._io()
        member = self._get_group(groupId).getMember(memberId)
        if member is None:
            raise MemberNotFound(groupId, memberId)
        member.balance = Decimal(newBalance)

    async def loadExpense(self, expenseId: str) -> Optional[Expense]:
        await self._io()
        expense = self.expenses.get(expenseId)
        return expense.model_copy(deep=True) if expense else None

    async def saveExpense(self, expense: Expense) -> None:
        await self._io()
        stored = self.expenses.get(expense.id)
        expectedVersion = stored.version + 1 if stored else 0
        if expense.version != expectedVersion:
            raise ExpenseConflict(
                f"Expense {expense.id} is at version {stored.version if stored else 'none'}, "
                f"cannot save version {expense.version}"
            )
        self.expenses[expense.id] = expense.model_copy(deep=True)

    async def deleteExpense(self, expenseId: str) -> None:
        await self._io()
        if self.expenses.pop(expenseId, None) is None:
            raise ExpenseNotFound(expenseId)

    async def listExpenses(self, groupId: str) -> List[Expense]:
        await self._io()
        self._get_group(groupId)
        expenses = [e for e in self.expenses.values() if e.groupId == groupId]
        expenses.sort(key=lambda e: (e.date, e.createdAt), reverse=True)
        return [e.model_copy(deep=True) for e in expenses]

    async def saveGroup(self, group: Group) -> None:
        await self._io()
        self.groups[group.id] = group.model_copy(deep=True)

    async def loadGroup(self, groupId: str) -> Optional[Group]:
        await self._io()
        group = self.groups.get(groupId)
        return group.model_copy(deep=True) if group else None

    async def listGroups(self) -> List[Group]:
        await self._io()
        return [group.model_copy(deep=True) for group in self.groups.values()]

    async def deleteGroup(self, groupId: str) -> None:
        await self._io()
        self._get_group(groupId)
        del self.groups[groupId]
        for expenseId in [e.id for e in self.expenses.values() if e.groupId == groupId]:
            del self.expenses[expenseId]

    async def addMember(self, groupId: str, member: Member) -> None:
        await self._io()
        self._get_group(groupId).members.append(member.model_copy(deep=True))

    async def removeMember(self, groupId: str, memberId: str) -> None:
        await self._io()
        group = self._get_group(groupId)
        if group.getMember(memberId) is None:
            raise MemberNotFound(groupId, memberId)
        group.members = [m for m in group.members if m.memberId != memberId]

    async def saveActivity(self, activity: Activity) -> None:
        await self._io()
        self.activities.append(activity.model_copy(deep=True))

    async def listActivities(self, groupId: Optional[str] = None) -> List[Activity]:
        await self._io()
        activities = [a for a in self.activities if groupId is None or a.groupId == groupId]
        activities.sort(key=lambda a: a.createdAt, reverse=True)
        return [a.model_copy(deep=True) for a in activities]
