import asyncio
import logging
import uuid
import weakref
from collections import defaultdict
from decimal import Decimal
from functools import partial
from typing import Awaitable, Callable, Dict, List, Optional

from models.ledger import (
    ActivityType,
    Expense,
    ExpenseCategory,
    ExpenseState,
    Member,
    Split,
    SplitType,
    utcNow,
)
from utils.activityFeed import ActivityFeed
from utils.errors import (
    DepartedMember,
    DuplicateMember,
    ExpenseConflict,
    ExpenseNotFound,
    InvalidExpenseTransition,
    InvalidSettlement,
    InvalidSplitParams,
    LedgerError,
    LedgerInconsistency,
    MemberNotFound,
    NonZeroBalanceOnRemoval,
    PersistenceFailure,
)
from utils.expenseStore import ExpenseStore
from utils.formatting import formatCurrency

# Configure module logger
logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


class BalanceLedger:
    """
    Running per-member balances of every group

    A group's balances only change as the direct effect of creating,
    updating, deleting or settling an expense, and always sum to zero.
    All mutations of one group run one at a time under that group's lock;
    different groups proceed independently. Each mutation writes its deltas
    through the store as a unit: if any write fails, the members already
    written are restored before the failure propagates.
    """

    def __init__(self, store: ExpenseStore, activityFeed: Optional[ActivityFeed] = None):
        self.store = store
        self.activityFeed = activityFeed or ActivityFeed(store)
        # A lock lives only while some task holds or waits on it
        self._locks = weakref.WeakValueDictionary()
        # Last committed balances per group, served to readers
        self._snapshots: Dict[str, Dict[str, Decimal]] = {}
        logger.debug("BalanceLedger initialized")

    def groupLock(self, groupId: str) -> asyncio.Lock:
        """The exclusive section serializing every mutation of a group"""
        lock = self._locks.get(groupId)
        if lock is None:
            lock = self._locks[groupId] = asyncio.Lock()
        return lock

    @staticmethod
    def computeDeltas(expense: Expense) -> Dict[str, Decimal]:
        """
        Signed balance change of every member touched by an expense

        The payer is credited with the full amount, then every participant,
        payer included, is debited their own share.
        """
        deltas: Dict[str, Decimal] = defaultdict(lambda: ZERO)
        deltas[expense.paidByMemberId] += expense.amount
        for split in expense.splits:
            deltas[split.memberId] -= split.amount
        return dict(deltas)

    async def getBalances(self, groupId: str) -> Dict[str, Decimal]:
        """
        Committed balance of every member of a group

        Never waits on an in-flight mutation once the group has been read:
        the last committed snapshot is returned.
        """
        snapshot = self._snapshots.get(groupId)
        if snapshot is None:
            async with self.groupLock(groupId):
                snapshot = self._snapshots.get(groupId)
                if snapshot is None:
                    snapshot = await self._load_balances(groupId)
                    self._snapshots[groupId] = snapshot
        return dict(snapshot)

    async def applyExpense(self, expense: Expense) -> None:
        """Apply an expense's deltas to its group's balances as one unit"""
        async with self.groupLock(expense.groupId):
            balances = await self._load_balances(expense.groupId)
            self._validate_expense(expense, balances)
            await self._write_balances(expense.groupId, balances, self.computeDeltas(expense))
        logger.info(f"Applied expense {expense.id} to group {expense.groupId}")

    async def reverseExpense(self, expense: Expense) -> None:
        """Undo exactly the deltas an expense's stored splits applied"""
        async with self.groupLock(expense.groupId):
            balances = await self._load_balances(expense.groupId)
            self._check_reversible(expense, balances)
            self._validate_expense(expense, balances)
            await self._write_balances(expense.groupId, balances, self._negate(self.computeDeltas(expense)))
        logger.info(f"Reversed expense {expense.id} in group {expense.groupId}")

    async def createExpense(self, expense: Expense) -> Expense:
        """
        Persist a pending expense and apply it to the ledger

        Args:
            expense: Expense in the pending state with its splits computed

        Returns:
            The stored expense, now active

        Raises:
            InvalidExpenseTransition: If the expense is not pending
            InvalidSplitParams, MemberNotFound, GroupNotFound: Before any write
            ExpenseConflict: If an expense with the same ID already exists
            PersistenceFailure: After rolling back any balance already written
        """
        if expense.state != ExpenseState.PENDING:
            raise InvalidExpenseTransition(f"Only pending expenses can be created, got {expense.state.value}")

        async with self.groupLock(expense.groupId):
            members = await self.store.loadGroupMembers(expense.groupId)
            balances = self._balances_of(expense.groupId, members)
            self._validate_expense(expense, balances)
            if await self.store.loadExpense(expense.id) is not None:
                raise ExpenseConflict(f"Expense {expense.id} already exists")

            now = utcNow()
            created = expense.model_copy(
                update={"state": ExpenseState.ACTIVE, "version": 0, "createdAt": now, "updatedAt": now}
            )
            await self._commit(
                created.groupId, balances, self.computeDeltas(created), partial(self.store.saveExpense, created)
            )

        names = {member.memberId: member.displayName for member in members}

        logger.info(f"Expense '{created.title}' created with ID {created.id} for {created.amount}")
        activityType = ActivityType.SETTLEMENT_CREATED if created.isSettlement else ActivityType.EXPENSE_CREATED
        await self.activityFeed.record(
            activityType,
            created.groupId,
            self._describe(created, names),
            memberId=created.paidByMemberId,
            targetId=created.id,
            amount=created.amount,
        )
        return created

    async def updateExpense(self, expense: Expense) -> Expense:
        """
        Replace an active expense with a new version

        Equivalent to reversing the stored version and applying the new one,
        committed as a single unit: either both happen or nothing changes.

        Args:
            expense: The edited expense, carrying the version it was loaded at

        Returns:
            The stored expense at its new version

        Raises:
            ExpenseNotFound: If no such expense is stored
            InvalidExpenseTransition: If the stored expense was reversed
            ExpenseConflict: If the expense changed since it was loaded
            DepartedMember: If the stored version involves a member who left the group
        """
        async with self.groupLock(expense.groupId):
            previous = await self.store.loadExpense(expense.id)
            if previous is None:
                raise ExpenseNotFound(expense.id)
            if previous.state != ExpenseState.ACTIVE:
                raise InvalidExpenseTransition(f"Expense {expense.id} is {previous.state.value} and cannot be updated")
            if previous.groupId != expense.groupId:
                raise InvalidSplitParams("An expense cannot move to another group")
            if previous.version != expense.version:
                raise ExpenseConflict(
                    f"Expense {expense.id} was updated to version {previous.version} "
                    f"since version {expense.version} was loaded"
                )

            balances = await self._load_balances(expense.groupId)
            self._check_reversible(previous, balances)
            self._validate_expense(expense, balances)

            updated = expense.model_copy(
                update={
                    "state": ExpenseState.ACTIVE,
                    "version": previous.version + 1,
                    "createdAt": previous.createdAt,
                    "updatedAt": utcNow(),
                }
            )
            deltas = self._merge(self._negate(self.computeDeltas(previous)), self.computeDeltas(updated))
            await self._commit(updated.groupId, balances, deltas, partial(self.store.saveExpense, updated))

        logger.info(f"Expense {updated.id} updated to version {updated.version}")
        await self.activityFeed.record(
            ActivityType.EXPENSE_UPDATED,
            updated.groupId,
            f"'{updated.title}' was updated to {formatCurrency(updated.amount)}",
            memberId=updated.paidByMemberId,
            targetId=updated.id,
            amount=updated.amount,
        )
        return updated

    async def deleteExpense(self, expenseId: str) -> Expense:
        """
        Reverse an active expense and remove it from the store

        Returns:
            The removed expense in the reversed state
        """
        stored = await self.store.loadExpense(expenseId)
        if stored is None:
            raise ExpenseNotFound(expenseId)

        async with self.groupLock(stored.groupId):
            # Reload under the lock: it may have changed while we waited
            expense = await self.store.loadExpense(expenseId)
            if expense is None:
                raise ExpenseNotFound(expenseId)
            if expense.state != ExpenseState.ACTIVE:
                raise InvalidExpenseTransition(f"Expense {expenseId} is already {expense.state.value}")

            balances = await self._load_balances(expense.groupId)
            self._check_reversible(expense, balances)
            self._validate_expense(expense, balances)
            await self._commit(
                expense.groupId,
                balances,
                self._negate(self.computeDeltas(expense)),
                partial(self.store.deleteExpense, expenseId),
            )

        reversed_expense = expense.model_copy(update={"state": ExpenseState.REVERSED, "updatedAt": utcNow()})
        logger.info(f"Expense {expenseId} deleted and reversed")
        await self.activityFeed.record(
            ActivityType.EXPENSE_DELETED,
            expense.groupId,
            f"'{expense.title}' ({formatCurrency(expense.amount)}) was deleted",
            memberId=expense.paidByMemberId,
            targetId=expense.id,
            amount=expense.amount,
        )
        return reversed_expense

    async def settle(self, fromMemberId: str, toMemberId: str, amount, groupId: str) -> Expense:
        """
        Record a settlement between two members of a group

        A settlement is an EXACT expense paid by fromMemberId where
        fromMemberId's own share is zero and toMemberId's share is the whole
        amount.

        Raises:
            InvalidSettlement: If amount is not positive or both members are the same
        """
        try:
            value = Decimal(str(amount))
        except ArithmeticError:
            raise InvalidSettlement(f"Settlement amount is not a number: {amount!r}")
        if not value.is_finite() or value <= 0:
            raise InvalidSettlement(f"Settlement amount must be greater than zero, got {amount}")
        if value != value.quantize(CENT):
            raise InvalidSettlement(f"Settlement amount must have at most two decimals, got {amount}")
        if fromMemberId == toMemberId:
            raise InvalidSettlement("A member cannot settle with themselves")

        value = value.quantize(CENT)
        settlement = Expense(
            id=uuid.uuid4().hex,
            groupId=groupId,
            title="Settlement payment",
            amount=value,
            category=ExpenseCategory.OTHER,
            paidByMemberId=fromMemberId,
            splitType=SplitType.EXACT,
            splits=[
                Split(memberId=fromMemberId, amount=ZERO, isPayer=True),
                Split(memberId=toMemberId, amount=value, isPayer=False),
            ],
            notes=f"Settlement payment from {fromMemberId} to {toMemberId}",
            isSettlement=True,
        )
        logger.info(f"Settling {value} from {fromMemberId} to {toMemberId} in group {groupId}")
        return await self.createExpense(settlement)

    async def addMember(self, groupId: str, userId: str, displayName: str) -> Member:
        """
        Add a member with a zero balance

        Raises:
            DuplicateMember: If the user already belongs to the group
        """
        member = Member(memberId=uuid.uuid4().hex, userId=userId, displayName=displayName, balance=ZERO)
        async with self.groupLock(groupId):
            members = await self.store.loadGroupMembers(groupId)
            if any(existing.userId == userId for existing in members):
                raise DuplicateMember(f"User {userId} is already a member of group {groupId}")
            balances = self._balances_of(groupId, members)
            await self.store.addMember(groupId, member)
            balances[member.memberId] = ZERO
            self._snapshots[groupId] = balances

        logger.info(f"Member {displayName} ({member.memberId}) added to group {groupId}")
        await self.activityFeed.record(
            ActivityType.MEMBER_ADDED,
            groupId,
            f"{displayName} joined the group",
            memberId=member.memberId,
            targetId=member.memberId,
        )
        return member

    async def removeMember(self, groupId: str, memberId: str) -> None:
        """
        Remove a member from a group

        Raises:
            MemberNotFound: If the member is not in the group
            NonZeroBalanceOnRemoval: If the member still owes or is owed money
        """
        async with self.groupLock(groupId):
            members = await self.store.loadGroupMembers(groupId)
            member = next((m for m in members if m.memberId == memberId), None)
            if member is None:
                raise MemberNotFound(groupId, memberId)
            if member.balance != 0:
                raise NonZeroBalanceOnRemoval(
                    f"{member.displayName} has an outstanding balance of "
                    f"{formatCurrency(member.balance, signed=True)} and cannot leave the group"
                )

            await self.store.removeMember(groupId, memberId)
            self._snapshots[groupId] = {m.memberId: m.balance for m in members if m.memberId != memberId}

        logger.info(f"Member {memberId} removed from group {groupId}")
        await self.activityFeed.record(
            ActivityType.MEMBER_REMOVED,
            groupId,
            f"{member.displayName} left the group",
            memberId=memberId,
            targetId=memberId,
        )

    async def dropGroup(self, groupId: str) -> None:
        """
        Delete a group once every member is settled up

        Raises:
            NonZeroBalanceOnRemoval: If any member balance is not zero
        """
        async with self.groupLock(groupId):
            balances = await self._load_balances(groupId)
            outstanding = [memberId for memberId, balance in balances.items() if balance != 0]
            if outstanding:
                raise NonZeroBalanceOnRemoval(
                    f"Group {groupId} has {len(outstanding)} member(s) with an outstanding balance"
                )
            await self.store.deleteGroup(groupId)
            self._snapshots.pop(groupId, None)
        self._locks.pop(groupId, None)
        logger.info(f"Group {groupId} deleted")

    async def _load_balances(self, groupId: str) -> Dict[str, Decimal]:
        return self._balances_of(groupId, await self.store.loadGroupMembers(groupId))

    @staticmethod
    def _balances_of(groupId: str, members: List[Member]) -> Dict[str, Decimal]:
        balances = {member.memberId: member.balance for member in members}
        total = sum(balances.values(), ZERO)
        if total != 0:
            logger.critical(f"Group {groupId} balances sum to {total} before any change")
            raise LedgerInconsistency(f"Group {groupId} balances do not sum to zero")
        return balances

    @staticmethod
    def _check_reversible(expense: Expense, balances: Dict[str, Decimal]) -> None:
        """An applied expense can only be undone while everyone it touched is still in the group"""
        for memberId in [expense.paidByMemberId] + [split.memberId for split in expense.splits]:
            if memberId not in balances:
                logger.warning(f"Expense {expense.id} references departed member {memberId}")
                raise DepartedMember(expense.groupId, memberId, expense.id)

    @staticmethod
    def _validate_expense(expense: Expense, balances: Dict[str, Decimal]) -> None:
        """Everything that can be checked before the first write"""
        if expense.amount <= 0 or expense.amount != expense.amount.quantize(CENT):
            raise InvalidSplitParams(f"Expense amount must be positive with cent precision, got {expense.amount}")
        if not expense.splits:
            raise InvalidSplitParams("An expense needs at least one split")

        memberIds = [split.memberId for split in expense.splits]
        if len(set(memberIds)) != len(memberIds):
            raise InvalidSplitParams("Each member can appear only once in the splits")
        for memberId in memberIds + [expense.paidByMemberId]:
            if memberId not in balances:
                raise MemberNotFound(expense.groupId, memberId)

        payers = [split.memberId for split in expense.splits if split.isPayer]
        if payers != [expense.paidByMemberId]:
            raise InvalidSplitParams(f"Exactly one split must belong to the payer {expense.paidByMemberId}")

        if any(split.amount < 0 or split.amount != split.amount.quantize(CENT) for split in expense.splits):
            raise InvalidSplitParams("Split amounts must be non-negative with cent precision")
        total = sum((split.amount for split in expense.splits), ZERO)
        if total != expense.amount:
            # Applying it would leave the group off zero by the difference
            raise InvalidSplitParams(f"Splits add up to {total}, expected exactly {expense.amount}")

    async def _commit(self,
                      groupId: str,
                      balances: Dict[str, Decimal],
                      deltas: Dict[str, Decimal],
                      record: Callable[[], Awaitable[None]]
                      ) -> None:
        """Write balances, then the expense record; undo the balances if the record fails"""
        updated = await self._write_balances(groupId, balances, deltas, publish=False)
        try:
            await record()
        except Exception as e:
            logger.error(f"Failed to store expense record for group {groupId}, rolling back: {str(e)}", exc_info=True)
            await self._rollback(groupId, balances, [memberId for memberId in deltas if deltas[memberId] != 0])
            if isinstance(e, LedgerError):
                raise
            raise PersistenceFailure(f"Failed to store expense record: {str(e)}") from e

        self._snapshots[groupId] = updated

    async def _write_balances(self,
                              groupId: str,
                              balances: Dict[str, Decimal],
                              deltas: Dict[str, Decimal],
                              publish: bool = True
                              ) -> Dict[str, Decimal]:
        updated = dict(balances)
        for memberId, delta in deltas.items():
            if memberId not in balances:
                raise MemberNotFound(groupId, memberId)
            updated[memberId] = balances[memberId] + delta

        total = sum(updated.values(), ZERO)
        if total != 0:
            logger.critical(f"Deltas {deltas} would leave group {groupId} at {total}")
            raise LedgerInconsistency(f"Group {groupId} balances would not sum to zero")

        logger.debug(f"Writing deltas to group {groupId}: { {k: str(v) for k, v in deltas.items()} }")
        written: List[str] = []
        try:
            for memberId, delta in deltas.items():
                if delta == 0:
                    continue
                await self.store.saveMemberBalance(groupId, memberId, updated[memberId])
                written.append(memberId)
        except Exception as e:
            logger.error(
                f"Balance write failed after {len(written)} of {len(deltas)} members in group {groupId}, "
                f"rolling back: {str(e)}",
                exc_info=True,
            )
            await self._rollback(groupId, balances, written)
            if isinstance(e, PersistenceFailure):
                raise
            raise PersistenceFailure(f"Failed to save member balance: {str(e)}") from e

        if publish:
            self._snapshots[groupId] = updated
        return updated

    async def _rollback(self, groupId: str, balances: Dict[str, Decimal], written: List[str]) -> None:
        for memberId in reversed(written):
            try:
                await self.store.saveMemberBalance(groupId, memberId, balances[memberId])
            except Exception as e:
                self._snapshots.pop(groupId, None)
                logger.critical(f"Rollback of member {memberId} in group {groupId} failed: {str(e)}", exc_info=True)
                raise LedgerInconsistency(f"Group {groupId} could not be rolled back") from e
        logger.info(f"Rolled back {len(written)} balance write(s) in group {groupId}")

    @staticmethod
    def _negate(deltas: Dict[str, Decimal]) -> Dict[str, Decimal]:
        return {memberId: -delta for memberId, delta in deltas.items()}

    @staticmethod
    def _merge(first: Dict[str, Decimal], second: Dict[str, Decimal]) -> Dict[str, Decimal]:
        merged = dict(first)
        for memberId, delta in second.items():
            merged[memberId] = merged.get(memberId, ZERO) + delta
        return merged

    @staticmethod
    def _describe(expense: Expense, names: Dict[str, str]) -> str:
        payer = names.get(expense.paidByMemberId, expense.paidByMemberId)
        if expense.isSettlement:
            receiverId = next(split.memberId for split in expense.splits if not split.isPayer)
            return f"{payer} settled {formatCurrency(expense.amount)} with {names.get(receiverId, receiverId)}"
        return f"{payer} added '{expense.title}' for {formatCurrency(expense.amount)}"
