from decimal import Decimal

import pytest

from models.ledger import Expense, Group, Member, SplitType
from utils.balanceLedger import BalanceLedger
from utils.expenseStore import InMemoryExpenseStore
from utils.splitAllocator import SplitAllocator

GROUP_ID = "apartment"


def seedGroup(store: InMemoryExpenseStore, groupId: str = GROUP_ID, memberIds=("A", "B", "C")) -> Group:
    """Put a group with zero balances straight into the store, with readable member IDs"""
    group = Group(
        id=groupId,
        name="Apartment",
        members=[
            Member(memberId=memberId, userId=f"user-{memberId}", displayName=f"Member {memberId}")
            for memberId in memberIds
        ],
    )
    store.groups[groupId] = group
    return group


def makeExpense(amount, payerId, participantIds, splitType=SplitType.EQUAL, policyParams=None,
                groupId=GROUP_ID, expenseId=None, title="Groceries") -> Expense:
    splits = SplitAllocator().allocate(amount, splitType, participantIds, policyParams, payerId)
    return Expense(
        id=expenseId or f"exp-{title}-{amount}",
        groupId=groupId,
        title=title,
        amount=Decimal(str(amount)),
        paidByMemberId=payerId,
        splitType=splitType,
        policyParams=policyParams,
        splits=splits,
    )


def storedBalances(store: InMemoryExpenseStore, groupId: str = GROUP_ID):
    return {m.memberId: m.balance for m in store.groups[groupId].members}


@pytest.fixture
def store():
    store = InMemoryExpenseStore()
    seedGroup(store)
    return store


@pytest.fixture
def ledger(store):
    return BalanceLedger(store)


@pytest.fixture
def allocator():
    return SplitAllocator()


def splitAmounts(splits):
    return [split.amount for split in splits]


def total(splits):
    return sum((split.amount for split in splits), Decimal("0"))


