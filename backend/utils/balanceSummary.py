from decimal import Decimal
from typing import Iterable

from pydantic import BaseModel

from models.ledger import Group

ZERO = Decimal("0.00")


class GroupBalanceSummary(BaseModel):
    """Totals shown on a group card"""
    positiveTotal: Decimal
    negativeTotal: Decimal
    isSettled: bool


class UserBalanceSummary(BaseModel):
    """Totals shown on a user's home screen, across all their groups"""
    totalBalance: Decimal
    youOwe: Decimal
    youAreOwed: Decimal


def summarizeGroup(group: Group) -> GroupBalanceSummary:
    # negativeTotal is a magnitude; in a consistent group both totals match
    positive = sum((m.balance for m in group.members if m.balance > 0), ZERO)
    negative = sum((-m.balance for m in group.members if m.balance < 0), ZERO)
    return GroupBalanceSummary(
        positiveTotal=positive,
        negativeTotal=negative,
        isSettled=positive == 0 and negative == 0,
    )


def summarizeUser(groups: Iterable[Group], userId: str) -> UserBalanceSummary:
    youOwe = ZERO
    youAreOwed = ZERO
    for group in groups:
        for member in group.members:
            if member.userId != userId:
                continue
            if member.balance > 0:
                youAreOwed += member.balance
            else:
                youOwe -= member.balance
    return UserBalanceSummary(totalBalance=youAreOwed - youOwe, youOwe=youOwe, youAreOwed=youAreOwed)
