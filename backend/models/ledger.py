from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


def utcNow() -> datetime:
    return datetime.now(timezone.utc)


class SplitType(str, Enum):
    """Rule used to partition an expense amount across participants"""
    EQUAL = "equal"
    PERCENTAGE = "percentage"
    EXACT = "exact"
    SHARES = "shares"


class ExpenseCategory(str, Enum):
    FOOD = "food"
    RENT = "rent"
    UTILITIES = "utilities"
    ENTERTAINMENT = "entertainment"
    TRANSPORTATION = "transportation"
    SHOPPING = "shopping"
    TRAVEL = "travel"
    HEALTH = "health"
    OTHER = "other"


class ExpenseState(str, Enum):
    """
    Lifecycle of an expense in the ledger

    pending -> active on create, active -> active on update,
    active -> reversed on delete. Nothing leaves reversed.
    """
    PENDING = "pending"
    ACTIVE = "active"
    REVERSED = "reversed"


class ActivityType(str, Enum):
    EXPENSE_CREATED = "expense_created"
    EXPENSE_UPDATED = "expense_updated"
    EXPENSE_DELETED = "expense_deleted"
    SETTLEMENT_CREATED = "settlement_created"
    GROUP_CREATED = "group_created"
    MEMBER_ADDED = "member_added"
    MEMBER_REMOVED = "member_removed"


class Member(BaseModel):
    """A participant within a group; balance > 0 means the group owes them"""
    memberId: str = Field(description="ID of the membership inside the group")
    userId: str = Field(description="ID of the user behind the membership")
    displayName: str
    balance: Decimal = Field(default=Decimal("0.00"), description="Signed running balance")


class Split(BaseModel):
    """One participant's share of an expense"""
    memberId: str
    amount: Decimal
    isPayer: bool = False


class Expense(BaseModel):
    """An expense recorded in a group together with its allocation"""
    id: str
    groupId: str
    title: str
    amount: Decimal = Field(description="Total amount, positive, cent precision")
    category: ExpenseCategory = ExpenseCategory.OTHER
    date: datetime = Field(default_factory=utcNow)
    paidByMemberId: str
    splitType: SplitType
    policyParams: Optional[List[Decimal]] = Field(None, description="Parameters the splits were computed from")
    splits: List[Split]
    notes: Optional[str] = None
    isSettlement: bool = False
    state: ExpenseState = ExpenseState.PENDING
    version: int = 0
    createdAt: datetime = Field(default_factory=utcNow)
    updatedAt: datetime = Field(default_factory=utcNow)


class Group(BaseModel):
    id: str
    name: str
    category: Optional[str] = None
    description: Optional[str] = None
    members: List[Member] = Field(default_factory=list)
    createdAt: datetime = Field(default_factory=utcNow)
    updatedAt: datetime = Field(default_factory=utcNow)

    def getMember(self, memberId: str) -> Optional[Member]:
        for member in self.members:
            if member.memberId == memberId:
                return member
        return None


class Activity(BaseModel):
    """An entry in the activity feed"""
    id: str
    type: ActivityType
    groupId: str
    memberId: Optional[str] = None
    targetId: Optional[str] = Field(None, description="ID of the expense or member the entry is about")
    message: str
    amount: Optional[Decimal] = None
    createdAt: datetime = Field(default_factory=utcNow)
