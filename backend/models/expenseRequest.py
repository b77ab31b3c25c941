from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from models.ledger import ExpenseCategory, SplitType


class SplitRequest(BaseModel):
    """Input collected by the expense form to compute an allocation"""
    amount: Decimal = Field(description="Total amount as a decimal string, e.g. '10.00'")
    splitType: SplitType = SplitType.EQUAL
    participantIds: List[str]
    policyParams: Optional[List[Decimal]] = Field(
        None, description="Percentages, exact amounts or share weights, one per participant"
    )
    payerId: str


class ExpenseRequest(SplitRequest):
    title: str
    category: ExpenseCategory = ExpenseCategory.OTHER
    date: Optional[datetime] = None
    notes: Optional[str] = None


class ExpenseUpdateRequest(BaseModel):
    """Partial update; any allocation field given causes the splits to be recomputed"""
    title: Optional[str] = None
    category: Optional[ExpenseCategory] = None
    date: Optional[datetime] = None
    notes: Optional[str] = None
    amount: Optional[Decimal] = None
    splitType: Optional[SplitType] = None
    participantIds: Optional[List[str]] = None
    policyParams: Optional[List[Decimal]] = None
    payerId: Optional[str] = None

    def changesAllocation(self) -> bool:
        return any(
            value is not None
            for value in (self.amount, self.splitType, self.participantIds, self.policyParams, self.payerId)
        )


class SettlementRequest(BaseModel):
    fromMemberId: str
    toMemberId: str
    amount: Decimal


class MemberRequest(BaseModel):
    userId: str
    displayName: str


class GroupRequest(BaseModel):
    name: str
    category: Optional[str] = None
    description: Optional[str] = None
    members: List[MemberRequest] = Field(default_factory=list)


class GroupUpdateRequest(BaseModel):
    name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
