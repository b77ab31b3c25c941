import logging
import uuid
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from models.expenseRequest import (
    ExpenseRequest,
    ExpenseUpdateRequest,
    GroupRequest,
    GroupUpdateRequest,
    MemberRequest,
    SettlementRequest,
    SplitRequest,
)
from models.ledger import Expense, SplitType, utcNow
from utils.activityFeed import ActivityFeed
from utils.balanceLedger import BalanceLedger
from utils.balanceSummary import summarizeGroup, summarizeUser
from utils.errors import (
    DepartedMember,
    DuplicateMember,
    ExpenseConflict,
    ExpenseNotFound,
    GroupNotFound,
    InvalidExpenseTransition,
    InvalidGroupRequest,
    InvalidSettlement,
    InvalidSplitParams,
    LedgerError,
    LedgerInconsistency,
    MemberNotFound,
    NonZeroBalanceOnRemoval,
    PersistenceFailure,
)
from utils.expenseStore import InMemoryExpenseStore
from utils.formatting import formatCurrency, formatRelativeTime
from utils.groupManager import GroupManager
from utils.settings import getSettings
from utils.splitAllocator import SplitAllocator

settings = getSettings()

# Configure logging
logging.basicConfig(
    level=settings.logLevel,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# Create FastAPI app with proper metadata
app = FastAPI(
    title="Shared Expense Ledger API",
    description="API for splitting group expenses and tracking who owes whom",
    version="1.0.0",
)

# Add gzip compression for faster responses
app.add_middleware(GZipMiddleware, minimum_size=1000)

# The ledger holds the per-group locks, so it must be shared by every request
_store = InMemoryExpenseStore(latency=settings.storeLatency)
_ledger = BalanceLedger(_store, ActivityFeed(_store))

_STATUS_CODES = {
    InvalidSplitParams: 400,
    InvalidSettlement: 400,
    InvalidGroupRequest: 400,
    GroupNotFound: 404,
    MemberNotFound: 404,
    ExpenseNotFound: 404,
    ExpenseConflict: 409,
    InvalidExpenseTransition: 409,
    NonZeroBalanceOnRemoval: 409,
    DuplicateMember: 409,
    DepartedMember: 409,
    PersistenceFailure: 503,
    LedgerInconsistency: 500,
}


def get_ledger() -> BalanceLedger:
    """Return the shared BalanceLedger instance"""
    return _ledger


def get_group_manager(ledger: BalanceLedger = Depends(get_ledger)) -> GroupManager:
    """Create a new GroupManager over the shared ledger"""
    return GroupManager(ledger)


def get_allocator() -> SplitAllocator:
    """Create a new SplitAllocator instance"""
    return SplitAllocator(tolerance=settings.splitTolerance)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": {"status": "error", "message": message}})


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    """Map ledger errors to HTTP responses without leaking internal state"""
    status_code = next((_STATUS_CODES[cls] for cls in type(exc).__mro__ if cls in _STATUS_CODES), 500)

    if isinstance(exc, LedgerInconsistency):
        logger.critical(f"Ledger inconsistency on {request.url.path}: {exc.message}")
        return _error(status_code, "Something went wrong. Please try again later.")
    if isinstance(exc, PersistenceFailure):
        logger.error(f"Persistence failure on {request.url.path}: {exc.message}")
        return _error(status_code, "The service is temporarily unavailable. Please try again.")

    logger.warning(f"Rejected {request.method} {request.url.path}: {exc.message}")
    return _error(status_code, exc.message)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    """Any other ValueError is unexpected here; its text stays in the log"""
    logger.error(f"Unexpected error on {request.method} {request.url.path}: {str(exc)}", exc_info=True)
    return _error(500, "Something went wrong. Please try again later.")


def _dump_expense(expense: Expense) -> dict:
    data = expense.model_dump(mode="json")
    data["amountFormatted"] = formatCurrency(expense.amount, symbol=settings.currencySymbol)
    return data


def _kept_params(splitType: SplitType, policyParams: Optional[list]) -> Optional[list]:
    # Equal splits take no parameters, so none are stored
    return None if splitType == SplitType.EQUAL else policyParams


def _dump_group(group) -> dict:
    data = group.model_dump(mode="json")
    for member in data["members"]:
        member["balanceFormatted"] = formatCurrency(member["balance"], signed=True, symbol=settings.currencySymbol)
    data["summary"] = summarizeGroup(group).model_dump(mode="json")
    return data


@app.get("/")
async def root():
    """Root endpoint to verify API is running"""
    return {"message": "Welcome to the Shared Expense Ledger API", "status": "operational"}


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring"""
    return {"status": "healthy", "timestamp": datetime.now().isoformat()}


@app.post("/groups")
async def create_group(groupData: GroupRequest, groups: GroupManager = Depends(get_group_manager)):
    """
    Create a group with its founding members

    Returns:
        JSON with the created group, every member at a zero balance
    """
    logger.info(f"Creating group: {groupData.name}")
    group = await groups.createGroup(
        name=groupData.name,
        category=groupData.category,
        description=groupData.description,
        members=[(m.userId, m.displayName) for m in groupData.members],
    )
    return {"status": "success", "group": _dump_group(group)}


@app.get("/groups")
async def get_groups(userId: Optional[str] = None, groups: GroupManager = Depends(get_group_manager)):
    """
    Get all groups, optionally only those a user belongs to

    Returns:
        JSON with the groups keyed by ID
    """
    logger.info("Fetching groups")
    result = {group.id: _dump_group(group) for group in await groups.listGroups(userId)}
    return {"status": "success", "groups": result}


@app.get("/groups/{groupId}")
async def get_group(groupId: str, groups: GroupManager = Depends(get_group_manager)):
    return {"status": "success", "group": _dump_group(await groups.getGroup(groupId))}


@app.patch("/groups/{groupId}")
async def update_group(groupId: str, updates: GroupUpdateRequest, groups: GroupManager = Depends(get_group_manager)):
    group = await groups.updateGroup(groupId, **updates.model_dump(exclude_none=True))
    return {"status": "success", "group": _dump_group(group)}


@app.delete("/groups/{groupId}")
async def delete_group(groupId: str, groups: GroupManager = Depends(get_group_manager)):
    """Delete a group; refused while any member has an outstanding balance"""
    await groups.deleteGroup(groupId)
    return {"status": "success", "message": "Group deleted"}


@app.post("/groups/{groupId}/members")
async def add_member(groupId: str, memberData: MemberRequest, groups: GroupManager = Depends(get_group_manager)):
    member = await groups.addMember(groupId, memberData.userId, memberData.displayName)
    return {"status": "success", "member": member.model_dump(mode="json")}


@app.delete("/groups/{groupId}/members/{memberId}")
async def remove_member(groupId: str, memberId: str, groups: GroupManager = Depends(get_group_manager)):
    """Remove a member; refused unless their balance is exactly zero"""
    await groups.removeMember(groupId, memberId)
    return {"status": "success", "message": "Member removed"}


@app.get("/groups/{groupId}/balances")
async def get_balances(groupId: str, ledger: BalanceLedger = Depends(get_ledger)):
    """
    Get the committed balance of every member of a group

    Returns:
        JSON with raw and formatted balances per member ID
    """
    balances = await ledger.getBalances(groupId)
    return {
        "status": "success",
        "balances": {
            memberId: {
                "balance": str(balance),
                "balanceFormatted": formatCurrency(balance, signed=True, symbol=settings.currencySymbol),
            }
            for memberId, balance in balances.items()
        },
    }


@app.post("/splits/preview")
async def preview_splits(splitData: SplitRequest, allocator: SplitAllocator = Depends(get_allocator)):
    """
    Compute an allocation without recording anything

    Returns:
        JSON with the splits and whether they add up exactly to the amount
    """
    splits = allocator.allocate(
        splitData.amount,
        splitData.splitType,
        splitData.participantIds,
        splitData.policyParams,
        splitData.payerId,
        reconcile=settings.reconcileRounding,
    )
    return {
        "status": "success",
        "splits": [split.model_dump(mode="json") for split in splits],
        "reconciled": allocator.reconciles(splits, splitData.amount),
    }


@app.post("/groups/{groupId}/expenses")
async def create_expense(
    groupId: str,
    expenseData: ExpenseRequest,
    ledger: BalanceLedger = Depends(get_ledger),
    allocator: SplitAllocator = Depends(get_allocator),
):
    """
    Create an expense in a group and update member balances

    Args:
        groupId: The group the expense belongs to
        expenseData: The expense request data containing all details

    Returns:
        JSON with the stored expense
    """
    logger.info(f"Creating expense '{expenseData.title}' for {expenseData.amount} in group {groupId}")

    splits = allocator.allocate(
        expenseData.amount,
        expenseData.splitType,
        expenseData.participantIds,
        expenseData.policyParams,
        expenseData.payerId,
        reconcile=settings.reconcileRounding,
    )
    expense = Expense(
        id=uuid.uuid4().hex,
        groupId=groupId,
        title=expenseData.title,
        amount=allocator.roundCurrency(expenseData.amount),
        category=expenseData.category,
        date=expenseData.date or utcNow(),
        paidByMemberId=expenseData.payerId,
        splitType=expenseData.splitType,
        policyParams=_kept_params(expenseData.splitType, expenseData.policyParams),
        splits=splits,
        notes=expenseData.notes,
    )
    created = await ledger.createExpense(expense)
    logger.info(f"Expense created successfully with ID: {created.id}")
    return {"status": "success", "expense": _dump_expense(created), "message": "Expense created successfully"}


@app.get("/groups/{groupId}/expenses")
async def get_group_expenses(groupId: str, ledger: BalanceLedger = Depends(get_ledger)):
    """Get the expenses of a group, newest first"""
    expenses = await ledger.store.listExpenses(groupId)
    return {"status": "success", "expenses": [_dump_expense(e) for e in expenses]}


@app.get("/expenses/{expenseId}")
async def get_expense(expenseId: str, ledger: BalanceLedger = Depends(get_ledger)):
    expense = await ledger.store.loadExpense(expenseId)
    if expense is None:
        raise ExpenseNotFound(expenseId)
    return {"status": "success", "expense": _dump_expense(expense)}


@app.put("/expenses/{expenseId}")
async def update_expense(
    expenseId: str,
    updates: ExpenseUpdateRequest,
    ledger: BalanceLedger = Depends(get_ledger),
    allocator: SplitAllocator = Depends(get_allocator),
):
    """
    Update an expense, recomputing its splits if any allocation field changed

    Returns:
        JSON with the expense at its new version
    """
    stored = await ledger.store.loadExpense(expenseId)
    if stored is None:
        raise ExpenseNotFound(expenseId)
    if stored.isSettlement:
        raise InvalidSettlement("Settlements cannot be edited; delete and record a new one")

    changes = updates.model_dump(
        include={"title", "category", "date", "notes"}, exclude_none=True
    )
    if updates.changesAllocation():
        splitType = updates.splitType or stored.splitType
        participantIds = updates.participantIds or [split.memberId for split in stored.splits]
        policyParams = updates.policyParams
        if policyParams is None and splitType == stored.splitType and updates.participantIds is None:
            policyParams = stored.policyParams
        amount = updates.amount if updates.amount is not None else stored.amount
        payerId = updates.payerId or stored.paidByMemberId

        splits = allocator.allocate(
            amount, splitType, participantIds, policyParams, payerId, reconcile=settings.reconcileRounding
        )
        changes.update(
            amount=allocator.roundCurrency(amount),
            splitType=splitType,
            policyParams=_kept_params(splitType, policyParams),
            paidByMemberId=payerId,
            splits=splits,
        )

    logger.info(f"Updating expense {expenseId}: {sorted(changes)}")
    updated = await ledger.updateExpense(stored.model_copy(update=changes))
    return {"status": "success", "expense": _dump_expense(updated), "message": "Expense updated successfully"}


@app.delete("/expenses/{expenseId}")
async def delete_expense(expenseId: str, ledger: BalanceLedger = Depends(get_ledger)):
    """Delete an expense and reverse its effect on member balances"""
    await ledger.deleteExpense(expenseId)
    return {"status": "success", "message": "Expense deleted successfully"}


@app.post("/groups/{groupId}/settlements")
async def create_settlement(groupId: str, settlementData: SettlementRequest, ledger: BalanceLedger = Depends(get_ledger)):
    """
    Record a payment between two members

    Returns:
        JSON with the settlement expense
    """
    settlement = await ledger.settle(
        settlementData.fromMemberId, settlementData.toMemberId, settlementData.amount, groupId
    )
    return {"status": "success", "settlement": _dump_expense(settlement)}


@app.get("/users/{userId}/summary")
async def get_user_summary(userId: str, groups: GroupManager = Depends(get_group_manager)):
    """
    Get how much a user owes and is owed across all their groups

    Returns:
        JSON with raw and formatted totals
    """
    summary = summarizeUser(await groups.listGroups(userId), userId)
    return {
        "status": "success",
        "summary": summary.model_dump(mode="json"),
        "formatted": {
            "totalBalance": formatCurrency(summary.totalBalance, signed=True, symbol=settings.currencySymbol),
            "youOwe": formatCurrency(summary.youOwe, symbol=settings.currencySymbol),
            "youAreOwed": formatCurrency(summary.youAreOwed, symbol=settings.currencySymbol),
        },
    }


@app.get("/activity")
async def get_activity(
    groupId: Optional[str] = None, limit: Optional[int] = None, ledger: BalanceLedger = Depends(get_ledger)
):
    """Get the activity feed, newest first"""
    activities = await ledger.activityFeed.list(groupId, limit)
    now = utcNow()
    return {
        "status": "success",
        "activities": [
            {**activity.model_dump(mode="json"), "timeAgo": formatRelativeTime(activity.createdAt, now)}
            for activity in activities
        ],
    }
