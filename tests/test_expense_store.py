import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from conftest import GROUP_ID, makeExpense
from models.ledger import Activity, ActivityType, Member
from utils.errors import ExpenseConflict, ExpenseNotFound, GroupNotFound, MemberNotFound


def run(coroutine):
    return asyncio.run(coroutine)


def test_loaded_members_are_copies(store):
    members = run(store.loadGroupMembers(GROUP_ID))
    members[0].balance = Decimal("100")
    assert run(store.loadGroupMembers(GROUP_ID))[0].balance == 0


def test_save_member_balance(store):
    run(store.saveMemberBalance(GROUP_ID, "B", Decimal("-12.50")))
    assert run(store.loadGroupMembers(GROUP_ID))[1].balance == Decimal("-12.50")

    with pytest.raises(MemberNotFound):
        run(store.saveMemberBalance(GROUP_ID, "Z", Decimal("1")))
    with pytest.raises(GroupNotFound):
        run(store.saveMemberBalance("nowhere", "A", Decimal("1")))


def test_expense_versions(store):
    expense = makeExpense("30", "A", ["A", "B"], expenseId="e1")
    run(store.saveExpense(expense))

    with pytest.raises(ExpenseConflict):
        run(store.saveExpense(expense))

    run(store.saveExpense(expense.model_copy(update={"version": 1, "title": "Taxi"})))
    assert run(store.loadExpense("e1")).title == "Taxi"

    with pytest.raises(ExpenseConflict):
        run(store.saveExpense(expense.model_copy(update={"version": 3})))


def test_delete_expense(store):
    run(store.saveExpense(makeExpense("30", "A", ["A", "B"], expenseId="e1")))
    run(store.deleteExpense("e1"))
    assert run(store.loadExpense("e1")) is None
    with pytest.raises(ExpenseNotFound):
        run(store.deleteExpense("e1"))


def test_list_expenses_newest_first(store):
    for day, expenseId in [(3, "mid"), (1, "old"), (9, "new")]:
        expense = makeExpense("10", "A", ["A", "B"], expenseId=expenseId)
        run(store.saveExpense(expense.model_copy(update={"date": datetime(2024, 4, day, tzinfo=timezone.utc)})))

    assert [e.id for e in run(store.listExpenses(GROUP_ID))] == ["new", "mid", "old"]
    with pytest.raises(GroupNotFound):
        run(store.listExpenses("nowhere"))


def test_members_and_groups(store):
    run(store.addMember(GROUP_ID, Member(memberId="D", userId="user-D", displayName="Dana")))
    assert [m.memberId for m in run(store.loadGroupMembers(GROUP_ID))] == ["A", "B", "C", "D"]

    run(store.removeMember(GROUP_ID, "A"))
    with pytest.raises(MemberNotFound):
        run(store.removeMember(GROUP_ID, "A"))

    run(store.saveExpense(makeExpense("10", "B", ["B", "C"], expenseId="e1")))
    run(store.deleteGroup(GROUP_ID))
    assert run(store.loadGroup(GROUP_ID)) is None
    assert run(store.loadExpense("e1")) is None
    with pytest.raises(GroupNotFound):
        run(store.loadGroupMembers(GROUP_ID))


def test_activities_filtered_by_group(store):
    for n, groupId in enumerate(["g1", "g2", "g1"]):
        run(store.saveActivity(Activity(
            id=f"a{n}",
            type=ActivityType.EXPENSE_CREATED,
            groupId=groupId,
            message=f"entry {n}",
            createdAt=datetime(2024, 4, n + 1, tzinfo=timezone.utc),
        )))

    assert [a.id for a in run(store.listActivities())] == ["a2", "a1", "a0"]
    assert [a.id for a in run(store.listActivities("g1"))] == ["a2", "a0"]
