import pytest
from fastapi.testclient import TestClient

import main
from models.ledger import Split
from utils.balanceLedger import BalanceLedger
from utils.expenseStore import InMemoryExpenseStore
from utils.splitAllocator import SplitAllocator


@pytest.fixture
def client():
    ledger = BalanceLedger(InMemoryExpenseStore())
    main.app.dependency_overrides[main.get_ledger] = lambda: ledger
    with TestClient(main.app) as client:
        yield client
    main.app.dependency_overrides.clear()


@pytest.fixture
def group(client):
    response = client.post("/groups", json={
        "name": "Apartment",
        "category": "Home",
        "members": [
            {"userId": "u1", "displayName": "Alex"},
            {"userId": "u2", "displayName": "Sarah"},
            {"userId": "u3", "displayName": "James"},
        ],
    })
    assert response.status_code == 200
    group = response.json()["group"]
    group["ids"] = {m["displayName"]: m["memberId"] for m in group["members"]}
    return group


def post_expense(client, group, amount="90.00", payer="Alex", participants=("Alex", "Sarah", "James"), **extra):
    ids = group["ids"]
    body = {
        "title": "Groceries",
        "amount": amount,
        "splitType": "equal",
        "participantIds": [ids[name] for name in participants],
        "payerId": ids[payer],
        "category": "food",
    }
    body.update(extra)
    return client.post(f"/groups/{group['id']}/expenses", json=body)


def balances(client, group):
    data = client.get(f"/groups/{group['id']}/balances").json()["balances"]
    return {name: data[memberId]["balance"] for name, memberId in group["ids"].items()}


def test_root_and_health(client):
    assert client.get("/").json()["status"] == "operational"
    assert client.get("/health").json()["status"] == "healthy"


def test_expense_and_settlement_flow(client, group):
    response = post_expense(client, group)
    assert response.status_code == 200
    expense = response.json()["expense"]
    assert [s["amount"] for s in expense["splits"]] == ["30.00", "30.00", "30.00"]
    assert expense["amountFormatted"] == "$90.00"
    assert expense["state"] == "active"

    assert balances(client, group) == {"Alex": "60.00", "Sarah": "-30.00", "James": "-30.00"}

    ids = group["ids"]
    response = client.post(f"/groups/{group['id']}/settlements", json={
        "fromMemberId": ids["Alex"], "toMemberId": ids["Sarah"], "amount": "30",
    })
    assert response.status_code == 200
    assert response.json()["settlement"]["isSettlement"] is True
    assert balances(client, group) == {"Alex": "90.00", "Sarah": "-60.00", "James": "-30.00"}

    data = client.get(f"/groups/{group['id']}/balances").json()["balances"]
    assert data[ids["Sarah"]]["balanceFormatted"] == "-$60.00"


def test_percentage_split_with_drift_is_reconciled(client, group):
    response = post_expense(client, group, amount="10.00", splitType="percentage",
                            policyParams=["33.33", "33.33", "33.34"])
    assert response.status_code == 200
    assert [s["amount"] for s in response.json()["expense"]["splits"]] == ["3.33", "3.33", "3.34"]


def test_invalid_split_is_rejected(client, group):
    response = post_expense(client, group, amount="100.00", splitType="percentage",
                            policyParams=["33.33", "33.33", "33.33"])
    assert response.status_code == 400
    assert response.json()["detail"]["status"] == "error"
    assert "100" in response.json()["detail"]["message"]
    assert balances(client, group) == {"Alex": "0.00", "Sarah": "0.00", "James": "0.00"}


def test_preview_does_not_record(client, group):
    ids = group["ids"]
    response = client.post("/splits/preview", json={
        "amount": "10.00",
        "splitType": "equal",
        "participantIds": [ids["Alex"], ids["Sarah"], ids["James"]],
        "payerId": ids["Sarah"],
    })
    assert response.status_code == 200
    body = response.json()
    assert [s["amount"] for s in body["splits"]] == ["3.34", "3.33", "3.33"]
    assert [s["isPayer"] for s in body["splits"]] == [False, True, False]
    assert body["reconciled"] is True
    assert client.get(f"/groups/{group['id']}/expenses").json()["expenses"] == []


def test_update_and_delete_expense(client, group):
    expenseId = post_expense(client, group).json()["expense"]["id"]

    response = client.put(f"/expenses/{expenseId}", json={"amount": "60", "payerId": group["ids"]["Sarah"]})
    assert response.status_code == 200
    assert response.json()["expense"]["version"] == 1
    assert balances(client, group) == {"Alex": "-20.00", "Sarah": "40.00", "James": "-20.00"}

    response = client.put(f"/expenses/{expenseId}", json={"title": "Weekly shop"})
    assert response.json()["expense"]["title"] == "Weekly shop"
    assert response.json()["expense"]["amount"] == "60.00"

    assert client.delete(f"/expenses/{expenseId}").status_code == 200
    assert balances(client, group) == {"Alex": "0.00", "Sarah": "0.00", "James": "0.00"}
    assert client.get(f"/expenses/{expenseId}").status_code == 404
    assert client.delete(f"/expenses/{expenseId}").status_code == 404


def test_update_recomputes_shares_with_stored_weights(client, group):
    expenseId = post_expense(client, group, amount="40", splitType="shares", policyParams=[2, 1, 1]).json()["expense"]["id"]
    response = client.put(f"/expenses/{expenseId}", json={"amount": "80"})
    assert [s["amount"] for s in response.json()["expense"]["splits"]] == ["40.00", "20.00", "20.00"]


def test_settlements_cannot_be_edited(client, group):
    ids = group["ids"]
    settlement = client.post(f"/groups/{group['id']}/settlements", json={
        "fromMemberId": ids["Sarah"], "toMemberId": ids["Alex"], "amount": "5",
    }).json()["settlement"]
    response = client.put(f"/expenses/{settlement['id']}", json={"amount": "6"})
    assert response.status_code == 400


def test_bad_settlements(client, group):
    ids = group["ids"]
    url = f"/groups/{group['id']}/settlements"
    assert client.post(url, json={"fromMemberId": ids["Alex"], "toMemberId": ids["Alex"], "amount": "5"}).status_code == 400
    assert client.post(url, json={"fromMemberId": ids["Alex"], "toMemberId": ids["Sarah"], "amount": "0"}).status_code == 400
    assert client.post(url, json={"fromMemberId": ids["Alex"], "toMemberId": "ghost", "amount": "5"}).status_code == 404


def test_members_with_balance_cannot_leave(client, group):
    post_expense(client, group)
    url = f"/groups/{group['id']}/members/{group['ids']['James']}"
    response = client.delete(url)
    assert response.status_code == 409

    response = client.post(f"/groups/{group['id']}/members", json={"userId": "u4", "displayName": "Dana"})
    newcomer = response.json()["member"]["memberId"]
    assert client.delete(f"/groups/{group['id']}/members/{newcomer}").status_code == 200

    response = client.post(f"/groups/{group['id']}/members", json={"userId": "u1", "displayName": "Alex"})
    assert response.status_code == 409


def test_groups_endpoints(client, group):
    assert client.get("/groups/missing").status_code == 404
    assert group["id"] in client.get("/groups", params={"userId": "u2"}).json()["groups"]
    assert client.get("/groups", params={"userId": "u9"}).json()["groups"] == {}

    response = client.patch(f"/groups/{group['id']}", json={"name": "Flat"})
    assert response.json()["group"]["name"] == "Flat"

    post_expense(client, group)
    assert client.delete(f"/groups/{group['id']}").status_code == 409

    assert client.post("/groups", json={"name": "   "}).status_code == 400


def test_user_summary_and_activity(client, group):
    post_expense(client, group)

    summary = client.get("/users/u1/summary").json()
    assert summary["summary"]["youAreOwed"] == "60.00"
    assert summary["formatted"]["totalBalance"] == "+$60.00"

    summary = client.get("/users/u2/summary").json()
    assert summary["formatted"]["youOwe"] == "$30.00"

    activities = client.get("/activity", params={"groupId": group["id"]}).json()["activities"]
    assert {a["type"] for a in activities} == {"group_created", "expense_created"}
    assert all(a["timeAgo"] == "just now" for a in activities)
    assert len(client.get("/activity", params={"limit": 1}).json()["activities"]) == 1


def test_store_failure_is_reported_as_retryable(client, group):
    ledger = main.app.dependency_overrides[main.get_ledger]()

    async def broken(*args, **kwargs):
        raise ConnectionError("database unreachable")

    ledger.store.saveMemberBalance = broken
    response = post_expense(client, group)
    assert response.status_code == 503
    assert "try again" in response.json()["detail"]["message"]
    assert "database" not in response.json()["detail"]["message"]


def test_equal_splits_store_no_params(client, group):
    expense = post_expense(client, group, policyParams=[1, 2, 3]).json()["expense"]
    assert expense["policyParams"] is None

    response = client.put(f"/expenses/{expense['id']}", json={"amount": "30", "policyParams": [1, 2, 3]})
    assert response.json()["expense"]["policyParams"] is None


def test_expense_of_departed_member_cannot_change(client, group):
    ids = group["ids"]
    expenseId = post_expense(client, group, amount="20", participants=("Alex", "Sarah")).json()["expense"]["id"]
    client.post(f"/groups/{group['id']}/settlements", json={
        "fromMemberId": ids["Sarah"], "toMemberId": ids["Alex"], "amount": "10",
    })
    assert client.delete(f"/groups/{group['id']}/members/{ids['Sarah']}").status_code == 200

    response = client.delete(f"/expenses/{expenseId}")
    assert response.status_code == 409
    assert "has left group" in response.json()["detail"]["message"]
    assert client.put(f"/expenses/{expenseId}", json={"title": "Cab"}).status_code == 409
    assert client.get(f"/expenses/{expenseId}").status_code == 200


class BrokenAllocator(SplitAllocator):
    def allocate(self, *args, **kwargs):
        return [Split(memberId="A", amount="lots", isPayer=True)]


def test_unexpected_errors_are_not_echoed(client, group):
    main.app.dependency_overrides[main.get_allocator] = BrokenAllocator
    response = client.post("/splits/preview", json={
        "amount": "10.00",
        "splitType": "equal",
        "participantIds": [group["ids"]["Alex"]],
        "payerId": group["ids"]["Alex"],
    })
    assert response.status_code == 500
    message = response.json()["detail"]["message"]
    assert "lots" not in message
    assert "Split" not in message
