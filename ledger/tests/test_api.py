import pytest
from fastapi.testclient import TestClient

from ledger.api import create_app
from ledger.ratelimit import SlidingWindowRateLimiter


@pytest.fixture
def client(system):
    return TestClient(create_app(system))


def register(client, username):
    response = client.post("/users", json={"username": username})
    assert response.status_code == 201
    return response.json()["id"]


class TestLedgerRoutes:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_rules_listed(self, client):
        rules = {r["key"]: r["points"] for r in client.get("/rules").json()}

        assert rules == {
            "daily_checkin": 5,
            "invite_reward": 100,
            "resource_download": 1,
            "resource_upload": 10,
        }

    def test_checkin_then_balance(self, client):
        user_id = register(client, "alice")

        checkin = client.post(f"/users/{user_id}/checkin")
        balance = client.get(f"/users/{user_id}/balance")

        assert checkin.status_code == 200
        assert checkin.json()["new_balance"] == 5
        assert balance.json()["current_balance"] == 5

    def test_second_checkin_conflicts(self, client):
        user_id = register(client, "alice")
        client.post(f"/users/{user_id}/checkin")

        response = client.post(f"/users/{user_id}/checkin")

        assert response.status_code == 409
        assert response.json()["error"] == "AlreadyRewardedError"

    def test_insufficient_balance_conflicts(self, client):
        user_id = register(client, "bob")

        response = client.post(f"/users/{user_id}/purchases", json={"points": 10, "description": "Hat"})

        assert response.status_code == 409
        assert response.json()["error"] == "InsufficientBalanceError"

    def test_unknown_user_is_404(self, client):
        assert client.get("/users/999/balance").status_code == 404

    def test_bad_paging_is_422(self, client):
        user_id = register(client, "carol")

        response = client.get(f"/users/{user_id}/records", params={"page_size": 500})

        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"

    def test_refund_flow(self, client):
        user_id = register(client, "dave")
        client.post(f"/users/{user_id}/credits", json={"points": 100, "description": "seed"})
        spend = client.post(f"/users/{user_id}/purchases", json={"points": 40, "description": "Lamp"}).json()

        refund = client.post(f"/users/{user_id}/refunds", json={
            "original_record_id": spend["record_id"], "points": 40, "reason": " broken ",
        })

        assert refund.status_code == 200
        assert refund.json()["new_balance"] == 100
        assert client.get(f"/users/{user_id}/reconcile").json()["ledger_balance"] == 100


class TestInvitationRoutes:
    def test_issue_and_complete(self, client):
        inviter = register(client, "erin")
        invitee = register(client, "frank")

        issued = client.post(f"/users/{inviter}/invitations", params={"ttl_hours": 72})
        code = issued.json()["invite_code"]
        validated = client.get(f"/invitations/{code}")
        completed = client.post(f"/invitations/{code}/complete", json={"invitee_id": invitee})
        again = client.post(f"/invitations/{code}/complete", json={"invitee_id": invitee})

        assert issued.status_code == 201
        assert validated.json()["inviter_id"] == inviter
        assert completed.status_code == 200
        assert completed.json()["points_awarded"] == 100
        assert again.status_code == 409
        assert client.get(f"/users/{inviter}/balance").json()["current_balance"] == 100

    def test_unknown_code_is_400(self, client):
        response = client.get("/invitations/INV-0000000000000000")

        assert response.status_code == 400
        assert response.json()["error"] == "InvalidCodeError"

    def test_tree_and_leaderboard(self, client):
        inviter = register(client, "gina")
        invitee = register(client, "hank")
        code = client.post(f"/users/{inviter}/invitations").json()["invite_code"]
        client.post(f"/invitations/{code}/complete", json={"invitee_id": invitee})

        tree = client.get(f"/users/{inviter}/tree", params={"max_depth": 2}).json()
        board = client.get("/leaderboard", params={"period": "day", "metric": "invite_count"}).json()

        assert [child["user_id"] for child in tree["children"]] == [invitee]
        assert board[0]["user_id"] == inviter
        assert board[0]["rank"] == 1

    def test_invalid_period_rejected(self, client):
        assert client.get("/leaderboard", params={"period": "decade"}).status_code == 422


class TestRateLimit:
    def test_mutating_routes_limited(self, system):
        client = TestClient(create_app(system, limiter=SlidingWindowRateLimiter(2, 60)))

        statuses = [
            client.post("/users", json={"username": f"user{i}"}).status_code
            for i in range(3)
        ]

        assert statuses == [201, 201, 429]

    def test_reads_not_limited(self, system):
        client = TestClient(create_app(system, limiter=SlidingWindowRateLimiter(1, 60)))

        assert all(client.get("/health").status_code == 200 for _ in range(5))

    def test_injected_limiter_is_used(self, system):
        limiter = SlidingWindowRateLimiter(5, 60)
        client = TestClient(create_app(system, limiter=limiter))

        client.post("/users", json={"username": "tracked"})

        assert len(limiter) == 1
