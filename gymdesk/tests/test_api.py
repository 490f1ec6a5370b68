import sqlite3

import pytest

from gymdesk.api import create_app
from gymdesk.app_api import AppAPI
from gymdesk.database_manager import DatabaseManager

MEMBER_JOHN = {
    "name": "John Doe",
    "phone": "555-123-4567",
    "birth_date": "1990-05-15",
    "email": "john.doe@example.com",
}


@pytest.fixture
def client(db_manager):
    app = create_app(api=AppAPI(db_manager=db_manager))
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client


@pytest.fixture
def plan_id(client):
    response = client.post(
        "/api/memberships",
        json={"name": "Monthly", "price": 200, "duration_days": 30, "features": ["Gym floor"]},
    )
    assert response.status_code == 201
    return response.get_json()["data"]["id"]


@pytest.fixture
def member(client, plan_id):
    response = client.post("/api/members", json=dict(MEMBER_JOHN, membership_id=plan_id))
    assert response.status_code == 201
    return response.get_json()["data"]


def test_create_member(member):
    assert member["name"] == "John Doe"
    assert member["status"] == "active"
    assert member["qr_code"].startswith("JOHN_DOE-1990-05-15-")


def test_create_member_validation_error(client, plan_id):
    response = client.post("/api/members", json={"name": "", "membership_id": plan_id})
    assert response.status_code == 400
    assert response.get_json()["error"] == "Name is required."


def test_create_member_without_body(client):
    response = client.post("/api/members")
    assert response.status_code == 400
    assert response.get_json()["error"] == "No JSON data provided."


def test_create_member_duplicate_email(client, plan_id, member):
    response = client.post("/api/members", json=dict(MEMBER_JOHN, membership_id=plan_id))
    assert response.status_code == 409


def test_get_and_list_members(client, member):
    response = client.get(f"/api/members/{member['id']}")
    assert response.status_code == 200
    assert response.get_json()["data"]["membership_name"] == "Monthly"

    response = client.get("/api/members", query_string={"search": "john"})
    assert [m["id"] for m in response.get_json()["data"]] == [member["id"]]


def test_get_unknown_member(client):
    response = client.get("/api/members/missing")
    assert response.status_code == 404
    assert "not found" in response.get_json()["error"]


def test_update_member(client, member):
    response = client.put(f"/api/members/{member['id']}", json={"name": "Johnny Doe"})
    assert response.status_code == 200
    assert response.get_json()["data"]["qr_code"].startswith("JOHNNY_DOE-")


def test_update_member_status(client, member):
    response = client.patch(f"/api/members/{member['id']}/status", json={"status": "inactive"})
    assert response.status_code == 200
    response = client.patch(f"/api/members/{member['id']}/status", json={"status": "frozen"})
    assert response.status_code == 400


def test_check_in_allowed(client, member):
    response = client.post("/api/check-in", json={"code": member["qr_code"]})
    assert response.status_code == 200
    body = response.get_json()
    assert body["outcome"] == "allowed"
    assert body["allowed"] is True
    assert body["attendance"]["attended"] is True


def test_check_in_denied_is_still_recorded(client, clock, member):
    clock.advance(days=31)
    response = client.post("/api/check-in", json={"code": member["qr_code"]})
    assert response.status_code == 200
    assert response.get_json()["outcome"] == "expired"

    response = client.get(f"/api/members/{member['id']}/attendances")
    assert [a["status"] for a in response.get_json()["data"]] == ["denied"]


def test_check_in_unknown_code(client):
    response = client.post("/api/check-in", json={"code": "NOBODY"})
    assert response.status_code == 404
    assert response.get_json()["outcome"] == "not_found"


def test_check_in_missing_code(client):
    response = client.post("/api/check-in", json={"code": " "})
    assert response.status_code == 400


def test_check_in_store_failure(client, member, monkeypatch):
    def broken_insert(self, *args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(DatabaseManager, "_insert_attendance", broken_insert)
    response = client.post("/api/check-in", json={"code": member["qr_code"]})
    assert response.status_code == 503
    assert response.get_json()["outcome"] == "error"


def test_renew_member(client, clock, member):
    clock.advance(days=10)
    response = client.post(f"/api/members/{member['id']}/renew")
    assert response.status_code == 201
    data = response.get_json()["data"]
    assert data["member"]["expiry_date"] == "2024-03-10"
    assert data["payment"]["amount"] == 200.0

    response = client.get(f"/api/members/{member['id']}/payments")
    assert len(response.get_json()["data"]) == 2


def test_renew_unknown_plan(client, member):
    response = client.post(f"/api/members/{member['id']}/renew", json={"membership_id": 999})
    assert response.status_code == 404


def test_delete_membership_in_use(client, plan_id, member):
    response = client.delete(f"/api/memberships/{plan_id}")
    assert response.status_code == 409
    assert "1 associated member(s)" in response.get_json()["error"]

    assert client.delete(f"/api/members/{member['id']}").status_code == 200
    assert client.delete(f"/api/memberships/{plan_id}").status_code == 200


def test_list_and_update_memberships(client, plan_id):
    response = client.put(f"/api/memberships/{plan_id}", json={"price": 250})
    assert response.get_json()["data"]["price"] == 250.0
    response = client.get("/api/memberships")
    assert response.get_json()["data"][0]["active_members_count"] == 0
    response = client.get(f"/api/memberships/{plan_id}")
    assert response.get_json()["data"]["members"] == []


def test_portal(client, member):
    client.post("/api/check-in", json={"code": member["qr_code"]})
    response = client.get(f"/api/portal/{member['qr_code']}")
    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["member"]["id"] == member["id"]
    assert len(data["payments"]) == 1
    assert len(data["attendances"]) == 1

    assert client.get("/api/portal/unknown").status_code == 404


def test_payments_endpoints(client, member):
    recent = client.get("/api/payments/recent").get_json()["data"]
    assert len(recent) == 1
    response = client.get(f"/api/payments/{recent[0]['id']}")
    assert response.get_json()["data"]["member_name"] == "John Doe"
    assert client.get("/api/payments/recent", query_string={"days": "x"}).status_code == 400


def test_attendance_endpoints(client, member):
    attendance = client.post("/api/check-in", json={"code": member["qr_code"]}).get_json()[
        "attendance"
    ]
    response = client.patch(f"/api/attendances/{attendance['id']}", json={"attended": False})
    assert response.get_json()["data"]["attended"] is False

    response = client.get(
        "/api/attendances", query_string={"start": "2024-01-10", "end": "2024-01-10"}
    )
    assert len(response.get_json()["data"]) == 1
    response = client.get("/api/attendances", query_string={"start": "2024-01-10"})
    assert response.status_code == 400

    assert client.delete(f"/api/attendances/{attendance['id']}").status_code == 200
    assert client.delete(f"/api/attendances/{attendance['id']}").status_code == 404


def test_expiring_and_refresh(client, clock, member):
    response = client.get("/api/members/expiring", query_string={"days": "30"})
    assert len(response.get_json()["data"]) == 1
    clock.advance(days=31)
    response = client.post("/api/members/refresh-statuses")
    assert response.get_json()["data"] == 1


def test_settings_endpoints(client):
    response = client.put("/api/settings", json={"gym_name": "Iron Temple"})
    assert response.status_code == 200
    assert client.get("/api/settings").get_json()["data"]["gym_name"] == "Iron Temple"
    assert client.put("/api/settings", json={"theme": "dark"}).status_code == 400


def test_message_endpoints(client, member):
    response = client.post(
        "/api/messages", json={"recipient": "a@b.co", "content": "Closed on Sunday"}
    )
    assert response.status_code == 201
    message_id = response.get_json()["data"]["id"]

    response = client.post(f"/api/messages/{message_id}/sent")
    assert response.get_json()["data"]["status"] == "sent"

    response = client.post("/api/messages/renewal-reminders", json={"days": 30})
    assert response.status_code == 201
    assert len(response.get_json()["data"]) == 1

    assert len(client.get("/api/messages").get_json()["data"]) == 2
    assert len(client.get("/api/messages", query_string={"status": "sent"}).get_json()["data"]) == 1
    assert client.delete(f"/api/messages/{message_id}").status_code == 200


def test_bulk_message_endpoints(client):
    response = client.post(
        "/api/messages/bulk",
        json={"recipients": ["a@b.co", "c@d.co", "e@f.co"], "content": "Closed on Sunday"},
    )
    assert response.status_code == 201
    assert response.get_json()["message"] == "3 message(s) created."
    ids = [m["id"] for m in response.get_json()["data"]]

    response = client.get(f"/api/messages/{ids[0]}")
    assert response.status_code == 200
    assert response.get_json()["data"]["recipient"] == "a@b.co"
    assert client.get("/api/messages/9999").status_code == 404

    response = client.post("/api/messages/bulk-sent", json={"ids": ids[:2]})
    assert response.status_code == 200
    assert response.get_json()["data"] == 2

    stats = client.get("/api/stats/messages").get_json()["data"]
    assert (stats["total"], stats["sent"], stats["pending"]) == (3, 2, 1)
    assert stats["by_type"]["custom"] == 3

    response = client.post("/api/messages/bulk-delete", json={"ids": [ids[2], 9999]})
    assert response.status_code == 404
    response = client.post("/api/messages/bulk-delete", json={"ids": ids})
    assert response.get_json()["data"] == 3
    assert client.get("/api/messages").get_json()["data"] == []


def test_list_messages_by_type(client):
    client.post("/api/messages", json={"recipient": "a@b.co", "content": "Closed on Sunday"})
    client.post(
        "/api/messages",
        json={"type": "birthday", "recipient": "c@d.co", "content": "Happy birthday!"},
    )
    response = client.get("/api/messages", query_string={"type": "birthday"})
    assert [m["recipient"] for m in response.get_json()["data"]] == ["c@d.co"]
    assert client.get("/api/messages", query_string={"type": "sms"}).status_code == 400
    assert client.post("/api/messages/bulk", json={"content": "Hi"}).status_code == 400


def test_stats_endpoints(client, member):
    response = client.get("/api/stats/dashboard")
    assert response.status_code == 200
    assert response.get_json()["data"]["monthly_revenue"] == 200.0

    response = client.get("/api/stats/monthly-revenue")
    assert len(response.get_json()["data"]) == 6

    assert client.get("/api/stats/unknown").status_code == 404


def test_database_unavailable_returns_503(monkeypatch):
    monkeypatch.setattr("gymdesk.api.initialize_database", lambda *args, **kwargs: None)
    monkeypatch.setattr("gymdesk.api.create_database", lambda db_file: None)
    app = create_app()
    response = app.test_client().get("/api/members")
    assert response.status_code == 503
    assert response.get_json()["error"] == "Database service not available"
