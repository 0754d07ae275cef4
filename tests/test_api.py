import pytest

from fastapi.testclient import TestClient
from main import app, _bookings, _resources

client = TestClient(app)

MEMBER = {"X-Actor-Id": "user_member", "X-Actor-Name": "Mia Member", "X-Actor-Email": "mia@example.com"}
ADMIN = {
    "X-Actor-Id": "user_admin",
    "X-Actor-Email": "ops@example.com",
    "X-Actor-Permissions": "facilities:manage",
}


@pytest.fixture(autouse=True)
def reset_repositories():
    """Clear repositories before each test."""
    _resources.reset()
    _bookings.reset()
    yield


def create_resource(**overrides) -> dict:
    payload = {
        "type": "meeting_room",
        "name": "Room A",
        "availability": [{"day": "Monday", "start_time": "09:00", "end_time": "17:00"}],
    }
    payload.update(overrides)
    response = client.post("/facilities/resources", json=payload, headers=ADMIN)
    assert response.status_code == 200
    return response.json()


def book(resource_id: str, start: str, end: str, headers=MEMBER, **extra):
    body = {"resource_id": resource_id, "title": "Standup", "start_time": start, "end_time": end}
    body.update(extra)
    return client.post("/facilities/bookings", json=body, headers=headers)


def test_requests_without_actor_are_rejected():
    response = client.get("/facilities/resources")
    assert response.status_code == 401
    assert response.json()["detail"] == "Unauthorized"


def test_upsert_resource_requires_manage_permission():
    response = client.post(
        "/facilities/resources",
        json={"type": "lab", "name": "Wet Lab"},
        headers=MEMBER,
    )
    assert response.status_code == 403


def test_create_and_update_resource():
    created = create_resource(tags=["projector", " "], location=" Level 2 ")
    assert created["id"].startswith("res_")
    assert created["type"] == "meeting_room"
    assert created["tags"] == ["projector"]
    assert created["location"] == "Level 2"

    response = client.post(
        "/facilities/resources",
        json={"id": created["id"], "type": "lab", "name": "Room A (lab)"},
        headers=ADMIN,
    )
    assert response.status_code == 200
    updated = response.json()
    assert updated["id"] == created["id"]
    assert updated["type"] == "lab"
    assert updated["created_at"] == created["created_at"]


def test_upsert_resource_rejects_unknown_type_and_blank_name():
    response = client.post("/facilities/resources", json={"type": "spaceship", "name": "X"}, headers=ADMIN)
    assert response.status_code == 422
    assert response.json()["detail"] == "Invalid facility type provided"

    response = client.post("/facilities/resources", json={"type": "lab", "name": "  "}, headers=ADMIN)
    assert response.status_code == 422
    assert response.json()["detail"] == "Facility name is required"


def test_update_missing_resource_returns_404():
    response = client.post(
        "/facilities/resources",
        json={"id": "res_missing", "type": "lab", "name": "Ghost"},
        headers=ADMIN,
    )
    assert response.status_code == 404


def test_list_resources_sorted_by_type_then_name():
    create_resource(type="meeting_room", name="Zeta")
    create_resource(type="lab", name="Beta")
    create_resource(type="meeting_room", name="Alpha")

    response = client.get("/facilities/resources", headers=MEMBER)
    assert response.status_code == 200
    assert [r["name"] for r in response.json()] == ["Beta", "Alpha", "Zeta"]


def test_create_booking_success():
    resource = create_resource()
    response = book(resource["id"], "2030-01-07T10:00:00Z", "2030-01-07T11:00:00Z", participants=["a@x.io", ""])
    assert response.status_code == 201
    data = response.json()
    assert data["id"].startswith("bkg_")
    assert data["resource_id"] == resource["id"]
    assert data["status"] == "confirmed"
    assert data["start_time"] == "2030-01-07T10:00:00Z"
    assert data["end_time"] == "2030-01-07T11:00:00Z"
    assert data["created_by"] == "user_member"
    assert data["created_by_email"] == "mia@example.com"
    assert data["participants"] == ["a@x.io"]


def test_create_booking_inverted_window():
    resource = create_resource()
    response = book(resource["id"], "2024-01-01T10:00Z", "2024-01-01T09:00Z")
    assert response.status_code == 422
    assert response.json()["detail"] == "Booking end time must be after start time"


def test_create_booking_unparsable_timestamp():
    resource = create_resource()
    response = book(resource["id"], "next tuesday", "2030-01-01T11:00:00Z")
    assert response.status_code == 422
    assert response.json()["detail"] == "A valid start and end time is required"


def test_create_booking_timestamp_outside_utc_range():
    resource = create_resource()
    response = book(resource["id"], "0001-01-01T00:00:00+01:00", "2030-01-01T11:00:00Z")
    assert response.status_code == 422
    assert response.json()["detail"] == "A valid start and end time is required"


def test_create_booking_unknown_resource():
    response = book("res_missing", "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z")
    assert response.status_code == 404


def test_create_booking_overlap_conflict():
    resource = create_resource()
    book(resource["id"], "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z")
    response = book(resource["id"], "2030-01-01T10:30:00Z", "2030-01-01T11:30:00Z")
    assert response.status_code == 409
    assert response.json()["detail"] == "This time slot is already booked for the selected resource"


def test_create_booking_back_to_back_no_conflict():
    resource = create_resource()
    book(resource["id"], "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z")
    response = book(resource["id"], "2030-01-01T11:00:00Z", "2030-01-01T12:00:00Z")
    assert response.status_code == 201


def test_same_time_different_resources_no_conflict():
    first = create_resource(name="Room A")
    second = create_resource(name="Room B")
    book(first["id"], "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z")
    response = book(second["id"], "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z")
    assert response.status_code == 201


def test_cancelled_booking_frees_the_slot():
    resource = create_resource()
    booking = book(resource["id"], "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z").json()

    response = client.patch(f"/facilities/bookings/{booking['id']}", json={"reason": "No longer needed"}, headers=MEMBER)
    assert response.status_code == 200
    cancelled = response.json()
    assert cancelled["status"] == "cancelled"
    assert cancelled["metadata"]["cancellation"]["reason"] == "No longer needed"
    assert cancelled["metadata"]["cancellation"]["actor_id"] == "user_member"

    response = book(resource["id"], "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z")
    assert response.status_code == 201


def test_cancel_twice_returns_same_record():
    resource = create_resource()
    booking = book(resource["id"], "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z").json()

    first = client.patch(f"/facilities/bookings/{booking['id']}", json={}, headers=MEMBER)
    second = client.patch(f"/facilities/bookings/{booking['id']}", json={"reason": "again"}, headers=MEMBER)
    assert first.status_code == 200
    assert second.status_code == 200
    assert first.json() == second.json()


def test_cancel_missing_booking():
    response = client.patch("/facilities/bookings/non_existent_booking", json={}, headers=MEMBER)
    assert response.status_code == 404


def test_patch_without_body_cancels():
    resource = create_resource()
    booking = book(resource["id"], "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z").json()

    response = client.patch(f"/facilities/bookings/{booking['id']}", headers=MEMBER)
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"


def test_approval_workflow_over_http():
    resource = create_resource(
        approval_policy={"requires_approval": True, "approver_emails": ["Ops@Example.com"]},
    )
    pending = book(resource["id"], "2030-01-07T10:00:00Z", "2030-01-07T12:00:00Z").json()
    assert pending["status"] == "pending"
    assert pending["metadata"]["approval"]["status"] == "pending"
    assert pending["metadata"]["approval"]["approvers"] == ["ops@example.com"]

    response = client.patch(f"/facilities/bookings/{pending['id']}", json={"action": "approve"}, headers=MEMBER)
    assert response.status_code == 403

    response = client.patch(
        f"/facilities/bookings/{pending['id']}",
        json={"action": "approve", "note": "Enjoy"},
        headers=ADMIN,
    )
    assert response.status_code == 200
    approved = response.json()
    assert approved["status"] == "confirmed"
    assert approved["metadata"]["approval"]["status"] == "approved"
    assert approved["metadata"]["approval"]["history"][-1]["note"] == "Enjoy"

    response = client.patch(f"/facilities/bookings/{pending['id']}", json={"action": "reject"}, headers=ADMIN)
    assert response.status_code == 409


def test_unknown_patch_action_is_rejected():
    resource = create_resource()
    booking = book(resource["id"], "2030-01-01T10:00:00Z", "2030-01-01T11:00:00Z").json()
    response = client.patch(f"/facilities/bookings/{booking['id']}", json={"action": "explode"}, headers=MEMBER)
    assert response.status_code == 422


def test_list_bookings_filters():
    first = create_resource(name="Room A")
    second = create_resource(name="Room B")
    book(first["id"], "2030-01-03T12:00:00Z", "2030-01-03T13:00:00Z")
    book(first["id"], "2030-01-03T10:00:00Z", "2030-01-03T11:00:00Z")
    other = book(second["id"], "2030-01-03T10:00:00Z", "2030-01-03T11:00:00Z").json()
    client.patch(f"/facilities/bookings/{other['id']}", json={}, headers=MEMBER)

    response = client.get("/facilities/bookings", params={"resource_id": first["id"]}, headers=MEMBER)
    data = response.json()
    assert [b["start_time"] for b in data] == ["2030-01-03T10:00:00Z", "2030-01-03T12:00:00Z"]

    response = client.get("/facilities/bookings", params={"status": "cancelled"}, headers=MEMBER)
    assert [b["id"] for b in response.json()] == [other["id"]]

    response = client.get(
        "/facilities/bookings",
        params={"start": "2030-01-03T11:30:00Z", "end": "2030-01-03T23:00:00Z"},
        headers=MEMBER,
    )
    assert [b["start_time"] for b in response.json()] == ["2030-01-03T12:00:00Z"]

    response = client.get("/facilities/bookings", params={"limit": 1}, headers=MEMBER)
    assert len(response.json()) == 1


def test_list_resource_bookings():
    resource = create_resource()
    book(resource["id"], "2030-01-03T10:00:00Z", "2030-01-03T11:00:00Z")

    response = client.get(f"/facilities/resources/{resource['id']}/bookings", headers=MEMBER)
    assert response.status_code == 200
    assert len(response.json()) == 1

    response = client.get("/facilities/resources/res_missing/bookings", headers=MEMBER)
    assert response.status_code == 404


def test_analytics_endpoint():
    resource = create_resource()
    # 2024-01-01 is a Monday
    book(resource["id"], "2024-01-01T10:00:00Z", "2024-01-01T12:00:00Z")

    response = client.get(
        "/facilities/analytics",
        params={"start": "2024-01-01T00:00:00Z", "end": "2024-01-01T23:59:59Z"},
        headers=MEMBER,
    )
    assert response.status_code == 200
    data = response.json()
    assert data["range"] == {"start": "2024-01-01T00:00:00Z", "end": "2024-01-01T23:59:59Z"}
    summary = data["summaries"][0]
    assert summary["total_booked_hours"] == 2
    assert summary["total_available_hours"] == 8
    assert summary["utilisation_rate"] == 0.25
    assert data["peak_hours"] == [{"hour": "10:00", "bookings": 1}, {"hour": "11:00", "bookings": 1}]


def test_analytics_endpoint_without_resources():
    response = client.get("/facilities/analytics", headers=MEMBER)
    assert response.status_code == 200
    data = response.json()
    assert data["summaries"] == []
    assert data["peak_hours"] == []
    assert data["range"]["start"] < data["range"]["end"]


def test_analytics_omits_peak_hour_for_unbooked_resources():
    busy = create_resource(name="Busy Room")
    create_resource(name="Quiet Room")
    book(busy["id"], "2024-01-01T10:00:00Z", "2024-01-01T12:00:00Z")

    response = client.get(
        "/facilities/analytics",
        params={"start": "2024-01-01T00:00:00Z", "end": "2024-01-01T23:59:59Z"},
        headers=MEMBER,
    )
    assert response.status_code == 200
    summaries = {s["resource_name"]: s for s in response.json()["summaries"]}
    assert summaries["Busy Room"]["peak_usage_hour"] == "10:00"
    assert "peak_usage_hour" not in summaries["Quiet Room"]


def test_analytics_range_near_earliest_instant():
    create_resource()
    response = client.get("/facilities/analytics", params={"end": "0001-01-02T00:00:00Z"}, headers=MEMBER)
    assert response.status_code == 200
    assert response.json()["range"] == {"start": "0001-01-01T00:00:00Z", "end": "0001-01-02T00:00:00Z"}
