from datetime import date, timedelta

import pytest

import main
from database import create_document, day_start


def _slot(day, start, end, subject="Math"):
    return {"day": day.isoformat(), "subject": subject, "start_time": start.isoformat(), "end_time": end.isoformat()}


def _book(mock_db, tutor_id, student_id, when, status="pending"):
    return create_document(
        mock_db,
        "booking",
        {"student": student_id, "tutor": tutor_id, "subject": "Math", "booking_time": when, "status": status},
    )


class TestAddAvailability:
    def test_tutor_adds_slot(self, client, tutor, monday, at):
        res = client.post(
            "/api/tutors/availability",
            json={"availability": [_slot(monday, at(9), at(10))]},
            headers=tutor.headers,
        )
        assert res.status_code == 201
        body = res.json()
        assert body["message"] == "Availability added successfully"
        assert len(body["slots"]) == 1

    def test_students_cannot_add(self, client, student, monday, at):
        res = client.post(
            "/api/tutors/availability",
            json={"availability": [_slot(monday, at(9), at(10))]},
            headers=student.headers,
        )
        assert res.status_code == 403
        assert res.json()["message"] == "Only tutors can add availability"

    def test_requires_token(self, client, monday, at):
        res = client.post("/api/tutors/availability", json={"availability": [_slot(monday, at(9), at(10))]})
        assert res.status_code == 401

    def test_past_start_rejected(self, client, tutor):
        yesterday = date.today() - timedelta(days=1)
        res = client.post(
            "/api/tutors/availability",
            json={"availability": [{
                "day": yesterday.isoformat(),
                "subject": "Math",
                "start_time": f"{yesterday.isoformat()}T09:00:00",
                "end_time": f"{yesterday.isoformat()}T10:00:00",
            }]},
            headers=tutor.headers,
        )
        assert res.status_code == 400
        assert res.json()["code"] == "PastStartTime"

    def test_out_of_order_then_in_order(self, client, tutor, monday, at):
        client.post(
            "/api/tutors/availability",
            json={"availability": [_slot(monday, at(9), at(10))]},
            headers=tutor.headers,
        )

        res = client.post(
            "/api/tutors/availability",
            json={"availability": [_slot(monday, at(9, 30), at(10, 30))]},
            headers=tutor.headers,
        )
        assert res.status_code == 400
        assert res.json()["code"] == "OutOfOrderSlot"
        assert "10:00" in res.json()["message"]

        res = client.post(
            "/api/tutors/availability",
            json={"availability": [_slot(monday, at(10), at(11))]},
            headers=tutor.headers,
        )
        assert res.status_code == 201

    def test_rejected_batch_persists_nothing(self, client, mock_db, tutor, monday, at):
        res = client.post(
            "/api/tutors/availability",
            json={"availability": [_slot(monday, at(9), at(10)), _slot(monday, at(9, 30), at(11))]},
            headers=tutor.headers,
        )
        assert res.status_code == 400
        assert mock_db["availability"].count_documents({}) == 0

    def test_batch_in_order_is_accepted(self, client, mock_db, tutor, monday, at):
        tuesday = monday + timedelta(days=1)
        res = client.post(
            "/api/tutors/availability",
            json={"availability": [
                _slot(monday, at(9), at(10)),
                _slot(monday, at(10), at(11), subject="Physics"),
                _slot(tuesday, at(8, day=tuesday), at(9, day=tuesday)),
            ]},
            headers=tutor.headers,
        )
        assert res.status_code == 201
        assert len(res.json()["slots"]) == 3
        assert mock_db["availability"].count_documents({"tutor": tutor.id}) == 3

    def test_end_before_start_rejected(self, client, tutor, monday, at):
        res = client.post(
            "/api/tutors/availability",
            json={"availability": [_slot(monday, at(10), at(9))]},
            headers=tutor.headers,
        )
        assert res.status_code == 400
        assert res.json()["code"] == "InvalidTimeRange"

    def test_insert_race_rolls_back_batch(self, client, mock_db, monkeypatch, tutor, monday, at):
        # Another request stored 11:00 after this batch passed its ordering check.
        monkeypatch.setattr(main, "can_add_slot", lambda *args, **kwargs: None)
        create_document(
            mock_db,
            "availability",
            {"tutor": tutor.id, "day": day_start(monday), "subject": "Math",
             "start_time": at(11), "end_time": at(12), "is_active": True},
        )
        res = client.post(
            "/api/tutors/availability",
            json={"availability": [_slot(monday, at(9), at(10)), _slot(monday, at(11), at(12))]},
            headers=tutor.headers,
        )
        assert res.status_code == 400
        assert res.json()["code"] == "DuplicateSlot"
        assert mock_db["availability"].count_documents({"tutor": tutor.id}) == 1

    def test_missing_fields_rejected(self, client, tutor, monday):
        res = client.post(
            "/api/tutors/availability",
            json={"availability": [{"day": monday.isoformat(), "subject": "Math"}]},
            headers=tutor.headers,
        )
        assert res.status_code == 422
        assert res.json()["code"] == "validation_error"


class TestReadAvailability:
    @pytest.fixture
    def slots(self, client, tutor, other_tutor, monday, at):
        client.post(
            "/api/tutors/availability",
            json={"availability": [_slot(monday, at(9), at(10)), _slot(monday, at(10), at(11))]},
            headers=tutor.headers,
        )
        client.post(
            "/api/tutors/availability",
            json={"availability": [_slot(monday, at(8), at(9), subject="Chemistry")]},
            headers=other_tutor.headers,
        )

    def test_tutor_sees_own_slots(self, client, tutor, slots):
        res = client.get("/api/tutors/availability", headers=tutor.headers)
        assert res.status_code == 200
        data = res.json()
        assert len(data) == 2
        assert all(s["tutor"] == tutor.id for s in data)
        assert data[0]["start_time"] < data[1]["start_time"]

    def test_student_cannot_view_tutor_listing(self, client, student, slots):
        assert client.get("/api/tutors/availability", headers=student.headers).status_code == 403

    def test_student_sees_all_active_slots_with_tutor_info(self, client, mock_db, student, tutor, slots):
        mock_db["availability"].update_one({"subject": "Chemistry"}, {"$set": {"is_active": False}})
        res = client.get("/api/tutors/availability/all", headers=student.headers)
        assert res.status_code == 200
        data = res.json()
        assert len(data) == 2
        assert data[0]["tutor"]["name"] == "Ada Tutor"
        assert data[0]["tutor"]["subjects"] == ["Math", "Physics"]
        assert "email" not in data[0]["tutor"]

    def test_tutor_cannot_view_all(self, client, tutor, slots):
        assert client.get("/api/tutors/availability/all", headers=tutor.headers).status_code == 403

    def test_list_tutors_filters_by_subject(self, client, student, tutor, other_tutor):
        res = client.get("/api/tutors", params={"subject": "chem"}, headers=student.headers)
        assert res.status_code == 200
        assert [t["name"] for t in res.json()] == ["Grace Tutor"]


class TestUpdateAvailability:
    @pytest.fixture
    def slot_id(self, client, tutor, monday, at):
        res = client.post(
            "/api/tutors/availability",
            json={"availability": [_slot(monday, at(10), at(11)), _slot(monday, at(11), at(12))]},
            headers=tutor.headers,
        )
        return res.json()["slots"][0]

    def test_update_subject_and_time(self, client, tutor, slot_id, at):
        res = client.patch(
            f"/api/tutors/availability/{slot_id}",
            json={"subject": "Physics", "end_time": at(10, 45).isoformat()},
            headers=tutor.headers,
        )
        assert res.status_code == 200
        assert res.json()["subject"] == "Physics"
        assert res.json()["end_time"] == at(10, 45).isoformat()

    def test_deactivate_slot(self, client, tutor, slot_id):
        res = client.patch(f"/api/tutors/availability/{slot_id}", json={"is_active": False}, headers=tutor.headers)
        assert res.status_code == 200
        assert res.json()["is_active"] is False

    def test_booked_slot_cannot_change(self, client, mock_db, tutor, student, slot_id, at):
        _book(mock_db, tutor.id, student.id, at(10, 30))
        res = client.patch(f"/api/tutors/availability/{slot_id}", json={"subject": "Physics"}, headers=tutor.headers)
        assert res.status_code == 400
        assert res.json()["code"] == "SlotAlreadyBooked"

    def test_disable_day(self, client, mock_db, tutor, slot_id):
        res = client.patch(f"/api/tutors/availability/{slot_id}", json={"disable_day": True}, headers=tutor.headers)
        assert res.status_code == 200
        assert res.json()["message"] == "All availability slots for this day have been disabled"
        assert mock_db["availability"].count_documents({"tutor": tutor.id, "is_active": True}) == 0

    def test_disable_day_with_bookings_elsewhere_that_day(self, client, mock_db, tutor, student, slot_id, at):
        _book(mock_db, tutor.id, student.id, at(18))
        res = client.patch(f"/api/tutors/availability/{slot_id}", json={"disable_day": True}, headers=tutor.headers)
        assert res.status_code == 400
        assert res.json()["code"] == "DayAlreadyBooked"
        assert mock_db["availability"].count_documents({"tutor": tutor.id, "is_active": True}) == 2

    def test_other_tutor_cannot_update(self, client, other_tutor, slot_id):
        res = client.patch(f"/api/tutors/availability/{slot_id}", json={"subject": "Art"}, headers=other_tutor.headers)
        assert res.status_code == 403

    def test_moving_start_onto_sibling_slot(self, client, mock_db, tutor, slot_id, at):
        sibling = mock_db["availability"].find_one({"tutor": tutor.id, "start_time": at(11)})
        res = client.patch(
            f"/api/tutors/availability/{sibling['_id']}",
            json={"start_time": at(10).isoformat()},
            headers=tutor.headers,
        )
        assert res.status_code == 400
        assert res.json()["code"] == "DuplicateSlot"
        assert mock_db["availability"].find_one({"_id": sibling["_id"]})["start_time"] == at(11)

    def test_not_found_and_invalid_id(self, client, tutor):
        res = client.patch("/api/tutors/availability/65a000000000000000000000", json={}, headers=tutor.headers)
        assert res.status_code == 404
        assert res.json()["message"] == "Availability not found"
        res = client.patch("/api/tutors/availability/not-an-id", json={}, headers=tutor.headers)
        assert res.status_code == 400
        assert res.json()["code"] == "InvalidId"


class TestDeleteAvailability:
    @pytest.fixture
    def slot_id(self, client, tutor, monday, at):
        res = client.post(
            "/api/tutors/availability",
            json={"availability": [_slot(monday, at(10), at(11))]},
            headers=tutor.headers,
        )
        return res.json()["slots"][0]

    def test_delete_unbooked_slot(self, client, mock_db, tutor, slot_id):
        res = client.delete(f"/api/tutors/availability/{slot_id}", headers=tutor.headers)
        assert res.status_code == 200
        assert mock_db["availability"].count_documents({}) == 0

    def test_booked_slot_cannot_be_deleted(self, client, mock_db, tutor, student, slot_id, at):
        _book(mock_db, tutor.id, student.id, at(10, 30))
        res = client.delete(f"/api/tutors/availability/{slot_id}", headers=tutor.headers)
        assert res.status_code == 400
        assert res.json()["message"] == "Cannot delete availability, there are bookings for this slot"
        assert mock_db["availability"].count_documents({}) == 1

    def test_booking_at_slot_end_does_not_block(self, client, mock_db, tutor, student, slot_id, at):
        _book(mock_db, tutor.id, student.id, at(11))
        assert client.delete(f"/api/tutors/availability/{slot_id}", headers=tutor.headers).status_code == 200

    def test_student_cannot_delete(self, client, student, slot_id):
        assert client.delete(f"/api/tutors/availability/{slot_id}", headers=student.headers).status_code == 403

    def test_missing_slot(self, client, tutor):
        res = client.delete("/api/tutors/availability/65a000000000000000000000", headers=tutor.headers)
        assert res.status_code == 404
