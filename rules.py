"""
Scheduling rules for tutor availability, bookings and study groups.

Every check takes an explicit `Principal` and documents as stored in MongoDB,
and raises a `DomainError` subclass when the request must be rejected. The
helpers that take a `Database` only load the documents their check needs.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Union

from pymongo import ASCENDING
from pymongo.database import Database

from database import day_start, utcnow
from errors import Conflict, Forbidden, InvalidRequest

logger = logging.getLogger(__name__)

TUTOR = "tutor"
STUDENT = "student"

PENDING = "pending"
CONFIRMED = "confirmed"
COMPLETED = "completed"
CANCELLED = "cancelled"

TERMINAL_STATUSES = frozenset({COMPLETED, CANCELLED})
ACTIVE_STATUSES = (PENDING, CONFIRMED)

# Target status -> the only role allowed to move a booking there.
STATUS_AUTHORITY = {
    CONFIRMED: TUTOR,
    COMPLETED: TUTOR,
    CANCELLED: STUDENT,
}

LOCKED_GROUP_FIELDS = ("subject", "date", "time")


@dataclass(frozen=True)
class Principal:
    """The authenticated actor performing a request."""

    id: str
    role: str


def require_role(principal: Principal, role: str, message: str) -> None:
    if principal.role != role:
        raise Forbidden(message, code="ForbiddenRole")


# ---------- Time ranges ----------

@dataclass(frozen=True)
class TimeRange:
    """Half-open interval ``[start, end)`` over absolute timestamps."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end <= self.start:
            raise InvalidRequest("End time must be after start time", code="InvalidTimeRange")

    @classmethod
    def for_day(cls, day: Union[date, datetime]) -> "TimeRange":
        start = day_start(day)
        return cls(start, start + timedelta(days=1))

    @classmethod
    def of_slot(cls, slot: Dict[str, Any]) -> "TimeRange":
        return cls(slot["start_time"], slot["end_time"])

    def overlaps(self, other: "TimeRange") -> bool:
        return self.start < other.end and other.start < self.end

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end


# ---------- Availability ----------

def check_slot_order(
    ordered_slots: List[Dict[str, Any]],
    proposed: TimeRange,
    subject: str,
    now: datetime,
) -> None:
    """Reject a slot that starts in the past or before the day's last slot ends.

    Only the last slot (by start time) is compared; earlier gaps are not
    searched.
    """
    if proposed.start < now:
        raise Conflict("Start time cannot be in the past", code="PastStartTime")
    if not ordered_slots:
        return
    floor = ordered_slots[-1]["end_time"]
    if proposed.start < floor:
        raise Conflict(
            f"The start time for {subject} must be after {floor.isoformat()}.",
            code="OutOfOrderSlot",
        )


def can_add_slot(
    database: Database,
    tutor_id: str,
    day: Union[date, datetime],
    proposed: TimeRange,
    subject: str,
    now: Optional[datetime] = None,
    pending: Iterable[Dict[str, Any]] = (),
) -> None:
    """Validate a new slot against the tutor's stored slots for `day`.

    `pending` holds slots accepted earlier in the same request and not yet
    persisted; they take part in the ordering check like stored ones.
    """
    if now is None:
        now = utcnow()
    midnight = day_start(day)
    stored = list(
        database["availability"]
        .find({"tutor": tutor_id, "day": midnight})
        .sort("start_time", ASCENDING)
    )
    same_day = [slot for slot in pending if slot["day"] == midnight]
    ordered = sorted(stored + same_day, key=lambda slot: slot["start_time"])
    check_slot_order(ordered, proposed, subject, now)


# ---------- Bookings against availability ----------

def has_booking_conflict(database: Database, tutor_id: str, window: TimeRange) -> bool:
    """True iff any booking of the tutor has its booking_time inside `window`."""
    found = database["booking"].find_one(
        {"tutor": tutor_id, "booking_time": {"$gte": window.start, "$lt": window.end}},
        {"_id": 1},
    )
    return found is not None


def ensure_slot_unbooked(database: Database, slot: Dict[str, Any], message: str) -> None:
    if has_booking_conflict(database, slot["tutor"], TimeRange.of_slot(slot)):
        logger.info("Slot %s rejected: already booked", slot.get("_id"))
        raise Conflict(message, code="SlotAlreadyBooked")


def ensure_day_unbooked(database: Database, tutor_id: str, day: Union[date, datetime]) -> None:
    if has_booking_conflict(database, tutor_id, TimeRange.for_day(day)):
        raise Conflict(
            "You have bookings for this day, you cannot disable it",
            code="DayAlreadyBooked",
        )


def ensure_time_free(database: Database, tutor_id: str, booking_time: datetime) -> None:
    """Reject a second pending/confirmed booking at the same instant."""
    taken = database["booking"].find_one(
        {
            "tutor": tutor_id,
            "booking_time": booking_time,
            "status": {"$in": list(ACTIVE_STATUSES)},
        },
        {"_id": 1},
    )
    if taken is not None:
        raise Conflict("The tutor is already booked at this time", code="TimeAlreadyBooked")


# ---------- Booking status ----------

def check_booking_party(principal: Principal, booking: Dict[str, Any]) -> None:
    party = booking.get("tutor") if principal.role == TUTOR else booking.get("student")
    if party != principal.id:
        raise Forbidden("You are not a party to this booking", code="NotBookingParty")


def check_status_transition(principal: Principal, booking: Dict[str, Any], target: str) -> None:
    if target not in STATUS_AUTHORITY:
        raise InvalidRequest("Invalid status update", code="InvalidStatus")
    current = booking.get("status", PENDING)
    if current in TERMINAL_STATUSES:
        raise Forbidden(f"Booking is already {current}", code="ForbiddenTransition")
    if STATUS_AUTHORITY[target] == principal.role:
        return
    if principal.role == TUTOR:
        message = "Tutors cannot cancel student bookings"
    elif principal.role == STUDENT:
        message = "Students can only cancel bookings"
    else:
        message = "You cannot change the status of this booking"
    raise Forbidden(message, code="ForbiddenTransition")


# ---------- Study groups ----------

def is_participant(group: Dict[str, Any], user_id: str) -> bool:
    return user_id in group.get("participants", [])


def is_creator(group: Dict[str, Any], user_id: str) -> bool:
    return group.get("creator") == user_id


def check_join(principal: Principal, group: Dict[str, Any]) -> None:
    if is_creator(group, principal.id):
        raise Conflict("You are the creator, not a participant", code="AlreadyCreator")
    if is_participant(group, principal.id):
        raise Conflict("You are already a participant", code="AlreadyJoined")


def check_leave(principal: Principal, group: Dict[str, Any]) -> None:
    if is_creator(group, principal.id):
        raise Conflict("Creator cannot leave their own study group", code="CreatorCannotLeave")
    if not is_participant(group, principal.id):
        raise Conflict("You are not a participant", code="NotAParticipant")


def check_update(principal: Principal, group: Dict[str, Any], changes: Dict[str, Any]) -> None:
    """Only the creator edits; subject, date and time lock once someone joins."""
    if not is_creator(group, principal.id):
        raise Forbidden("Only the creator can update the study group", code="ForbiddenEditor")
    touches_locked = any(changes.get(field) is not None for field in LOCKED_GROUP_FIELDS)
    if touches_locked and len(group.get("participants", [])) > 1:
        raise Conflict(
            "Cannot change subject, date, or time once participants have joined. "
            "You can only modify the duration and description.",
            code="GroupLocked",
        )


def check_delete(principal: Principal, group: Dict[str, Any]) -> None:
    if not is_creator(group, principal.id):
        raise Forbidden("Only the creator can delete the study group", code="ForbiddenEditor")
    others = [p for p in group.get("participants", []) if p != principal.id]
    if others:
        raise Conflict(
            "Cannot delete the study group as there are other participants.",
            code="GroupHasParticipants",
        )
