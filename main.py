import logging
import os
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Optional, List, Dict, Any, Annotated

from fastapi import APIRouter, FastAPI, Depends, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import AfterValidator, BaseModel, EmailStr, Field
from pymongo import ASCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import database
from auth import current_user, get_principal, hash_password, issue_session
from database import (
    create_document,
    day_start,
    ensure_indexes,
    find_by_id,
    get_db,
    get_documents,
    oid,
    serialize,
    to_storage_datetime,
    users_by_id,
    utcnow,
)
from errors import Conflict, Forbidden, NotFound, Unauthorized, register_error_handlers
from rules import (
    PENDING,
    STUDENT,
    TUTOR,
    Principal,
    TimeRange,
    can_add_slot,
    check_booking_party,
    check_delete,
    check_join,
    check_leave,
    check_status_transition,
    check_update,
    ensure_day_unbooked,
    ensure_slot_unbooked,
    ensure_time_free,
    require_role,
)
from schemas import Availability, Booking, StudyGroup, User


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
    else:
        logger.warning("DATABASE_URL / DATABASE_NAME not set; storage routes will answer 500")
    yield


app = FastAPI(title="Course Correct API", version="1.0.0", lifespan=lifespan)

_cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_error_handlers(app)

api = APIRouter(prefix="/api")


# ---------- Utilities ----------

TUTOR_CARD_FIELDS = ("name", "subjects", "grade_level")
MEMBER_FIELDS = ("name",)


def build_filter(q: Optional[str], subject: Optional[str]) -> Dict[str, Any]:
    f: Dict[str, Any] = {"role": TUTOR}
    if q:
        f["name"] = {"$regex": q, "$options": "i"}
    if subject:
        f["subjects"] = {"$regex": subject, "$options": "i"}
    return f


def calendar_event(booking: Dict[str, Any], counterpart_key: str, names: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    """Format a booking for the frontend calendar; the end is resolved client side."""
    counterpart = names.get(booking[counterpart_key]) or {}
    start = booking["booking_time"].isoformat()
    return {
        "id": str(booking["_id"]),
        "title": f"{booking['subject']} - {booking['status']}",
        "start": start,
        "end": start,
        "extendedProps": {
            counterpart_key: counterpart.get("name"),
            "status": booking["status"],
        },
    }


def populate_group(db: Database, group: Dict[str, Any]) -> Dict[str, Any]:
    members = users_by_id(db, [group["creator"], *group.get("participants", [])], MEMBER_FIELDS)
    out = serialize(group)
    out["creator"] = members.get(group["creator"])
    out["participants"] = [members[p] for p in group.get("participants", []) if p in members]
    return out


StoredTime = Annotated[datetime, AfterValidator(to_storage_datetime)]
Day = date


# ---------- Models ----------

class SignupRequest(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: str = Field(..., pattern="^(tutor|student)$")
    subjects: List[str] = Field(default_factory=list)
    grade_level: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class SlotRequest(BaseModel):
    day: Day
    subject: str = Field(..., min_length=1)
    start_time: StoredTime
    end_time: StoredTime


class AddAvailabilityRequest(BaseModel):
    availability: List[SlotRequest] = Field(..., min_length=1)


class UpdateAvailabilityRequest(BaseModel):
    subject: Optional[str] = None
    start_time: Optional[StoredTime] = None
    end_time: Optional[StoredTime] = None
    is_active: Optional[bool] = None
    disable_day: bool = False


class CreateBookingRequest(BaseModel):
    tutor: str
    subject: str = Field(..., min_length=1)
    booking_time: StoredTime


class UpdateBookingRequest(BaseModel):
    status: Optional[str] = None
    booking_time: Optional[StoredTime] = None


class CreateStudyGroupRequest(BaseModel):
    title: str = Field(..., min_length=1)
    subject: str = Field(..., min_length=1)
    description: Optional[str] = None
    time: str = Field(..., pattern=r"^\d{2}:\d{2}$")
    duration: int = Field(..., gt=0, description="Minutes")
    date: Day


class UpdateStudyGroupRequest(BaseModel):
    subject: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    time: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    duration: Optional[int] = Field(default=None, gt=0)
    date: Optional[Day] = None


# ---------- Routes ----------

@app.get("/")
def root():
    return {"name": "Course Correct API", "status": "ok"}


@app.get("/health")
def health():
    response = {
        "backend": "running",
        "database": "not configured",
        "collections": [],
    }
    if database.db is not None:
        try:
            response["collections"] = database.db.list_collection_names()
            response["database"] = "connected"
        except Exception as e:
            logger.warning("Health check could not reach MongoDB: %s", e)
            response["database"] = f"error: {str(e)[:80]}"
    return response


# ----- Auth -----

@api.post("/auth/signup", status_code=201, tags=["auth"])
def signup(payload: SignupRequest, db: Database = Depends(get_db)):
    if db["user"].find_one({"email": payload.email}):
        raise Conflict("Account already exists", code="AccountExists")
    user = User(
        name=payload.name,
        email=payload.email,
        password_hash=hash_password(payload.password),
        role=payload.role,
        subjects=payload.subjects,
        grade_level=payload.grade_level,
    )
    user_id = create_document(db, "user", user)
    created = find_by_id(db, "user", user_id, "User not found")
    logger.info("Registered %s %s", payload.role, user_id)
    return {"id": user_id, "token": issue_session(db, created), "user": serialize(created)}


@api.post("/auth/login", tags=["auth"])
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email})
    if not user or user.get("password_hash") != hash_password(payload.password):
        raise Unauthorized("Invalid credentials", code="InvalidCredentials")
    return {"token": issue_session(db, user), "user": serialize(user)}


@api.get("/auth/me", tags=["auth"])
def me(user: Dict[str, Any] = Depends(current_user), db: Database = Depends(get_db)):
    """The signed-in user with slot and group lists derived from their collections."""
    user_id = str(user["_id"])
    out = serialize(user)
    out["tutoring_availability"] = [
        str(s["_id"]) for s in db["availability"].find({"tutor": user_id}, {"_id": 1}).sort("start_time", ASCENDING)
    ]
    out["joined_study_groups"] = [
        str(g["_id"]) for g in db["studygroup"].find({"participants": user_id}, {"_id": 1})
    ]
    return out


# ----- Tutors & availability -----

@api.get("/tutors", tags=["availability"], summary="List tutors", dependencies=[Depends(get_principal)])
def list_tutors(
    q: Optional[str] = Query(default=None),
    subject: Optional[str] = Query(default=None),
    db: Database = Depends(get_db),
):
    tutors = get_documents(db, "user", build_filter(q, subject), sort=[("name", ASCENDING)])
    return [
        {"id": str(t["_id"]), **{field: t.get(field) for field in TUTOR_CARD_FIELDS}}
        for t in tutors
    ]


@api.post("/tutors/availability", status_code=201, tags=["availability"])
def add_availability(
    payload: AddAvailabilityRequest,
    principal: Principal = Depends(get_principal),
    db: Database = Depends(get_db),
):
    require_role(principal, TUTOR, "Only tutors can add availability")
    now = utcnow()
    accepted: List[Dict[str, Any]] = []
    for slot in payload.availability:
        proposed = TimeRange(slot.start_time, slot.end_time)
        can_add_slot(db, principal.id, slot.day, proposed, slot.subject, now=now, pending=accepted)
        accepted.append(
            Availability(
                tutor=principal.id,
                day=day_start(slot.day),
                subject=slot.subject,
                start_time=slot.start_time,
                end_time=slot.end_time,
            ).model_dump()
        )

    slot_ids = []
    try:
        for doc in accepted:
            slot_ids.append(create_document(db, "availability", doc))
    except DuplicateKeyError:
        if slot_ids:
            db["availability"].delete_many({"_id": {"$in": [oid(i) for i in slot_ids]}})
        logger.info("Tutor %s lost an insert race; rolled back %d slot(s)", principal.id, len(slot_ids))
        raise Conflict("An availability slot already starts at this time", code="DuplicateSlot")
    logger.info("Tutor %s added %d availability slot(s)", principal.id, len(slot_ids))
    return {"message": "Availability added successfully", "slots": slot_ids}


@api.get("/tutors/availability", tags=["availability"])
def get_availability(principal: Principal = Depends(get_principal), db: Database = Depends(get_db)):
    require_role(principal, TUTOR, "Only tutors can view availability")
    slots = get_documents(
        db, "availability", {"tutor": principal.id}, sort=[("day", ASCENDING), ("start_time", ASCENDING)]
    )
    return [serialize(s) for s in slots]


@api.get("/tutors/availability/all", tags=["availability"])
def get_all_availability(principal: Principal = Depends(get_principal), db: Database = Depends(get_db)):
    require_role(principal, STUDENT, "Only students can view all tutors' availability")
    slots = get_documents(
        db, "availability", {"is_active": True}, sort=[("day", ASCENDING), ("start_time", ASCENDING)]
    )
    tutors = users_by_id(db, [s["tutor"] for s in slots], TUTOR_CARD_FIELDS)
    out = []
    for s in slots:
        item = serialize(s)
        item["tutor"] = tutors.get(s["tutor"])
        out.append(item)
    return out


@api.patch("/tutors/availability/{availability_id}", tags=["availability"])
def update_availability(
    availability_id: str,
    payload: UpdateAvailabilityRequest,
    principal: Principal = Depends(get_principal),
    db: Database = Depends(get_db),
):
    require_role(principal, TUTOR, "Only tutors can update availability")
    slot = find_by_id(db, "availability", availability_id, "Availability not found")
    if slot["tutor"] != principal.id:
        raise Forbidden("You can only update your own availability", code="NotSlotOwner")
    ensure_slot_unbooked(db, slot, "Cannot update this availability as it is already booked")

    if payload.disable_day:
        ensure_day_unbooked(db, principal.id, slot["day"])
        db["availability"].update_many(
            {"tutor": principal.id, "day": slot["day"]},
            {"$set": {"is_active": False, "updated_at": utcnow()}},
        )
        logger.info("Tutor %s disabled availability on %s", principal.id, slot["day"].date())
        return {"message": "All availability slots for this day have been disabled"}

    changes = payload.model_dump(exclude={"disable_day"}, exclude_none=True)
    if "start_time" in changes or "end_time" in changes:
        TimeRange(changes.get("start_time", slot["start_time"]), changes.get("end_time", slot["end_time"]))
    if changes:
        changes["updated_at"] = utcnow()
        try:
            db["availability"].update_one({"_id": slot["_id"]}, {"$set": changes})
        except DuplicateKeyError:
            raise Conflict("An availability slot already starts at this time", code="DuplicateSlot")
    return serialize(db["availability"].find_one({"_id": slot["_id"]}))


@api.delete("/tutors/availability/{availability_id}", tags=["availability"])
def delete_availability(
    availability_id: str,
    principal: Principal = Depends(get_principal),
    db: Database = Depends(get_db),
):
    require_role(principal, TUTOR, "Only tutors can delete availability")
    slot = find_by_id(db, "availability", availability_id, "Availability not found")
    if slot["tutor"] != principal.id:
        raise Forbidden("You can only delete your own availability", code="NotSlotOwner")
    ensure_slot_unbooked(db, slot, "Cannot delete availability, there are bookings for this slot")
    db["availability"].delete_one({"_id": slot["_id"]})
    logger.info("Tutor %s deleted availability %s", principal.id, availability_id)
    return {"message": "Availability deleted successfully"}


# ----- Bookings -----

@api.post("/bookings", status_code=201, tags=["bookings"])
def create_booking(
    payload: CreateBookingRequest,
    principal: Principal = Depends(get_principal),
    db: Database = Depends(get_db),
):
    require_role(principal, STUDENT, "Only students can book tutors")
    tutor = find_by_id(db, "user", payload.tutor, "Tutor not found")
    if tutor.get("role") != TUTOR:
        raise NotFound("Tutor not found")
    ensure_time_free(db, payload.tutor, payload.booking_time)
    booking = Booking(
        student=principal.id,
        tutor=payload.tutor,
        subject=payload.subject,
        booking_time=payload.booking_time,
        status=PENDING,
    )
    booking_id = create_document(db, "booking", booking)
    logger.info("Student %s booked tutor %s (%s)", principal.id, payload.tutor, booking_id)
    return serialize(find_by_id(db, "booking", booking_id, "Booking not found"))


@api.get("/bookings/tutor", tags=["bookings"])
def tutor_bookings(principal: Principal = Depends(get_principal), db: Database = Depends(get_db)):
    require_role(principal, TUTOR, "Only tutors can view bookings")
    bookings = get_documents(db, "booking", {"tutor": principal.id}, sort=[("booking_time", ASCENDING)])
    students = users_by_id(db, [b["student"] for b in bookings], ("name", "email"))
    return [calendar_event(b, "student", students) for b in bookings]


@api.get("/bookings/student", tags=["bookings"])
def student_bookings(principal: Principal = Depends(get_principal), db: Database = Depends(get_db)):
    require_role(principal, STUDENT, "Only students can view bookings")
    bookings = get_documents(db, "booking", {"student": principal.id}, sort=[("booking_time", ASCENDING)])
    tutors = users_by_id(db, [b["tutor"] for b in bookings], ("name", "email"))
    return [calendar_event(b, "tutor", tutors) for b in bookings]


@api.patch("/bookings/{booking_id}", tags=["bookings"])
def update_booking(
    booking_id: str,
    payload: UpdateBookingRequest,
    principal: Principal = Depends(get_principal),
    db: Database = Depends(get_db),
):
    booking = find_by_id(db, "booking", booking_id, "Booking not found")
    check_booking_party(principal, booking)

    changes: Dict[str, Any] = {}
    if payload.status is not None:
        check_status_transition(principal, booking, payload.status)
        changes["status"] = payload.status
    # The new time is not checked against the tutor's availability here.
    if payload.booking_time:
        changes["booking_time"] = payload.booking_time
    if changes:
        changes["updated_at"] = utcnow()
        db["booking"].update_one({"_id": booking["_id"]}, {"$set": changes})
        logger.info("Booking %s updated by %s %s: %s", booking_id, principal.role, principal.id, sorted(changes))
    return serialize(db["booking"].find_one({"_id": booking["_id"]}))


# ----- Study groups -----

@api.post("/studyGroups", status_code=201, tags=["studyGroups"])
def create_study_group(
    payload: CreateStudyGroupRequest,
    principal: Principal = Depends(get_principal),
    db: Database = Depends(get_db),
):
    require_role(principal, STUDENT, "Only students can create study groups")
    group = StudyGroup(
        title=payload.title,
        subject=payload.subject,
        description=payload.description,
        date=day_start(payload.date),
        time=payload.time,
        duration=payload.duration,
        creator=principal.id,
        participants=[principal.id],
    )
    group_id = create_document(db, "studygroup", group)
    logger.info("Student %s created study group %s", principal.id, group_id)
    return populate_group(db, find_by_id(db, "studygroup", group_id, "Study group not found"))


@api.get("/studyGroups", tags=["studyGroups"])
def list_study_groups(db: Database = Depends(get_db)):
    groups = get_documents(db, "studygroup", sort=[("date", ASCENDING), ("time", ASCENDING)])
    return [populate_group(db, g) for g in groups]


@api.post("/studyGroups/{group_id}/join", tags=["studyGroups"])
def join_study_group(group_id: str, principal: Principal = Depends(get_principal), db: Database = Depends(get_db)):
    group = find_by_id(db, "studygroup", group_id, "Study group not found")
    require_role(principal, STUDENT, "Only students can join study groups")
    check_join(principal, group)
    db["studygroup"].update_one(
        {"_id": group["_id"]},
        {"$addToSet": {"participants": principal.id}, "$set": {"updated_at": utcnow()}},
    )
    logger.info("Student %s joined study group %s", principal.id, group_id)
    return {
        "message": "Joined study group successfully",
        "study_group": populate_group(db, db["studygroup"].find_one({"_id": group["_id"]})),
    }


@api.post("/studyGroups/{group_id}/leave", tags=["studyGroups"])
def leave_study_group(group_id: str, principal: Principal = Depends(get_principal), db: Database = Depends(get_db)):
    group = find_by_id(db, "studygroup", group_id, "Study group not found")
    require_role(principal, STUDENT, "Only students can leave study groups")
    check_leave(principal, group)
    db["studygroup"].update_one(
        {"_id": group["_id"]},
        {"$pull": {"participants": principal.id}, "$set": {"updated_at": utcnow()}},
    )
    logger.info("Student %s left study group %s", principal.id, group_id)
    return {
        "message": "Left study group successfully",
        "study_group": populate_group(db, db["studygroup"].find_one({"_id": group["_id"]})),
    }


@api.patch("/studyGroups/{group_id}", tags=["studyGroups"])
def update_study_group(
    group_id: str,
    payload: UpdateStudyGroupRequest,
    principal: Principal = Depends(get_principal),
    db: Database = Depends(get_db),
):
    group = find_by_id(db, "studygroup", group_id, "Study group not found")
    changes = payload.model_dump(exclude_unset=True)
    check_update(principal, group, changes)

    updates = {k: v for k, v in changes.items() if v is not None or k == "description"}
    if updates.get("date") is not None:
        updates["date"] = day_start(updates["date"])
    if updates:
        updates["updated_at"] = utcnow()
        db["studygroup"].update_one({"_id": group["_id"]}, {"$set": updates})
    return {
        "message": "Study group updated successfully",
        "study_group": populate_group(db, db["studygroup"].find_one({"_id": group["_id"]})),
    }


@api.delete("/studyGroups/{group_id}", tags=["studyGroups"])
def delete_study_group(group_id: str, principal: Principal = Depends(get_principal), db: Database = Depends(get_db)):
    group = find_by_id(db, "studygroup", group_id, "Study group not found")
    check_delete(principal, group)
    db["studygroup"].delete_one({"_id": group["_id"]})
    logger.info("Study group %s deleted by %s", group_id, principal.id)
    return {"message": "Study group deleted successfully"}


app.include_router(api)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
