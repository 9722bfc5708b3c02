"""
Course Correct Database Schemas

Each Pydantic model represents a MongoDB collection. The collection name is the lowercase of the class name.
References to other documents are stored as string ids.

Collections:
- User: tutor and student accounts
- Session: auth sessions
- Availability: a tutor's open slot for one subject on one day
- Booking: a student's reserved session with a tutor
- StudyGroup: student-run study sessions
"""

from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal
from datetime import datetime

Role = Literal["tutor", "student"]
BookingStatus = Literal["pending", "confirmed", "completed", "cancelled"]


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Login email")
    password_hash: str = Field(..., description="Hashed password")
    role: Role = Field(..., description="tutor|student")
    subjects: List[str] = Field(default_factory=list, description="Subjects a tutor teaches")
    grade_level: Optional[str] = None


class Session(BaseModel):
    user_id: str
    token: str
    expires_at: Optional[datetime] = None


class Availability(BaseModel):
    tutor: str = Field(..., description="Tutor user id")
    day: datetime = Field(..., description="Calendar day at 00:00")
    subject: str
    start_time: datetime
    end_time: datetime
    is_active: bool = True


class Booking(BaseModel):
    student: str = Field(..., description="Student user id")
    tutor: str = Field(..., description="Tutor user id")
    subject: str
    booking_time: datetime
    status: BookingStatus = "pending"


class StudyGroup(BaseModel):
    title: str
    subject: str
    description: Optional[str] = None
    date: datetime = Field(..., description="Calendar day at 00:00")
    time: str = Field(..., description="Start time of day, e.g. 14:30")
    duration: int = Field(..., gt=0, description="Minutes")
    creator: str = Field(..., description="Creator user id")
    participants: List[str] = Field(default_factory=list, description="User ids, creator included")
