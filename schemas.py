"""
Schemas for the School Administration store (in-memory, via Pydantic models)
Each collection model has a matching `*In` payload (everything but the id)
and an `*Update` payload (every field optional) used for shallow-merge patches.
"""

from pydantic import BaseModel, ConfigDict, Field, EmailStr, StringConstraints
from typing import Annotated, Optional, List, Literal
from datetime import date, datetime

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
ClockTime = Annotated[str, StringConstraints(pattern=r"^([01]\d|2[0-3]):[0-5]\d$")]

Role = Literal["system_admin", "management", "teacher", "student", "parent"]
StudentStatus = Literal["active", "inactive", "graduated", "transferred"]
Session = Literal["morning", "afternoon"]
AttendanceStatus = Literal["present", "absent"]
SlotType = Literal["period", "break", "lunch"]


class Record(BaseModel):
    model_config = ConfigDict(extra="forbid")


# Identity
class User(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: NonEmptyStr
    name: NonEmptyStr = Field(..., description="Full name")
    email: EmailStr
    role: Role
    avatar_url: Optional[str] = None


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


# Grades & sections
class SectionIn(Record):
    name: NonEmptyStr
    grade_id: NonEmptyStr
    room_number: NonEmptyStr


class Section(SectionIn):
    id: str


class SectionUpdate(Record):
    name: Optional[str] = None
    grade_id: Optional[str] = None
    room_number: Optional[str] = None


class GradeIn(Record):
    name: NonEmptyStr = Field(..., description="Display name e.g. Grade 1")


class Grade(GradeIn):
    id: str
    sections: List[Section] = Field(default_factory=list)


class GradeUpdate(Record):
    name: Optional[str] = None


# Students
class StudentIn(Record):
    student_code: NonEmptyStr = Field(..., description="Display code e.g. STU001")
    first_name: NonEmptyStr
    last_name: NonEmptyStr
    section_id: NonEmptyStr
    roll_number: NonEmptyStr
    status: StudentStatus = "active"
    email: Optional[EmailStr] = None
    gender: Optional[Literal["male", "female", "other"]] = None
    dob: Optional[date] = None
    address: Optional[str] = None
    guardian_name: Optional[str] = None
    guardian_contact: Optional[str] = None
    admission_date: Optional[date] = None


class Student(StudentIn):
    id: str
    created_at: datetime
    updated_at: datetime


class StudentUpdate(Record):
    student_code: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    section_id: Optional[str] = None
    roll_number: Optional[str] = None
    status: Optional[StudentStatus] = None
    email: Optional[EmailStr] = None
    gender: Optional[Literal["male", "female", "other"]] = None
    dob: Optional[date] = None
    address: Optional[str] = None
    guardian_name: Optional[str] = None
    guardian_contact: Optional[str] = None
    admission_date: Optional[date] = None


# Subjects
class SubjectIn(Record):
    name: NonEmptyStr
    code: NonEmptyStr


class Subject(SubjectIn):
    id: str


class SubjectUpdate(Record):
    name: Optional[str] = None
    code: Optional[str] = None


# Timetable
class TimeSlot(Record):
    id: str
    start_time: ClockTime
    end_time: ClockTime
    type: SlotType = "period"
    period_number: Optional[int] = None


class TimeTableEntryIn(Record):
    section_id: NonEmptyStr
    subject_id: NonEmptyStr
    teacher_id: NonEmptyStr
    time_slot_id: NonEmptyStr
    day_of_week: int = Field(..., ge=0, le=6, description="0 = Sunday, 1 = Monday, ...")


class TimeTableEntry(TimeTableEntryIn):
    id: str


class TimeTableEntryUpdate(Record):
    section_id: Optional[str] = None
    subject_id: Optional[str] = None
    teacher_id: Optional[str] = None
    time_slot_id: Optional[str] = None
    day_of_week: Optional[int] = None


# Attendance
class AttendanceRecordIn(Record):
    student_id: NonEmptyStr
    date: date
    session: Session = "morning"
    status: AttendanceStatus = "present"
    marked_by: str = ""


class AttendanceRecord(AttendanceRecordIn):
    id: str


class AttendanceRecordUpdate(Record):
    session: Optional[Session] = None
    status: Optional[AttendanceStatus] = None
    marked_by: Optional[str] = None


class MarkAttendanceIn(Record):
    records: List[AttendanceRecordIn]


# Settings (singleton)
class SchoolSettings(Record):
    name: NonEmptyStr
    address: str = ""
    contact_number: str = ""
    working_days: List[bool] = Field(..., min_length=7, max_length=7, description="Index 0 = Sunday")
    start_time: ClockTime
    end_time: ClockTime
    period_duration: int = Field(..., gt=0, description="Minutes")
    interval_duration: int = Field(..., ge=0, description="Minutes")
    lunch_break_duration: int = Field(..., ge=0, description="Minutes")
    lunch_break_start: ClockTime


class SchoolSettingsUpdate(Record):
    name: Optional[str] = None
    address: Optional[str] = None
    contact_number: Optional[str] = None
    working_days: Optional[List[bool]] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    period_duration: Optional[int] = None
    interval_duration: Optional[int] = None
    lunch_break_duration: Optional[int] = None
    lunch_break_start: Optional[str] = None


class SchoolSnapshot(BaseModel):
    """Point-in-time copy of every collection, handed to store subscribers."""

    version: int
    grades: List[Grade]
    students: List[Student]
    subjects: List[Subject]
    time_slots: List[TimeSlot]
    time_table: List[TimeTableEntry]
    attendance: List[AttendanceRecord]
    settings: SchoolSettings
