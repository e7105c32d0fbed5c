"""
In-memory Domain Store for the school administration console.

`SchoolStore` holds every collection (grades with nested sections, students,
subjects, time slots, timetable entries, attendance records and the settings
singleton) and is the only way to change them. Each successful mutation bumps
`version` and pushes a deep-copied `SchoolSnapshot` to every subscriber, in
subscription order, before returning.

Reads and mutations hold a reentrant lock, so the checks and writes of one
call never interleave with another thread's.

Failures are explicit: unknown ids raise `NotFoundError`, duplicates raise
`ConflictError` and malformed input raises `InvalidError`. A call that raises
has not changed anything.
"""

import logging
import threading
from functools import wraps
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Type, TypeVar, Union

from bson import ObjectId
from pydantic import BaseModel, ValidationError

from schemas import (
    AttendanceRecord,
    AttendanceRecordIn,
    Grade,
    GradeIn,
    SchoolSettings,
    SchoolSnapshot,
    Section,
    SectionIn,
    Student,
    StudentIn,
    Subject,
    SubjectIn,
    TimeSlot,
    TimeTableEntry,
    TimeTableEntryIn,
)

log = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
Payload = Union[BaseModel, Mapping]
Listener = Callable[[SchoolSnapshot], None]


# ----------------------- Errors -----------------------
class StoreError(Exception):
    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(StoreError):
    kind = "not_found"


class ConflictError(StoreError):
    kind = "conflict"


class InvalidError(StoreError):
    kind = "invalid"


# ----------------------- Helpers -----------------------
def new_id() -> str:
    """Allocate an opaque id. Shared by every add operation."""
    return str(ObjectId())


def _now() -> datetime:
    return datetime.now(timezone.utc)


def describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "value"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def validate_payload(model: Type[M], data: Payload) -> M:
    if isinstance(data, model):
        data = data.model_dump()
    elif isinstance(data, BaseModel):
        data = data.model_dump(exclude_unset=True)
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        message = describe_validation_error(exc)
        log.warning("Rejected %s: %s", model.__name__, message)
        raise InvalidError(message) from exc


def _patch_dict(patch: Payload, protected: Iterable[str]) -> dict:
    if isinstance(patch, BaseModel):
        patch = patch.model_dump(exclude_unset=True)
    patch = dict(patch)
    for key in protected:
        if key in patch:
            log.warning("Rejected patch touching %r", key)
            raise InvalidError(f"{key} cannot be changed")
    return patch


def _merge(model: Type[M], current: M, patch: dict) -> M:
    return validate_payload(model, {**current.model_dump(), **patch})


def _missing(what: str, key: str) -> NotFoundError:
    log.warning("%s %r not found", what, key)
    return NotFoundError(f"{what} {key} not found")


def _conflict(message: str) -> ConflictError:
    log.warning("Conflict: %s", message)
    return ConflictError(message)


def synchronized(method):
    """Run a store method while holding the store lock."""

    @wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper


# ----------------------- Demo data -----------------------
DEFAULT_SETTINGS = {
    "name": "Greenwood Elementary School",
    "address": "123 Education Street, Learning City, LC 12345",
    "contact_number": "+1 (555) 123-4567",
    "working_days": [False, True, True, True, True, True, True],  # Sun-Sat
    "start_time": "08:00",
    "end_time": "15:00",
    "period_duration": 45,
    "interval_duration": 10,
    "lunch_break_duration": 30,
    "lunch_break_start": "12:00",
}

DEFAULT_TIME_SLOTS = [
    {"id": "1", "start_time": "08:00", "end_time": "08:45", "type": "period", "period_number": 1},
    {"id": "2", "start_time": "08:45", "end_time": "09:30", "type": "period", "period_number": 2},
    {"id": "3", "start_time": "09:30", "end_time": "09:45", "type": "break"},
    {"id": "4", "start_time": "09:45", "end_time": "10:30", "type": "period", "period_number": 3},
    {"id": "5", "start_time": "10:30", "end_time": "11:15", "type": "period", "period_number": 4},
    {"id": "6", "start_time": "11:15", "end_time": "12:00", "type": "period", "period_number": 5},
    {"id": "7", "start_time": "12:00", "end_time": "12:30", "type": "lunch"},
    {"id": "8", "start_time": "12:30", "end_time": "13:15", "type": "period", "period_number": 6},
    {"id": "9", "start_time": "13:15", "end_time": "14:00", "type": "period", "period_number": 7},
]

DEMO_GRADES = [
    {
        "id": "1",
        "name": "Grade 1",
        "sections": [
            {"id": "1", "name": "A", "grade_id": "1", "room_number": "101"},
            {"id": "2", "name": "B", "grade_id": "1", "room_number": "102"},
        ],
    },
    {
        "id": "2",
        "name": "Grade 2",
        "sections": [
            {"id": "3", "name": "A", "grade_id": "2", "room_number": "201"},
            {"id": "4", "name": "B", "grade_id": "2", "room_number": "202"},
        ],
    },
]

DEMO_SUBJECTS = [
    {"id": "1", "name": "English", "code": "ENG"},
    {"id": "2", "name": "Hindi", "code": "HIN"},
    {"id": "3", "name": "Mathematics", "code": "MATH"},
    {"id": "4", "name": "Science", "code": "SCI"},
    {"id": "5", "name": "Social Studies", "code": "SS"},
]

DEMO_STUDENTS = [
    {"id": "1", "student_code": "STU001", "first_name": "Alice", "last_name": "Johnson", "roll_number": "001", "section_id": "1"},
    {"id": "2", "student_code": "STU002", "first_name": "Bob", "last_name": "Smith", "roll_number": "002", "section_id": "1"},
    {"id": "3", "student_code": "STU003", "first_name": "Charlie", "last_name": "Brown", "roll_number": "003", "section_id": "2"},
]


# ----------------------- Store -----------------------
class SchoolStore:
    def __init__(
        self,
        grades: Optional[List[Grade]] = None,
        students: Optional[List[Student]] = None,
        subjects: Optional[List[Subject]] = None,
        time_table: Optional[List[TimeTableEntry]] = None,
        attendance: Optional[List[AttendanceRecord]] = None,
        settings: Optional[SchoolSettings] = None,
        time_slots: Optional[List[TimeSlot]] = None,
    ):
        self._grades: List[Grade] = list(grades or [])
        self._students: List[Student] = list(students or [])
        self._subjects: List[Subject] = list(subjects or [])
        self._time_table: List[TimeTableEntry] = list(time_table or [])
        self._attendance: List[AttendanceRecord] = list(attendance or [])
        self._settings = settings or SchoolSettings(**DEFAULT_SETTINGS)
        if time_slots is None:
            time_slots = [TimeSlot(**slot) for slot in DEFAULT_TIME_SLOTS]
        self._time_slots: List[TimeSlot] = list(time_slots)
        self._listeners: List[Listener] = []
        # reentrant: listeners and nested reads run while the lock is held
        self._lock = threading.RLock()
        self.version = 0

    @classmethod
    def with_demo_data(cls) -> "SchoolStore":
        now = _now()
        return cls(
            grades=[Grade(**g) for g in DEMO_GRADES],
            students=[Student(**s, created_at=now, updated_at=now) for s in DEMO_STUDENTS],
            subjects=[Subject(**s) for s in DEMO_SUBJECTS],
        )

    # Read access. Everything handed out is a copy.
    @property
    @synchronized
    def grades(self) -> List[Grade]:
        return [g.model_copy(deep=True) for g in self._grades]

    @property
    @synchronized
    def students(self) -> List[Student]:
        return [s.model_copy(deep=True) for s in self._students]

    @property
    @synchronized
    def subjects(self) -> List[Subject]:
        return [s.model_copy(deep=True) for s in self._subjects]

    @property
    @synchronized
    def time_slots(self) -> List[TimeSlot]:
        return [s.model_copy(deep=True) for s in self._time_slots]

    @property
    @synchronized
    def time_table(self) -> List[TimeTableEntry]:
        return [e.model_copy(deep=True) for e in self._time_table]

    @property
    @synchronized
    def attendance(self) -> List[AttendanceRecord]:
        return [r.model_copy(deep=True) for r in self._attendance]

    @property
    @synchronized
    def settings(self) -> SchoolSettings:
        return self._settings.model_copy(deep=True)

    @synchronized
    def snapshot(self) -> SchoolSnapshot:
        return SchoolSnapshot(
            version=self.version,
            grades=self.grades,
            students=self.students,
            subjects=self.subjects,
            time_slots=self.time_slots,
            time_table=self.time_table,
            attendance=self.attendance,
            settings=self.settings,
        )

    # Publish/subscribe
    @synchronized
    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _commit(self, action: str, key: str):
        self.version += 1
        log.info("%s %s (version %d)", action, key, self.version)
        if not self._listeners:
            return
        snap = self.snapshot()
        for listener in list(self._listeners):
            listener(snap)

    # ----------------------- Lookups -----------------------
    def _grade_index(self, grade_id: str) -> int:
        for i, grade in enumerate(self._grades):
            if grade.id == grade_id:
                return i
        raise _missing("Grade", grade_id)

    def _section_location(self, section_id: str) -> Tuple[Grade, int]:
        # sections are not indexed by parent, so every grade is scanned
        for grade in self._grades:
            for i, section in enumerate(grade.sections):
                if section.id == section_id:
                    return grade, i
        raise _missing("Section", section_id)

    @staticmethod
    def _index(items: List, item_id: str, what: str) -> int:
        for i, item in enumerate(items):
            if item.id == item_id:
                return i
        raise _missing(what, item_id)

    def _require_slot(self, slot_id: str) -> TimeSlot:
        slot = self._time_slots[self._index(self._time_slots, slot_id, "Time slot")]
        if slot.type != "period":
            log.warning("Time slot %r is a %s", slot_id, slot.type)
            raise InvalidError(f"Time slot {slot_id} is a {slot.type}, not a period")
        return slot

    # ----------------------- Grades -----------------------
    @synchronized
    def add_grade(self, data: Payload) -> Grade:
        payload = validate_payload(GradeIn, data)
        grade = Grade(id=new_id(), name=payload.name, sections=[])
        self._grades.append(grade)
        self._commit("add_grade", grade.id)
        return grade.model_copy(deep=True)

    @synchronized
    def update_grade(self, grade_id: str, patch: Payload) -> Grade:
        i = self._grade_index(grade_id)
        changes = _patch_dict(patch, ("id", "sections"))
        grade = _merge(Grade, self._grades[i], changes)
        self._grades[i] = grade
        self._commit("update_grade", grade_id)
        return grade.model_copy(deep=True)

    @synchronized
    def delete_grade(self, grade_id: str):
        """Remove a grade together with its sections.

        Students, timetable entries and attendance that pointed at those
        sections are left in place; see `queries.dangling_references`.
        """
        i = self._grade_index(grade_id)
        del self._grades[i]
        self._commit("delete_grade", grade_id)

    # ----------------------- Sections -----------------------
    @synchronized
    def add_section(self, data: Payload) -> Section:
        payload = validate_payload(SectionIn, data)
        grade = self._grades[self._grade_index(payload.grade_id)]
        section = Section(id=new_id(), **payload.model_dump())
        grade.sections.append(section)
        self._commit("add_section", section.id)
        return section.model_copy(deep=True)

    @synchronized
    def update_section(self, section_id: str, patch: Payload) -> Section:
        grade, i = self._section_location(section_id)
        changes = _patch_dict(patch, ("id",))
        section = _merge(Section, grade.sections[i], changes)
        if section.grade_id != grade.id:
            target = self._grades[self._grade_index(section.grade_id)]
            del grade.sections[i]
            target.sections.append(section)
        else:
            grade.sections[i] = section
        self._commit("update_section", section_id)
        return section.model_copy(deep=True)

    @synchronized
    def delete_section(self, section_id: str):
        grade, i = self._section_location(section_id)
        del grade.sections[i]
        self._commit("delete_section", section_id)

    # ----------------------- Students -----------------------
    def _check_student(self, student: StudentIn, exclude_id: Optional[str] = None):
        self._section_location(student.section_id)
        for other in self._students:
            if other.id == exclude_id:
                continue
            if other.student_code == student.student_code:
                raise _conflict(f"Student code {student.student_code} already in use")
            if other.section_id == student.section_id and other.roll_number == student.roll_number:
                raise _conflict(
                    f"Roll number {student.roll_number} already taken in section {student.section_id}"
                )

    @synchronized
    def add_student(self, data: Payload) -> Student:
        payload = validate_payload(StudentIn, data)
        self._check_student(payload)
        now = _now()
        student = Student(id=new_id(), created_at=now, updated_at=now, **payload.model_dump())
        self._students.append(student)
        self._commit("add_student", student.id)
        return student.model_copy(deep=True)

    @synchronized
    def update_student(self, student_id: str, patch: Payload) -> Student:
        i = self._index(self._students, student_id, "Student")
        changes = _patch_dict(patch, ("id", "created_at", "updated_at"))
        changes["updated_at"] = _now()
        student = _merge(Student, self._students[i], changes)
        self._check_student(student, exclude_id=student_id)
        self._students[i] = student
        self._commit("update_student", student_id)
        return student.model_copy(deep=True)

    @synchronized
    def delete_student(self, student_id: str):
        i = self._index(self._students, student_id, "Student")
        del self._students[i]
        self._commit("delete_student", student_id)

    # ----------------------- Subjects -----------------------
    def _check_subject_code(self, code: str, exclude_id: Optional[str] = None):
        wanted = code.casefold()
        for other in self._subjects:
            if other.id != exclude_id and other.code.casefold() == wanted:
                raise _conflict(f"Subject code {code} already in use")

    @synchronized
    def add_subject(self, data: Payload) -> Subject:
        payload = validate_payload(SubjectIn, data)
        self._check_subject_code(payload.code)
        subject = Subject(id=new_id(), **payload.model_dump())
        self._subjects.append(subject)
        self._commit("add_subject", subject.id)
        return subject.model_copy(deep=True)

    @synchronized
    def update_subject(self, subject_id: str, patch: Payload) -> Subject:
        i = self._index(self._subjects, subject_id, "Subject")
        subject = _merge(Subject, self._subjects[i], _patch_dict(patch, ("id",)))
        self._check_subject_code(subject.code, exclude_id=subject_id)
        self._subjects[i] = subject
        self._commit("update_subject", subject_id)
        return subject.model_copy(deep=True)

    @synchronized
    def delete_subject(self, subject_id: str):
        i = self._index(self._subjects, subject_id, "Subject")
        del self._subjects[i]
        self._commit("delete_subject", subject_id)

    # ----------------------- Timetable -----------------------
    def _check_entry(self, entry: TimeTableEntryIn, exclude_id: Optional[str] = None):
        self._section_location(entry.section_id)
        self._index(self._subjects, entry.subject_id, "Subject")
        self._require_slot(entry.time_slot_id)
        for other in self._time_table:
            if other.id == exclude_id:
                continue
            if (other.section_id, other.day_of_week, other.time_slot_id) == (
                entry.section_id,
                entry.day_of_week,
                entry.time_slot_id,
            ):
                raise _conflict(
                    f"Section {entry.section_id} already has entry {other.id} "
                    f"on day {entry.day_of_week} slot {entry.time_slot_id}"
                )

    @synchronized
    def add_timetable_entry(self, data: Payload) -> TimeTableEntry:
        payload = validate_payload(TimeTableEntryIn, data)
        self._check_entry(payload)
        entry = TimeTableEntry(id=new_id(), **payload.model_dump())
        self._time_table.append(entry)
        self._commit("add_timetable_entry", entry.id)
        return entry.model_copy(deep=True)

    @synchronized
    def update_timetable_entry(self, entry_id: str, patch: Payload) -> TimeTableEntry:
        i = self._index(self._time_table, entry_id, "Timetable entry")
        entry = _merge(TimeTableEntry, self._time_table[i], _patch_dict(patch, ("id",)))
        self._check_entry(entry, exclude_id=entry_id)
        self._time_table[i] = entry
        self._commit("update_timetable_entry", entry_id)
        return entry.model_copy(deep=True)

    @synchronized
    def delete_timetable_entry(self, entry_id: str):
        i = self._index(self._time_table, entry_id, "Timetable entry")
        del self._time_table[i]
        self._commit("delete_timetable_entry", entry_id)

    # ----------------------- Attendance -----------------------
    @synchronized
    def mark_attendance(self, records: Iterable[Payload]) -> List[AttendanceRecord]:
        """Insert a batch of attendance records, each under its own id.

        The whole batch is checked first: an unknown student or a repeated
        (student, date, session) key, inside the batch or against what is
        already stored, rejects the batch and nothing is inserted.
        An empty batch is rejected as invalid.
        """
        batch = [validate_payload(AttendanceRecordIn, r) for r in records]
        if not batch:
            log.warning("Rejected empty attendance batch")
            raise InvalidError("records: at least one attendance record is required")
        taken = {(r.student_id, r.date, r.session) for r in self._attendance}
        for record in batch:
            self._index(self._students, record.student_id, "Student")
            key = (record.student_id, record.date, record.session)
            if key in taken:
                raise _conflict(
                    f"Attendance for student {record.student_id} on {record.date} "
                    f"({record.session}) already marked"
                )
            taken.add(key)

        created = [AttendanceRecord(id=new_id(), **r.model_dump()) for r in batch]
        self._attendance.extend(created)
        self._commit("mark_attendance", f"{len(created)} records")
        return [r.model_copy(deep=True) for r in created]

    @synchronized
    def update_attendance_record(self, record_id: str, patch: Payload) -> AttendanceRecord:
        i = self._index(self._attendance, record_id, "Attendance record")
        record = _merge(AttendanceRecord, self._attendance[i], _patch_dict(patch, ("id",)))
        key = (record.student_id, record.date, record.session)
        for other in self._attendance:
            if other.id != record_id and (other.student_id, other.date, other.session) == key:
                raise _conflict(
                    f"Attendance for student {record.student_id} on {record.date} "
                    f"({record.session}) already marked"
                )
        self._attendance[i] = record
        self._commit("update_attendance_record", record_id)
        return record.model_copy(deep=True)

    # ----------------------- Settings -----------------------
    @synchronized
    def update_settings(self, patch: Payload) -> SchoolSettings:
        self._settings = _merge(SchoolSettings, self._settings, _patch_dict(patch, ()))
        self._commit("update_settings", self._settings.name)
        return self.settings

    @synchronized
    def counts(self) -> Dict[str, int]:
        return {
            "grades": len(self._grades),
            "sections": sum(len(g.sections) for g in self._grades),
            "students": len(self._students),
            "subjects": len(self._subjects),
            "time_table": len(self._time_table),
            "attendance": len(self._attendance),
        }
