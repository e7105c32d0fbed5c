"""
Read-side derivations over a `SchoolSnapshot`.

Nothing here mutates a store. The console screens recompute these views on
every change: the sections of the selected grade, the students of the
selected section, what sits in each timetable cell, and the attendance tally
for the sheet being filled in.

Timetable days: `DAYS` is 0-indexed from Monday while stored entries use
`day_of_week` with Sunday = 0, so day index `i` matches `day_of_week == i + 1`.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional

from identity import IdentityStore
from schemas import (
    AttendanceRecordIn,
    AttendanceStatus,
    Grade,
    SchoolSnapshot,
    Section,
    Student,
    TimeSlot,
    TimeTableEntry,
)
from store import InvalidError

DAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]

ALL_ROLES = ["system_admin", "management", "teacher", "student", "parent"]
STAFF = ["system_admin", "management"]

NAVIGATION = [
    {"id": "dashboard", "label": "Dashboard", "roles": ALL_ROLES},
    {"id": "users", "label": "User Management", "roles": STAFF},
    {"id": "admissiondashboard", "label": "Admissions", "roles": STAFF},
    {"id": "students", "label": "Students", "roles": STAFF},
    {"id": "teachers", "label": "Teachers", "roles": STAFF},
    {"id": "grades", "label": "Grades & Sections", "roles": STAFF + ["teacher"]},
    {"id": "subjects", "label": "Subjects", "roles": STAFF + ["teacher"]},
    {"id": "timetable", "label": "Time Table", "roles": ALL_ROLES},
    {"id": "attendance", "label": "Attendance", "roles": STAFF + ["teacher"]},
    {"id": "teachersassignment", "label": "Teacher Assignment", "roles": STAFF + ["teacher"]},
    {"id": "settings", "label": "Settings", "roles": STAFF},
]


def find_grade(snapshot: SchoolSnapshot, grade_id: str) -> Optional[Grade]:
    return next((g for g in snapshot.grades if g.id == grade_id), None)


def find_section(snapshot: SchoolSnapshot, section_id: str) -> Optional[Section]:
    for grade in snapshot.grades:
        for section in grade.sections:
            if section.id == section_id:
                return section
    return None


def sections_for_grade(snapshot: SchoolSnapshot, grade_id: str) -> List[Section]:
    grade = find_grade(snapshot, grade_id)
    return list(grade.sections) if grade else []


def students_for_section(snapshot: SchoolSnapshot, section_id: str) -> List[Student]:
    return [s for s in snapshot.students if s.section_id == section_id]


def subject_name(snapshot: SchoolSnapshot, subject_id: str) -> str:
    subject = next((s for s in snapshot.subjects if s.id == subject_id), None)
    return subject.name if subject else "Unknown"


def timetable_entry(
    snapshot: SchoolSnapshot, section_id: str, day_index: int, time_slot_id: str
) -> Optional[TimeTableEntry]:
    for entry in snapshot.time_table:
        if (
            entry.section_id == section_id
            and entry.day_of_week == day_index + 1
            and entry.time_slot_id == time_slot_id
        ):
            return entry
    return None


def timetable_grid(snapshot: SchoolSnapshot, section_id: str) -> List[dict]:
    """One row per time slot with a cell per day in `DAYS`.

    Break and lunch rows carry no entries.
    """
    rows = []
    for slot in snapshot.time_slots:
        cells = []
        for day_index, day in enumerate(DAYS):
            entry = None
            if slot.type == "period":
                entry = timetable_entry(snapshot, section_id, day_index, slot.id)
            cells.append({
                "day": day,
                "entry": entry,
                "subject": subject_name(snapshot, entry.subject_id) if entry else None,
            })
        rows.append({"slot": slot, "label": slot_label(slot), "cells": cells})
    return rows


def slot_label(slot: TimeSlot) -> str:
    if slot.type == "period":
        return f"Period {slot.period_number}"
    return slot.type.capitalize()


@dataclass
class AttendanceSheet:
    """Working selection for one section's attendance before it is submitted."""

    students: List[Student]
    marks: Dict[str, AttendanceStatus] = field(default_factory=dict)

    def _on_sheet(self) -> set:
        return {s.id for s in self.students}

    def set_status(self, student_id: str, status: AttendanceStatus):
        if student_id not in self._on_sheet():
            raise InvalidError(f"Student {student_id} is not on this attendance sheet")
        self.marks[student_id] = status

    def select_all(self, status: AttendanceStatus):
        self.marks = {s.id: status for s in self.students}

    def counts(self) -> Dict[str, int]:
        ids = self._on_sheet()
        tally = Counter(status for student_id, status in self.marks.items() if student_id in ids)
        return {"present": tally["present"], "absent": tally["absent"], "total": len(self.students)}

    def to_records(self, on: date, session: str, marked_by: str) -> List[AttendanceRecordIn]:
        ids = self._on_sheet()
        return [
            AttendanceRecordIn(student_id=student_id, date=on, session=session, status=status, marked_by=marked_by)
            for student_id, status in self.marks.items()
            if student_id in ids
        ]

    def clear(self):
        self.marks = {}


def attendance_summary(snapshot: SchoolSnapshot, section_id: str, on: date, session: str) -> Dict[str, int]:
    student_ids = {s.id for s in students_for_section(snapshot, section_id)}
    tally = Counter(
        r.status
        for r in snapshot.attendance
        if r.student_id in student_ids and r.date == on and r.session == session
    )
    present, absent = tally["present"], tally["absent"]
    return {
        "present": present,
        "absent": absent,
        "unmarked": len(student_ids) - present - absent,
        "total": len(student_ids),
    }


def navigation_for(identity: IdentityStore) -> List[dict]:
    return [item for item in NAVIGATION if identity.has_role(item["roles"])]


def dangling_references(snapshot: SchoolSnapshot) -> Dict[str, List[str]]:
    """Ids of records whose foreign keys no longer resolve."""
    section_ids = {s.id for g in snapshot.grades for s in g.sections}
    subject_ids = {s.id for s in snapshot.subjects}
    student_ids = {s.id for s in snapshot.students}
    return {
        "students": [s.id for s in snapshot.students if s.section_id not in section_ids],
        "time_table": [
            e.id
            for e in snapshot.time_table
            if e.section_id not in section_ids or e.subject_id not in subject_ids
        ],
        "attendance": [r.id for r in snapshot.attendance if r.student_id not in student_ids],
    }


def has_dangling_references(report: Dict[str, Iterable[str]]) -> bool:
    return any(report.values())
