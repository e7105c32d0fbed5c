from datetime import date

import pytest

import queries
from identity import IdentityStore
from store import InvalidError


def add_entry(store, **overrides):
    payload = {"section_id": "1", "subject_id": "3", "teacher_id": "7", "time_slot_id": "1", "day_of_week": 1}
    payload.update(overrides)
    return store.add_timetable_entry(payload)


def test_sections_for_grade(store):
    snapshot = store.snapshot()
    assert [s.id for s in queries.sections_for_grade(snapshot, "1")] == ["1", "2"]
    assert queries.sections_for_grade(snapshot, "404") == []


def test_added_section_shows_up_under_its_grade(store):
    section = store.add_section({"name": "C", "grade_id": "1", "room_number": "103"})
    snapshot = store.snapshot()
    assert section.id in [s.id for s in queries.sections_for_grade(snapshot, "1")]
    assert section.id not in [s.id for s in queries.sections_for_grade(snapshot, "2")]


def test_students_for_section(store):
    snapshot = store.snapshot()
    assert [s.first_name for s in queries.students_for_section(snapshot, "1")] == ["Alice", "Bob"]
    assert [s.first_name for s in queries.students_for_section(snapshot, "2")] == ["Charlie"]
    assert queries.students_for_section(snapshot, "3") == []


def test_find_section(store):
    snapshot = store.snapshot()
    assert queries.find_section(snapshot, "4").grade_id == "2"
    assert queries.find_section(snapshot, "404") is None


@pytest.mark.parametrize("day_index", range(6))
def test_timetable_entry_uses_monday_one(store, day_index):
    entry = add_entry(store, day_of_week=day_index + 1)
    snapshot = store.snapshot()
    assert queries.timetable_entry(snapshot, "1", day_index, "1").id == entry.id
    if day_index > 0:
        assert queries.timetable_entry(snapshot, "1", day_index - 1, "1") is None


def test_timetable_entry_ignores_sunday_entries(store):
    add_entry(store, day_of_week=0)
    snapshot = store.snapshot()
    assert all(queries.timetable_entry(snapshot, "1", i, "1") is None for i in range(6))


def test_timetable_grid(store):
    add_entry(store, day_of_week=1, time_slot_id="1", subject_id="3")
    add_entry(store, day_of_week=5, time_slot_id="9", subject_id="1")
    rows = queries.timetable_grid(store.snapshot(), "1")

    assert len(rows) == 9
    assert [len(r["cells"]) for r in rows] == [6] * 9
    assert rows[0]["label"] == "Period 1"
    assert rows[2]["label"] == "Break"
    assert rows[6]["label"] == "Lunch"
    assert rows[0]["cells"][0]["subject"] == "Mathematics"
    assert rows[8]["cells"][4]["subject"] == "English"
    assert rows[8]["cells"][4]["day"] == "Friday"
    assert all(c["entry"] is None for c in rows[2]["cells"])


def test_subject_name(store):
    snapshot = store.snapshot()
    assert queries.subject_name(snapshot, "4") == "Science"
    assert queries.subject_name(snapshot, "404") == "Unknown"


def test_attendance_sheet_tally(store):
    sheet = queries.AttendanceSheet(queries.students_for_section(store.snapshot(), "1"))
    assert sheet.counts() == {"present": 0, "absent": 0, "total": 2}

    sheet.set_status("1", "present")
    assert sheet.counts() == {"present": 1, "absent": 0, "total": 2}

    sheet.select_all("absent")
    assert sheet.counts() == {"present": 0, "absent": 2, "total": 2}

    sheet.set_status("2", "present")
    assert sheet.counts() == {"present": 1, "absent": 1, "total": 2}


def test_attendance_sheet_submits(store):
    sheet = queries.AttendanceSheet(queries.students_for_section(store.snapshot(), "1"))
    sheet.select_all("present")
    records = sheet.to_records(date(2024, 1, 1), "morning", "7")
    created = store.mark_attendance(records)
    sheet.clear()

    assert len({r.id for r in created}) == 2
    assert sheet.marks == {}
    summary = queries.attendance_summary(store.snapshot(), "1", date(2024, 1, 1), "morning")
    assert summary == {"present": 2, "absent": 0, "unmarked": 0, "total": 2}


def test_attendance_summary_counts_unmarked(store):
    store.mark_attendance([{"student_id": "1", "date": "2024-01-01", "status": "absent"}])
    snapshot = store.snapshot()
    assert queries.attendance_summary(snapshot, "1", date(2024, 1, 1), "morning") == {
        "present": 0,
        "absent": 1,
        "unmarked": 1,
        "total": 2,
    }
    assert queries.attendance_summary(snapshot, "1", date(2024, 1, 1), "afternoon")["unmarked"] == 2


@pytest.mark.parametrize("role,expected", [
    ("system_admin", 11),
    ("management", 11),
    ("teacher", 6),
    ("student", 2),
    ("parent", 2),
])
def test_navigation_for(role, expected):
    identity = IdentityStore()
    identity.login({"id": "u", "name": "U", "email": "u@school.com", "role": role})
    items = queries.navigation_for(identity)
    assert len(items) == expected
    assert items[0]["id"] == "dashboard"


def test_navigation_for_anonymous():
    assert queries.navigation_for(IdentityStore()) == []


def test_dangling_references(store):
    entry = add_entry(store)
    store.mark_attendance([{"student_id": "3", "date": "2024-01-01"}])
    assert not queries.has_dangling_references(queries.dangling_references(store.snapshot()))

    store.delete_grade("1")
    store.delete_student("3")
    report = queries.dangling_references(store.snapshot())
    assert report["students"] == ["1", "2"]
    assert report["time_table"] == [entry.id]
    assert len(report["attendance"]) == 1
    assert queries.has_dangling_references(report)


def test_attendance_sheet_only_takes_its_own_students(store):
    sheet = queries.AttendanceSheet(queries.students_for_section(store.snapshot(), "1"))
    sheet.select_all("present")
    with pytest.raises(InvalidError):
        sheet.set_status("3", "present")
    assert sheet.counts() == {"present": 2, "absent": 0, "total": 2}


def test_attendance_sheet_ignores_marks_for_other_students(store):
    sheet = queries.AttendanceSheet(
        queries.students_for_section(store.snapshot(), "1"),
        marks={"1": "present", "3": "present"},
    )
    assert sheet.counts() == {"present": 1, "absent": 0, "total": 2}
    assert [r.student_id for r in sheet.to_records(date(2024, 1, 1), "morning", "7")] == ["1"]


@pytest.mark.parametrize("day_of_week", range(1, 6))
def test_timetable_entry_does_not_match_same_number(store, day_of_week):
    add_entry(store, day_of_week=day_of_week)
    snapshot = store.snapshot()
    assert queries.timetable_entry(snapshot, "1", day_of_week, "1") is None
    assert queries.timetable_entry(snapshot, "1", day_of_week - 1, "1") is not None
