import os
import logging
from datetime import datetime, timedelta, timezone, date
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from jose import jwt, JWTError

import queries
from identity import IdentityStore
from schemas import (
    AttendanceRecordUpdate,
    GradeIn,
    GradeUpdate,
    MarkAttendanceIn,
    SchoolSettingsUpdate,
    SectionIn,
    SectionUpdate,
    Session,
    StudentIn,
    StudentUpdate,
    SubjectIn,
    SubjectUpdate,
    TimeTableEntryIn,
    TimeTableEntryUpdate,
    Token,
    User,
)
from store import (
    ConflictError,
    InvalidError,
    NotFoundError,
    SchoolStore,
    StoreError,
)

log = logging.getLogger(__name__)

# Environment & Security setup
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 12))
SEED_DEMO_DATA = os.getenv("SEED_DEMO_DATA", "1").lower() not in ("0", "false", "no")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

STAFF = queries.STAFF
ATTENDANCE_TAKERS = queries.STAFF + ["teacher"]

STATUS_CODES = {
    NotFoundError: 404,
    ConflictError: 409,
    InvalidError: 422,
}

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

# Constructed once per process; tests swap them through dependency_overrides.
db = SchoolStore.with_demo_data() if SEED_DEMO_DATA else SchoolStore()
identity = IdentityStore()

app = FastAPI(title="School Administration API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------- Utility Functions -----------------------

def get_db() -> SchoolStore:
    return db


def get_identity() -> IdentityStore:
    return identity


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    status_code = STATUS_CODES.get(type(exc), 400)
    log.info("%s %s rejected: %s", request.method, request.url.path, exc.kind)
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "kind": exc.kind})


# ----------------------- Auth Helpers -----------------------
def get_current_user(token: str = Depends(oauth2_scheme), ident: IdentityStore = Depends(get_identity)) -> User:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id: Optional[str] = payload.get("sub")
        if not user_id:
            raise HTTPException(status_code=401, detail="Invalid token")
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user = ident.current_user
    if user is None or user.id != user_id:
        raise HTTPException(status_code=401, detail="Session ended")
    return user


def require_role(ident: IdentityStore, roles: List[str]):
    if not ident.has_role(roles):
        raise HTTPException(status_code=403, detail="Not authorized")


# ----------------------- Health -----------------------
@app.get("/")
def read_root():
    return {"message": "School Administration API running"}


@app.get("/health")
def health(store: SchoolStore = Depends(get_db)):
    return {
        "ok": True,
        "time": datetime.now(timezone.utc).isoformat(),
        "version": store.version,
        "counts": store.counts(),
    }


# ----------------------- Auth Endpoints -----------------------
@app.post("/auth/login", response_model=Token)
def login(user: User, ident: IdentityStore = Depends(get_identity)):
    current = ident.login(user)
    token = create_access_token({"sub": current.id, "role": current.role})
    return Token(access_token=token)


@app.post("/auth/logout")
def logout(current: User = Depends(get_current_user), ident: IdentityStore = Depends(get_identity)):
    ident.logout()
    return {"status": "logged out"}


@app.get("/auth/me", response_model=User)
def me(current: User = Depends(get_current_user)):
    return current


@app.get("/navigation")
def navigation(current: User = Depends(get_current_user), ident: IdentityStore = Depends(get_identity)):
    return {"items": queries.navigation_for(ident)}


# ----------------------- Grades & Sections -----------------------
@app.get("/grades")
def list_grades(current: User = Depends(get_current_user), store: SchoolStore = Depends(get_db)):
    return {"items": store.grades}


@app.post("/grades")
def create_grade(payload: GradeIn, current: User = Depends(get_current_user),
                 store: SchoolStore = Depends(get_db), ident: IdentityStore = Depends(get_identity)):
    require_role(ident, STAFF)
    return store.add_grade(payload)


@app.put("/grades/{grade_id}")
def update_grade(grade_id: str, payload: GradeUpdate, current: User = Depends(get_current_user),
                 store: SchoolStore = Depends(get_db), ident: IdentityStore = Depends(get_identity)):
    require_role(ident, STAFF)
    return store.update_grade(grade_id, payload)


@app.delete("/grades/{grade_id}")
def delete_grade(grade_id: str, current: User = Depends(get_current_user),
                 store: SchoolStore = Depends(get_db), ident: IdentityStore = Depends(get_identity)):
    require_role(ident, STAFF)
    store.delete_grade(grade_id)
    return {"status": "deleted"}


@app.get("/grades/{grade_id}/sections")
def list_grade_sections(grade_id: str, current: User = Depends(get_current_user), store: SchoolStore = Depends(get_db)):
    snapshot = store.snapshot()
    if queries.find_grade(snapshot, grade_id) is None:
        raise HTTPException(status_code=404, detail="Not found")
    return {"items": queries.sections_for_grade(snapshot, grade_id)}


@app.post("/sections")
def create_section(payload: SectionIn, current: User = Depends(get_current_user),
                   store: SchoolStore = Depends(get_db), ident: IdentityStore = Depends(get_identity)):
    require_role(ident, STAFF)
    return store.add_section(payload)


@app.put("/sections/{section_id}")
def update_section(section_id: str, payload: SectionUpdate, current: User = Depends(get_current_user),
                   store: SchoolStore = Depends(get_db), ident: IdentityStore = Depends(get_identity)):
    require_role(ident, STAFF)
    return store.update_section(section_id, payload)


@app.delete("/sections/{section_id}")
def delete_section(section_id: str, current: User = Depends(get_current_user),
                   store: SchoolStore = Depends(get_db), ident: IdentityStore = Depends(get_identity)):
    require_role(ident, STAFF)
    store.delete_section(section_id)
    return {"status": "deleted"}


@app.get("/sections/{section_id}/students")
def list_section_students(section_id: str, current: User = Depends(get_current_user), store: SchoolStore = Depends(get_db)):
    return {"items": queries.students_for_section(store.snapshot(), section_id)}


@app.get("/sections/{section_id}/timetable")
def section_timetable(section_id: str, current: User = Depends(get_current_user), store: SchoolStore = Depends(get_db)):
    snapshot = store.snapshot()
    if queries.find_section(snapshot, section_id) is None:
        raise HTTPException(status_code=404, detail="Not found")
    return {"days": queries.DAYS, "rows": queries.timetable_grid(snapshot, section_id)}


@app.get("/sections/{section_id}/attendance")
def section_attendance(section_id: str, date_str: date, session: Session = "morning",
                       current: User = Depends(get_current_user), store: SchoolStore = Depends(get_db)):
    snapshot = store.snapshot()
    if queries.find_section(snapshot, section_id) is None:
        raise HTTPException(status_code=404, detail="Not found")
    return queries.attendance_summary(snapshot, section_id, date_str, session)


# ----------------------- Students -----------------------
@app.get("/students")
def list_students(q: Optional[str] = None, section_id: Optional[str] = None, limit: int = 100,
                  current: User = Depends(get_current_user), store: SchoolStore = Depends(get_db)):
    items = store.students
    if section_id:
        items = [s for s in items if s.section_id == section_id]
    if q:
        needle = q.casefold()
        items = [
            s for s in items
            if needle in s.first_name.casefold()
            or needle in s.last_name.casefold()
            or needle in s.student_code.casefold()
        ]
    return {"items": items[:limit]}


@app.post("/students")
def create_student(payload: StudentIn, current: User = Depends(get_current_user),
                   store: SchoolStore = Depends(get_db), ident: IdentityStore = Depends(get_identity)):
    require_role(ident, STAFF)
    return store.add_student(payload)


@app.put("/students/{student_id}")
def update_student(student_id: str, payload: StudentUpdate, current: User = Depends(get_current_user),
                   store: SchoolStore = Depends(get_db), ident: IdentityStore = Depends(get_identity)):
    require_role(ident, STAFF)
    return store.update_student(student_id, payload)


@app.delete("/students/{student_id}")
def delete_student(student_id: str, current: User = Depends(get_current_user),
                   store: SchoolStore = Depends(get_db), ident: IdentityStore = Depends(get_identity)):
    require_role(ident, STAFF)
    store.delete_student(student_id)
    return {"status": "deleted"}


# ----------------------- Subjects -----------------------
@app.get("/subjects")
def list_subjects(current: User = Depends(get_current_user), store: SchoolStore = Depends(get_db)):
    return {"items": store.subjects}


@app.post("/subjects")
def create_subject(payload: SubjectIn, current: User = Depends(get_current_user),
                   store: SchoolStore = Depends(get_db), ident: IdentityStore = Depends(get_identity)):
    require_role(ident, STAFF)
    return store.add_subject(payload)


@app.put("/subjects/{subject_id}")
def update_subject(subject_id: str, payload: SubjectUpdate, current: User = Depends(get_current_user),
                   store: SchoolStore = Depends(get_db), ident: IdentityStore = Depends(get_identity)):
    require_role(ident, STAFF)
    return store.update_subject(subject_id, payload)


@app.delete("/subjects/{subject_id}")
def delete_subject(subject_id: str, current: User = Depends(get_current_user),
                   store: SchoolStore = Depends(get_db), ident: IdentityStore = Depends(get_identity)):
    require_role(ident, STAFF)
    store.delete_subject(subject_id)
    return {"status": "deleted"}


# ----------------------- Timetable -----------------------
@app.get("/time-slots")
def list_time_slots(current: User = Depends(get_current_user), store: SchoolStore = Depends(get_db)):
    return {"items": store.time_slots}


@app.get("/timetable")
def list_timetable(section_id: Optional[str] = None, current: User = Depends(get_current_user),
                   store: SchoolStore = Depends(get_db)):
    items = store.time_table
    if section_id:
        items = [e for e in items if e.section_id == section_id]
    return {"items": items}


@app.get("/timetable/cell")
def timetable_cell(section_id: str, day_index: int, time_slot_id: str,
                   current: User = Depends(get_current_user), store: SchoolStore = Depends(get_db)):
    snapshot = store.snapshot()
    entry = queries.timetable_entry(snapshot, section_id, day_index, time_slot_id)
    return {
        "entry": entry,
        "subject": queries.subject_name(snapshot, entry.subject_id) if entry else None,
    }


@app.post("/timetable")
def create_timetable_entry(payload: TimeTableEntryIn, current: User = Depends(get_current_user),
                           store: SchoolStore = Depends(get_db), ident: IdentityStore = Depends(get_identity)):
    require_role(ident, STAFF)
    return store.add_timetable_entry(payload)


@app.put("/timetable/{entry_id}")
def update_timetable_entry(entry_id: str, payload: TimeTableEntryUpdate, current: User = Depends(get_current_user),
                           store: SchoolStore = Depends(get_db), ident: IdentityStore = Depends(get_identity)):
    require_role(ident, STAFF)
    return store.update_timetable_entry(entry_id, payload)


@app.delete("/timetable/{entry_id}")
def delete_timetable_entry(entry_id: str, current: User = Depends(get_current_user),
                           store: SchoolStore = Depends(get_db), ident: IdentityStore = Depends(get_identity)):
    require_role(ident, STAFF)
    store.delete_timetable_entry(entry_id)
    return {"status": "deleted"}


# ----------------------- Attendance -----------------------
@app.post("/attendance")
def take_attendance(payload: MarkAttendanceIn, current: User = Depends(get_current_user),
                    store: SchoolStore = Depends(get_db), ident: IdentityStore = Depends(get_identity)):
    require_role(ident, ATTENDANCE_TAKERS)
    records = [r.model_copy(update={"marked_by": r.marked_by or current.id}) for r in payload.records]
    return {"items": store.mark_attendance(records)}


@app.get("/attendance")
def list_attendance(date_str: Optional[date] = None, session: Optional[Session] = None,
                    student_id: Optional[str] = None, limit: int = 50,
                    current: User = Depends(get_current_user), store: SchoolStore = Depends(get_db)):
    items = store.attendance
    if date_str:
        items = [r for r in items if r.date == date_str]
    if session:
        items = [r for r in items if r.session == session]
    if student_id:
        items = [r for r in items if r.student_id == student_id]
    return {"items": items[:limit]}


@app.put("/attendance/{record_id}")
def update_attendance(record_id: str, payload: AttendanceRecordUpdate, current: User = Depends(get_current_user),
                      store: SchoolStore = Depends(get_db), ident: IdentityStore = Depends(get_identity)):
    require_role(ident, ATTENDANCE_TAKERS)
    return store.update_attendance_record(record_id, payload)


# ----------------------- Settings -----------------------
@app.get("/settings")
def get_settings(current: User = Depends(get_current_user), store: SchoolStore = Depends(get_db)):
    return store.settings


@app.put("/settings")
def update_settings(payload: SchoolSettingsUpdate, current: User = Depends(get_current_user),
                    store: SchoolStore = Depends(get_db), ident: IdentityStore = Depends(get_identity)):
    require_role(ident, STAFF)
    return store.update_settings(payload)


@app.get("/integrity")
def integrity(current: User = Depends(get_current_user), store: SchoolStore = Depends(get_db),
              ident: IdentityStore = Depends(get_identity)):
    require_role(ident, STAFF)
    report = queries.dangling_references(store.snapshot())
    return {"ok": not queries.has_dangling_references(report), "dangling": report}


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
