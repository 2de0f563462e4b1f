from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from database import get_db
from models import Course, Enrollment, User
from routers.auth import get_current_user, require_admin

router = APIRouter(tags=["courses"])


class CourseIn(BaseModel):
    name: str
    description: Optional[str] = None


class EnrollIn(BaseModel):
    user_id: int


def _course_out(c: Course) -> dict:
    return {"id": c.id, "name": c.name, "description": c.description or ""}


@router.post("/courses", status_code=201)
def create_course(
    payload: CourseIn,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    if not payload.name.strip():
        raise HTTPException(400, "Course name is required")
    course = Course(name=payload.name.strip(), description=(payload.description or "").strip() or None)
    db.add(course)
    db.commit()
    db.refresh(course)
    return {"ok": True, "course": _course_out(course)}


@router.get("/courses")
def list_courses(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    courses = db.query(Course).order_by(Course.id).all()
    return {"ok": True, "courses": [_course_out(c) for c in courses]}


@router.post("/courses/{course_id}/enroll", status_code=201)
def enroll_user(
    course_id: int,
    payload: EnrollIn,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    if not db.get(Course, course_id):
        raise HTTPException(404, "Course not found")
    if not db.get(User, payload.user_id):
        raise HTTPException(404, "User not found")

    existing = (
        db.query(Enrollment)
        .filter(Enrollment.course_id == course_id, Enrollment.user_id == payload.user_id)
        .first()
    )
    if existing:
        raise HTTPException(400, "User is already enrolled in this course")

    rec = Enrollment(course_id=course_id, user_id=payload.user_id)
    db.add(rec)
    db.commit()
    return {"ok": True, "enrollment_id": rec.id}
