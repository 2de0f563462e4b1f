from __future__ import annotations

import logging
import os
import time
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel
from sqlalchemy.orm import Session, joinedload

from database import get_db
from models import Course, Enrollment, Project, ProjectSubmission, User
from routers.auth import get_current_user, require_admin
from utils.brevo_email import EmailDeliveryError, send_review_email
from utils.bunny_cdn import CdnUploadError, upload_to_bunny_cdn


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/projects", tags=["projects"])

REVIEW_VIDEO_MAX_BYTES = int(os.getenv("REVIEW_VIDEO_MAX_BYTES", str(500 * 1024 * 1024)))


class ProjectIn(BaseModel):
    name: str
    description: str = ""
    due_date: datetime
    course_id: int
    notion: Optional[str] = None


class ProjectEditIn(BaseModel):
    title: str
    description: str = ""
    due_date: datetime
    notion_url: Optional[str] = None


class SubmissionIn(BaseModel):
    project_id: int
    github_url: str
    deploy_url: Optional[str] = None
    ws_url: Optional[str] = None


class ReviewIn(BaseModel):
    submission_id: int
    review_notes: str
    review_video_url: Optional[str] = None
    rating: int


def _is_http_url(v: str) -> bool:
    return v.startswith("http://") or v.startswith("https://")


def _clean_url(v: Optional[str]) -> Optional[str]:
    return (v or "").strip() or None


def _is_enrolled(db: Session, *, user_id: int, course_id: int) -> bool:
    return (
        db.query(Enrollment)
        .filter(Enrollment.user_id == user_id, Enrollment.course_id == course_id)
        .first()
        is not None
    )


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _project_out(p: Project) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "description": p.description,
        "due_date": _iso(p.due_date),
        "course_id": p.course_id,
        "notion": p.notion,
    }


def _submission_out(s: ProjectSubmission) -> dict:
    return {
        "id": s.id,
        "project_id": s.project_id,
        "user_id": s.user_id,
        "github_url": s.github_url,
        "deploy_url": s.deploy_url,
        "ws_url": s.ws_url,
        "submitted_at": _iso(s.submitted_at),
        "is_reviewed": bool(s.is_reviewed),
        "review_notes": s.review_notes,
        "review_video_url": s.review_video_url,
        "rating": s.rating,
    }


def _get_submission(db: Session, submission_id: int) -> ProjectSubmission:
    sub = (
        db.query(ProjectSubmission)
        .options(joinedload(ProjectSubmission.project), joinedload(ProjectSubmission.user))
        .filter(ProjectSubmission.id == submission_id)
        .first()
    )
    if not sub:
        raise HTTPException(404, "Submission not found")
    return sub


@router.get("/course/{course_id}")
def projects_by_course(
    course_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    if not _is_enrolled(db, user_id=user.id, course_id=course_id):
        raise HTTPException(403, "You are not enrolled in this course")

    projects = db.query(Project).filter(Project.course_id == course_id).order_by(Project.id).all()
    mine = {
        s.project_id: s
        for s in db.query(ProjectSubmission)
        .join(Project)
        .filter(Project.course_id == course_id, ProjectSubmission.user_id == user.id)
        .all()
    }

    out = []
    for p in projects:
        sub = mine.get(p.id)
        if sub is None:
            status = "not_submitted"
        elif sub.is_reviewed:
            status = "completed"
        else:
            status = "pending"
        out.append({**_project_out(p), "status": status, "submission_id": sub.id if sub else None})
    return {"ok": True, "projects": out}


@router.post("", status_code=201)
def create_project(
    payload: ProjectIn,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    if not db.get(Course, payload.course_id):
        raise HTTPException(404, "Course not found")
    if not payload.name.strip():
        raise HTTPException(400, "Project name is required")

    project = Project(
        name=payload.name.strip(),
        description=payload.description.strip(),
        due_date=payload.due_date,
        course_id=payload.course_id,
        notion=_clean_url(payload.notion),
    )
    db.add(project)
    db.commit()
    db.refresh(project)
    return {"ok": True, "message": "Project created successfully", "project": _project_out(project)}


@router.put("/{project_id}")
def edit_project(
    project_id: int,
    payload: ProjectEditIn,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    project = db.get(Project, project_id)
    if not project:
        raise HTTPException(404, "Project not found")
    if not payload.title.strip():
        raise HTTPException(400, "Project name is required")

    project.name = payload.title.strip()
    project.description = payload.description.strip()
    project.due_date = payload.due_date
    project.notion = _clean_url(payload.notion_url)
    db.commit()
    db.refresh(project)
    return {"ok": True, "project": _project_out(project)}


@router.post("/submit", status_code=201)
def submit_project(
    payload: SubmissionIn,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    project = db.get(Project, payload.project_id)
    if not project:
        raise HTTPException(404, "Project not found")
    if not _is_enrolled(db, user_id=user.id, course_id=project.course_id):
        raise HTTPException(403, "You are not enrolled in the course for this project")

    github_url = payload.github_url.strip()
    if not _is_http_url(github_url):
        raise HTTPException(400, "Repository URL must start with http:// or https://")
    deploy_url = _clean_url(payload.deploy_url)
    if deploy_url and not _is_http_url(deploy_url):
        raise HTTPException(400, "Deployment URL must start with http:// or https://")
    ws_url = _clean_url(payload.ws_url)
    if ws_url and not ws_url.startswith(("ws://", "wss://")):
        raise HTTPException(400, "WebSocket URL must start with ws:// or wss://")

    existing = (
        db.query(ProjectSubmission)
        .filter(ProjectSubmission.project_id == project.id, ProjectSubmission.user_id == user.id)
        .first()
    )
    if existing:
        raise HTTPException(400, "You have already submitted this project")

    sub = ProjectSubmission(
        project_id=project.id,
        user_id=user.id,
        github_url=github_url,
        deploy_url=deploy_url,
        ws_url=ws_url,
    )
    db.add(sub)
    db.commit()
    db.refresh(sub)
    return {"ok": True, "message": "Project submitted successfully", "submission": _submission_out(sub)}


@router.get("/submissions/course/{course_id}")
def submissions_by_course(
    course_id: int,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    subs = (
        db.query(ProjectSubmission)
        .join(Project)
        .options(joinedload(ProjectSubmission.project), joinedload(ProjectSubmission.user))
        .filter(Project.course_id == course_id)
        .order_by(ProjectSubmission.submitted_at.desc())
        .all()
    )
    return {
        "ok": True,
        "submissions": [
            {
                **_submission_out(s),
                "user": {"id": s.user.id, "name": s.user.name, "email": s.user.email},
                "project": {"id": s.project.id, "name": s.project.name, "description": s.project.description},
            }
            for s in subs
        ],
    }


@router.get("/submissions")
def all_submissions(db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    subs = (
        db.query(ProjectSubmission)
        .join(Project)
        .options(
            joinedload(ProjectSubmission.project).joinedload(Project.course),
            joinedload(ProjectSubmission.user),
        )
        .order_by(Project.course_id.asc(), Project.id.asc(), ProjectSubmission.submitted_at.desc())
        .all()
    )
    return {
        "ok": True,
        "submissions": [
            {
                **_submission_out(s),
                "project_name": s.project.name,
                "project_description": s.project.description,
                "project_due_date": _iso(s.project.due_date),
                "course_id": s.project.course.id,
                "course_name": s.project.course.name,
                "user_name": s.user.name,
                "user_email": s.user.email,
            }
            for s in subs
        ],
    }


@router.get("/admin/all")
def all_projects_for_admin(db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    projects = (
        db.query(Project)
        .options(
            joinedload(Project.course),
            joinedload(Project.submissions).joinedload(ProjectSubmission.user),
        )
        .order_by(Project.id)
        .all()
    )
    return {
        "ok": True,
        "projects": [
            {
                **_project_out(p),
                "course_name": p.course.name,
                "course_description": p.course.description or "",
                "total_submissions": len(p.submissions),
                "reviewed_submissions": sum(1 for s in p.submissions if s.is_reviewed),
                "submissions": [
                    {
                        "id": s.id,
                        "user_id": s.user_id,
                        "user_name": s.user.name,
                        "user_email": s.user.email,
                        "submitted_at": _iso(s.submitted_at),
                        "is_reviewed": bool(s.is_reviewed),
                    }
                    for s in p.submissions
                ],
            }
            for p in projects
        ],
    }


@router.get("/submissions/{submission_id}")
def submission_details(
    submission_id: int,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    sub = _get_submission(db, submission_id)
    return {
        "ok": True,
        "submission": {
            **_submission_out(sub),
            "project": {"name": sub.project.name},
            "user": {"name": sub.user.name, "email": sub.user.email},
        },
    }


@router.get("/statuses")
def my_project_statuses(db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    subs = (
        db.query(ProjectSubmission)
        .options(joinedload(ProjectSubmission.project))
        .filter(ProjectSubmission.user_id == user.id)
        .order_by(ProjectSubmission.submitted_at.desc())
        .all()
    )
    return {
        "ok": True,
        "statuses": [
            {
                "id": s.id,
                "project_id": s.project_id,
                "project_name": s.project.name,
                "project_description": s.project.description,
                "due_date": _iso(s.project.due_date),
                "submitted_at": _iso(s.submitted_at),
                "status": "REVIEWED" if s.is_reviewed else "PENDING_REVIEW",
                "review_notes": s.review_notes,
                "review_video_url": s.review_video_url,
                "rating": s.rating,
            }
            for s in subs
        ],
    }


@router.post("/submissions/{submission_id}/video")
def upload_review_video(
    submission_id: int,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    """
    Buffer the uploaded walkthrough and forward it to the CDN in one PUT.

    Runs as a sync handler so the blocking upload stays off the event loop.
    """
    sub = _get_submission(db, submission_id)

    data = file.file.read()
    if not data:
        raise HTTPException(400, "No video file provided")
    if len(data) > REVIEW_VIDEO_MAX_BYTES:
        raise HTTPException(413, f"Video too large (max {REVIEW_VIDEO_MAX_BYTES} bytes).")

    file_name = f"review_{sub.id}_{int(time.time() * 1000)}.mp4"
    try:
        video_url = upload_to_bunny_cdn(data, file_name)
    except CdnUploadError:
        raise HTTPException(502, "Failed to process video")

    sub.review_video_url = video_url
    db.commit()
    db.refresh(sub)
    return {"ok": True, "message": "Video uploaded successfully", "submission": _submission_out(sub)}


@router.post("/review")
def review_project(
    payload: ReviewIn,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    notes = payload.review_notes.strip()
    if not notes:
        raise HTTPException(400, "Review notes are required")
    if not 1 <= payload.rating <= 5:
        raise HTTPException(400, "Rating must be between 1 and 5")
    video_url = _clean_url(payload.review_video_url)
    if video_url and not _is_http_url(video_url):
        raise HTTPException(400, "Review video URL must start with http:// or https://")

    sub = _get_submission(db, payload.submission_id)
    sub.is_reviewed = True
    sub.review_notes = notes
    sub.rating = payload.rating
    # Keep a previously uploaded video unless a new URL is given.
    if video_url:
        sub.review_video_url = video_url
    db.commit()
    db.refresh(sub)
    logger.info("Submission %s reviewed by admin %s (rating %s)", sub.id, admin.id, sub.rating)

    try:
        send_review_email(
            to_email=sub.user.email,
            project_name=sub.project.name,
            review_notes=notes,
            rating=sub.rating,
        )
    except EmailDeliveryError as e:
        logger.warning("Review email for submission %s not delivered: %s", sub.id, e)

    return {"ok": True, "message": "Project reviewed successfully", "submission": _submission_out(sub)}
