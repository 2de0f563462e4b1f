from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session, joinedload

from database import get_db
from models import ROLE_ADMIN, ROLE_USER, ProjectSubmission, User, UserBiodata
from routers.auth import get_current_user, require_admin, user_out

router = APIRouter(prefix="/users", tags=["users"])

ONE_DAY = timedelta(days=1)


class BiodataIn(BaseModel):
    bio: Optional[str] = None
    tech_stack: Optional[List[str]] = None
    resume: Optional[str] = None


class RoleChangeIn(BaseModel):
    user_id: int


def active_streak(submitted_at: Sequence[datetime], *, now: Optional[datetime] = None) -> int:
    """
    Length of the run of submissions, newest first, where each one is at most
    a day older than the one after it. Zero when the newest is over a day old.
    """
    dates = sorted(submitted_at, reverse=True)
    if not dates:
        return 0
    now = now or datetime.utcnow()
    current = dates[0]
    if now - current > ONE_DAY:
        return 0
    streak = 1
    for prev in dates[1:]:
        if current - prev > ONE_DAY:
            break
        streak += 1
        current = prev
    return streak


def _profile(db: Session, user: User) -> dict:
    subs = (
        db.query(ProjectSubmission)
        .options(joinedload(ProjectSubmission.project))
        .filter(ProjectSubmission.user_id == user.id)
        .order_by(ProjectSubmission.submitted_at.desc())
        .all()
    )
    completed = sum(1 for s in subs if s.is_reviewed)
    bio = user.biodata

    return {
        **user_out(user),
        "number": user.number,
        "created_at": user.created_at.isoformat(),
        "updated_at": user.updated_at.isoformat(),
        "biodata": {
            "bio": bio.bio if bio else None,
            "tech_stack": list(bio.tech_stack or []) if bio else [],
            "resume": bio.resume if bio else None,
        },
        "stats": {
            "total_projects": len(subs),
            "completed_projects": completed,
            "pending_projects": len(subs) - completed,
            "active_streak": active_streak([s.submitted_at for s in subs]),
        },
        "recent_submissions": [
            {
                "project_name": s.project.name,
                "project_description": s.project.description,
                "submitted_at": s.submitted_at.isoformat(),
                "status": "REVIEWED" if s.is_reviewed else "PENDING_REVIEW",
                "github_url": s.github_url,
                "deploy_url": s.deploy_url,
            }
            for s in subs[:5]
        ],
    }


@router.get("/profile")
def my_profile(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    return {"ok": True, "profile": _profile(db, current_user)}


@router.get("/profile/{user_id}")
def user_profile(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    if user_id != current_user.id and current_user.role != ROLE_ADMIN:
        raise HTTPException(403, "Access denied. Admin only.")
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(404, "User not found")
    return {"ok": True, "profile": _profile(db, user)}


@router.put("/profile/biodata")
def update_biodata(
    payload: BiodataIn,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    bio = db.query(UserBiodata).filter(UserBiodata.user_id == current_user.id).first()
    if bio is None:
        bio = UserBiodata(user_id=current_user.id, tech_stack=[])
        db.add(bio)

    # Fields left out of the request keep their stored value.
    if payload.bio is not None:
        bio.bio = payload.bio.strip() or None
    if payload.tech_stack is not None:
        bio.tech_stack = [t.strip() for t in payload.tech_stack if t and t.strip()]
    if payload.resume is not None:
        bio.resume = payload.resume.strip() or None

    db.commit()
    db.refresh(bio)
    return {
        "ok": True,
        "message": "Biodata updated successfully",
        "biodata": {"bio": bio.bio, "tech_stack": list(bio.tech_stack or []), "resume": bio.resume},
    }


@router.get("")
def all_users(db: Session = Depends(get_db), admin: User = Depends(require_admin)):
    users = db.query(User).order_by(User.id).all()
    return {
        "ok": True,
        "users": [{**user_out(u), "number": u.number, "created_at": u.created_at.isoformat()} for u in users],
    }


def _set_role(db: Session, user_id: int, role: str) -> User:
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(404, "User not found")
    user.role = role
    db.commit()
    db.refresh(user)
    return user


@router.post("/admin-role")
def promote_to_admin(
    payload: RoleChangeIn,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    user = _set_role(db, payload.user_id, ROLE_ADMIN)
    return {"ok": True, "message": "User role has been updated to Admin", "user": user_out(user)}


@router.post("/user-role")
def demote_to_user(
    payload: RoleChangeIn,
    db: Session = Depends(get_db),
    admin: User = Depends(require_admin),
):
    if payload.user_id == admin.id:
        raise HTTPException(400, "You cannot remove your own admin role")
    user = _set_role(db, payload.user_id, ROLE_USER)
    return {"ok": True, "message": "Admin role has been updated to User", "user": user_out(user)}
