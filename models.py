from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base


ROLE_USER = "USER"
ROLE_ADMIN = "ADMIN"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)

    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    # Phone number, kept as entered.
    number = Column(String, nullable=False)

    # bcrypt hash. Never store plaintext.
    password_hash = Column(String, nullable=False)

    role = Column(String, default=ROLE_USER, nullable=False)  # "USER" | "ADMIN"

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    biodata = relationship("UserBiodata", back_populates="user", uselist=False)
    submissions = relationship("ProjectSubmission", back_populates="user")


class UserBiodata(Base):
    __tablename__ = "user_biodata"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    bio = Column(Text, nullable=True)
    tech_stack = Column(JSON, default=list, nullable=False)
    resume = Column(String, nullable=True)  # URL

    user = relationship("User", back_populates="biodata")


class Course(Base):
    __tablename__ = "courses"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    projects = relationship("Project", back_populates="course")


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (UniqueConstraint("user_id", "course_id", name="uq_enrollment_user_course"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    user = relationship("User")
    course = relationship("Course")


class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    due_date = Column(DateTime, nullable=False)
    notion = Column(String, nullable=True)  # assignment brief URL

    course = relationship("Course", back_populates="projects")
    submissions = relationship("ProjectSubmission", back_populates="project")


class ProjectSubmission(Base):
    __tablename__ = "project_submissions"
    __table_args__ = (UniqueConstraint("project_id", "user_id", name="uq_submission_project_user"),)

    id = Column(Integer, primary_key=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    github_url = Column(String, nullable=False)
    deploy_url = Column(String, nullable=True)
    ws_url = Column(String, nullable=True)
    submitted_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    # Review state, filled in by an admin.
    is_reviewed = Column(Boolean, default=False, nullable=False)
    review_notes = Column(Text, nullable=True)
    review_video_url = Column(String, nullable=True)
    rating = Column(Integer, nullable=True)  # 1..5

    project = relationship("Project", back_populates="submissions")
    user = relationship("User", back_populates="submissions")
