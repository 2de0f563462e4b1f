import os
import sys

import yaml
from sqlalchemy.orm import Session

# Add repository root to path so we can import models/db
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from database import SessionLocal, engine, Base  # noqa: E402
from models import ROLE_ADMIN, Course, User  # noqa: E402
from routers.auth import hash_password  # noqa: E402


def load_seed_data(path: str = None) -> dict:
    """
    Create the admin accounts and courses listed in seed_data.yml.

    Rows that already exist (same email / same course name) are left alone,
    so the script can be re-run safely.
    """
    path = path or os.path.join(os.path.dirname(__file__), "seed_data.yml")
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    Base.metadata.create_all(bind=engine)
    db: Session = SessionLocal()
    added = {"admins": 0, "courses": 0}
    try:
        for a in data.get("admins", []) or []:
            email = str(a["email"]).strip().lower()
            if db.query(User).filter(User.email == email).first():
                print(f"Admin {email} already exists. Skipping.")
                continue
            db.add(
                User(
                    name=a.get("name", "Admin"),
                    email=email,
                    number=str(a.get("number", "")),
                    password_hash=hash_password(str(a["password"])),
                    role=ROLE_ADMIN,
                )
            )
            added["admins"] += 1

        for c in data.get("courses", []) or []:
            name = str(c["name"]).strip()
            if db.query(Course).filter(Course.name == name).first():
                print(f"Course {name} already exists. Skipping.")
                continue
            db.add(Course(name=name, description=c.get("description")))
            added["courses"] += 1

        db.commit()
    finally:
        db.close()
    print(f"Seed data loaded: {added['admins']} admins, {added['courses']} courses.")
    return added


if __name__ == "__main__":
    load_seed_data(sys.argv[1] if len(sys.argv) > 1 else None)
