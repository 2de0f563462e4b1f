from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from typing import Callable, Optional

import bcrypt
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel, EmailStr
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import get_db
from models import ROLE_ADMIN, ROLE_USER, User
from utils.brevo_email import EmailDeliveryError, send_password_reset_email, send_signup_otp_email
from utils.otp_service import OtpManager, OtpVerificationError
from utils.rate_limit import login_limit, otp_limit, password_reset_limit


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])
bearer = HTTPBearer(auto_error=False)

JWT_SECRET = os.getenv("JWT_SECRET", "change_me")
JWT_ALG = os.getenv("JWT_ALG", "HS256")
JWT_EXP_MIN = int(os.getenv("JWT_EXP_MIN", "43200"))  # 30 days default

MIN_PASSWORD_LEN = 6
RESET_NEUTRAL_MESSAGE = "If your email is registered, you will receive a reset code"


def _now() -> datetime:
    return datetime.utcnow()


def _norm_email(v: Optional[str]) -> str:
    return (v or "").strip().lower()


def _bcrypt_safe(password: str) -> bytes:
    # bcrypt only looks at the first 72 bytes; cut on a character boundary.
    return password.encode("utf-8")[:72].decode("utf-8", errors="ignore").encode("utf-8")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_bcrypt_safe(password), bcrypt.gensalt()).decode("utf-8")


def check_password(password: str, password_hash: str) -> bool:
    return bcrypt.checkpw(_bcrypt_safe(password), password_hash.encode("utf-8"))


def create_token(*, user_id: int, role: str) -> str:
    payload = {
        "sub": str(user_id),
        "role": role,
        "iat": int(_now().timestamp()),
        "exp": int((_now() + timedelta(minutes=JWT_EXP_MIN)).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: Session = Depends(get_db),
) -> User:
    if not creds or not creds.credentials:
        raise HTTPException(401, "Missing Authorization token")
    try:
        payload = jwt.decode(creds.credentials, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError:
        raise HTTPException(401, "Invalid token")
    sub = payload.get("sub")
    if not sub or not str(sub).isdigit():
        raise HTTPException(401, "Invalid token")
    user = db.get(User, int(sub))
    if not user:
        raise HTTPException(401, "User not found")
    return user


def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != ROLE_ADMIN:
        raise HTTPException(403, "Access denied. Admins only.")
    return user


def get_otp_manager(request: Request) -> OtpManager:
    return request.app.state.otp_manager


def user_out(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
    }


def _find_user(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(User.email == email).first()


def _deliver_code(send: Callable[..., None], *, flow: str, email: str, code: str) -> None:
    """
    Email delivery is best-effort. On failure the code stays valid and is
    written to the server log so an operator can hand it over.
    """
    try:
        send(to_email=email, code=code)
    except EmailDeliveryError as e:
        logger.warning("%s OTP email to %s not delivered (%s); code=%s", flow, email, e, code)
    else:
        logger.info("%s OTP sent to %s", flow, email)


def _otp_failed(e: OtpVerificationError, *, flow: str, email: str) -> HTTPException:
    logger.info("%s OTP verification failed for %s: %s", flow, email, e.kind.name)
    return HTTPException(400, e.message)


# ---------- signup ----------


class EmailIn(BaseModel):
    email: EmailStr


class OtpCheckIn(BaseModel):
    email: Optional[str] = None
    otp: Optional[str] = None


class SignupCompleteIn(BaseModel):
    email: EmailStr
    otp: str
    name: Optional[str] = None
    password: Optional[str] = None
    number: Optional[str] = None


def _issue_signup_code(payload: EmailIn, db: Session, otp: OtpManager) -> None:
    email = _norm_email(payload.email)
    if _find_user(db, email):
        raise HTTPException(400, "Email already registered")
    code = otp.signup.issue(email)
    _deliver_code(send_signup_otp_email, flow="signup", email=email, code=code)


@router.post("/signup/init")
def signup_init(
    payload: EmailIn,
    db: Session = Depends(get_db),
    otp: OtpManager = Depends(get_otp_manager),
):
    _issue_signup_code(payload, db, otp)
    return {"ok": True, "message": "OTP sent successfully"}


@router.post("/signup/resend-otp")
def signup_resend_otp(
    payload: EmailIn,
    db: Session = Depends(get_db),
    otp: OtpManager = Depends(get_otp_manager),
):
    _issue_signup_code(payload, db, otp)
    return {"ok": True, "message": "New OTP sent successfully"}


@router.post("/signup/verify-otp", dependencies=[Depends(otp_limit)])
def signup_verify_otp(payload: OtpCheckIn, otp: OtpManager = Depends(get_otp_manager)):
    email = _norm_email(payload.email)
    code = (payload.otp or "").strip()
    if not email or not code:
        raise HTTPException(400, "Email and OTP are required")
    try:
        otp.signup.verify(email, code)
    except OtpVerificationError as e:
        raise _otp_failed(e, flow="signup", email=email)
    return {"ok": True, "message": "OTP verified successfully"}


@router.post("/signup/complete", status_code=201, dependencies=[Depends(otp_limit)])
def signup_complete(
    payload: SignupCompleteIn,
    db: Session = Depends(get_db),
    otp: OtpManager = Depends(get_otp_manager),
):
    email = _norm_email(payload.email)
    try:
        otp.signup.verify(email, payload.otp.strip())
    except OtpVerificationError as e:
        raise _otp_failed(e, flow="signup", email=email)

    name = (payload.name or "").strip()
    number = (payload.number or "").strip()
    if not name or not number or not payload.password:
        raise HTTPException(400, "All fields are required")
    if len(payload.password) < MIN_PASSWORD_LEN:
        raise HTTPException(400, f"Password must be at least {MIN_PASSWORD_LEN} characters long")
    if _find_user(db, email):
        raise HTTPException(400, "Email already registered")

    user = User(
        name=name,
        email=email,
        number=number,
        password_hash=hash_password(payload.password),
        role=ROLE_USER,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        # Lost a race with another signup for the same email.
        db.rollback()
        raise HTTPException(400, "Email already registered")
    db.refresh(user)
    otp.signup.consume(email)
    logger.info("Signup completed for %s (user id %s)", email, user.id)

    return {
        "ok": True,
        "message": "User created successfully",
        "user": user_out(user),
        "access_token": create_token(user_id=user.id, role=user.role),
        "token_type": "bearer",
    }


# ---------- password reset ----------


class PasswordResetCompleteIn(BaseModel):
    email: str
    otp: str
    new_password: str


def _issue_reset_code(payload: EmailIn, db: Session, otp: OtpManager) -> bool:
    email = _norm_email(payload.email)
    if not _find_user(db, email):
        # Same answer as for a real account.
        return False
    code = otp.reset.issue(email)
    _deliver_code(send_password_reset_email, flow="reset", email=email, code=code)
    return True


@router.post("/password-reset/init", dependencies=[Depends(password_reset_limit)])
def password_reset_init(
    payload: EmailIn,
    db: Session = Depends(get_db),
    otp: OtpManager = Depends(get_otp_manager),
):
    if not _issue_reset_code(payload, db, otp):
        return {"ok": True, "message": RESET_NEUTRAL_MESSAGE}
    return {"ok": True, "message": "Password reset OTP sent successfully"}


@router.post("/password-reset/resend-otp", dependencies=[Depends(password_reset_limit)])
def password_reset_resend_otp(
    payload: EmailIn,
    db: Session = Depends(get_db),
    otp: OtpManager = Depends(get_otp_manager),
):
    if not _issue_reset_code(payload, db, otp):
        return {"ok": True, "message": RESET_NEUTRAL_MESSAGE}
    return {"ok": True, "message": "New OTP sent successfully"}


@router.post("/password-reset/verify-otp", dependencies=[Depends(otp_limit)])
def password_reset_verify_otp(
    payload: OtpCheckIn,
    db: Session = Depends(get_db),
    otp: OtpManager = Depends(get_otp_manager),
):
    email = _norm_email(payload.email)
    code = (payload.otp or "").strip()
    if not email or not code:
        raise HTTPException(400, "Email and OTP are required")
    if not _find_user(db, email):
        raise HTTPException(404, "User not found")
    try:
        otp.reset.verify(email, code)
    except OtpVerificationError as e:
        raise _otp_failed(e, flow="reset", email=email)

    # Keep the code alive long enough to submit the new password.
    otp.reset.extend(email)
    return {"ok": True, "message": "OTP verified successfully"}


@router.post("/password-reset/complete", dependencies=[Depends(otp_limit)])
def password_reset_complete(
    payload: PasswordResetCompleteIn,
    db: Session = Depends(get_db),
    otp: OtpManager = Depends(get_otp_manager),
):
    email = _norm_email(payload.email)
    try:
        otp.verify_reset_for_completion(email, payload.otp.strip())
    except OtpVerificationError as e:
        raise _otp_failed(e, flow="reset", email=email)

    if len(payload.new_password) < MIN_PASSWORD_LEN:
        raise HTTPException(400, f"Password must be at least {MIN_PASSWORD_LEN} characters long")

    user = _find_user(db, email)
    if not user:
        raise HTTPException(404, "User not found")

    user.password_hash = hash_password(payload.new_password)
    db.commit()
    otp.reset.consume(email)
    logger.info("Password reset completed for %s", email)
    return {"ok": True, "message": "Password reset successfully"}


# ---------- session ----------


class LoginIn(BaseModel):
    email: str
    password: str


@router.post("/login", dependencies=[Depends(login_limit)])
def login(payload: LoginIn, db: Session = Depends(get_db)):
    user = _find_user(db, _norm_email(payload.email))
    if not user:
        raise HTTPException(404, "User not found")
    if not check_password(payload.password, user.password_hash):
        raise HTTPException(401, "Invalid credentials")
    return {
        "ok": True,
        "access_token": create_token(user_id=user.id, role=user.role),
        "token_type": "bearer",
        "user": user_out(user),
    }


@router.get("/validate")
def validate_token(current_user: User = Depends(get_current_user)):
    return {"valid": True, "user": user_out(current_user)}


class ChangePasswordIn(BaseModel):
    current_password: str
    new_password: str


@router.post("/change-password")
def change_password(
    payload: ChangePasswordIn,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not payload.current_password or not payload.new_password:
        raise HTTPException(400, "All fields are required")
    if len(payload.new_password) < MIN_PASSWORD_LEN:
        raise HTTPException(400, f"New password must be at least {MIN_PASSWORD_LEN} characters long")
    if not check_password(payload.current_password, current_user.password_hash):
        raise HTTPException(401, "Current password is incorrect")

    current_user.password_hash = hash_password(payload.new_password)
    db.add(current_user)
    db.commit()
    return {"ok": True, "message": "Password updated successfully"}
