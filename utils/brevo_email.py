from __future__ import annotations

import logging
import os
from datetime import datetime
from html import escape
from typing import Optional

import requests


logger = logging.getLogger(__name__)

BREVO_URL = "https://api.brevo.com/v3/smtp/email"
SENDER_NAME = os.getenv("EMAIL_SENDER_NAME", "Project Review")
DASHBOARD_URL = os.getenv("DASHBOARD_URL", "http://localhost:5173/dashboard")
OTP_EXP_MIN = int(os.getenv("OTP_EXP_MINUTES", "10"))


class EmailDeliveryError(RuntimeError):
    pass


def send_email(*, to_email: str, subject: str, html: str, text: Optional[str] = None) -> None:
    """
    Sends email using Brevo Transactional Email API.
    Requires:
      - BREVO_API_KEY
      - BREVO_FROM (email) OR EMAIL_FROM
    """
    api_key = os.getenv("BREVO_API_KEY")
    if not api_key:
        raise EmailDeliveryError("BREVO_API_KEY is not set")

    from_email = os.getenv("BREVO_FROM") or os.getenv("EMAIL_FROM")
    if not from_email:
        raise EmailDeliveryError("BREVO_FROM (or EMAIL_FROM) is not set")

    payload = {
        "sender": {"email": from_email, "name": SENDER_NAME},
        "to": [{"email": to_email}],
        "subject": subject,
        "htmlContent": html,
    }
    if text:
        payload["textContent"] = text

    try:
        resp = requests.post(
            BREVO_URL,
            headers={
                "accept": "application/json",
                "api-key": api_key,
                "content-type": "application/json",
            },
            json=payload,
            timeout=15,
        )
    except requests.RequestException as e:
        raise EmailDeliveryError(f"Brevo request failed: {e}") from e
    if resp.status_code >= 300:
        raise EmailDeliveryError(f"Brevo send failed ({resp.status_code}): {resp.text}")


def _otp_html(*, heading: str, intro: str, label: str, code: str) -> str:
    return f"""
    <div style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto">
      <h2>{heading}</h2>
      <p>{intro}</p>
      <p>{label}</p>
      <div style="font-size:28px;font-weight:700;letter-spacing:4px">{code}</div>
      <p>This code expires in {OTP_EXP_MIN} minutes.</p>
      <p style="color:#e53e3e">Never share this code with anyone.</p>
      <p style="color:#718096">&copy; {datetime.utcnow().year} {SENDER_NAME}</p>
    </div>
    """


def send_signup_otp_email(*, to_email: str, code: str) -> None:
    html = _otp_html(
        heading="Verify your email",
        intro="Thanks for signing up. Use the code below to finish creating your account.",
        label="Your verification code is:",
        code=code,
    )
    send_email(
        to_email=to_email,
        subject=f"Verify Your Email - {SENDER_NAME}",
        html=html,
        text=f"Your verification code is: {code}. This code will expire in {OTP_EXP_MIN} minutes.",
    )


def send_password_reset_email(*, to_email: str, code: str) -> None:
    html = _otp_html(
        heading="Password reset request",
        intro="We received a request to reset your password.",
        label="Your password reset code is:",
        code=code,
    )
    send_email(
        to_email=to_email,
        subject=f"Password Reset - {SENDER_NAME}",
        html=html,
        text=f"Your password reset code is: {code}. This code will expire in {OTP_EXP_MIN} minutes.",
    )


def send_review_email(*, to_email: str, project_name: str, review_notes: str, rating: int) -> None:
    html = f"""
    <div style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto">
      <h2>Project review complete</h2>
      <p>Your project "{escape(project_name)}" has been reviewed.</p>
      <p style="white-space:pre-wrap">{escape(review_notes)}</p>
      <p><b>Project Rating: {rating}/5</b></p>
      <p>A video review may be available on your dashboard.</p>
      <p><a href="{DASHBOARD_URL}">View review on dashboard</a></p>
    </div>
    """
    send_email(
        to_email=to_email,
        subject=f"Project Review Complete - {project_name}",
        html=html,
        text=(
            f'Your project "{project_name}" has been reviewed.\n\n'
            f"Review Notes: {review_notes}\n\nProject Rating: {rating}/5\n\n"
            f"See your dashboard at {DASHBOARD_URL}"
        ),
    )
