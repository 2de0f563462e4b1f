import pytest

from models import User
from routers import auth as auth_module
from utils.brevo_email import EmailDeliveryError


def _last_code(outbox, kind):
    return [m for m in outbox if m["kind"] == kind][-1]["code"]


def _signup_payload(code, **overrides):
    body = {
        "email": "alice@x.com",
        "otp": code,
        "name": "Alice",
        "password": "secret123",
        "number": "5550100",
    }
    body.update(overrides)
    return body


def test_signup_happy_path(client, outbox, db):
    r = client.post("/api/auth/signup/init", json={"email": "Alice@X.com"})
    assert r.status_code == 200
    assert r.json()["message"] == "OTP sent successfully"
    code = _last_code(outbox, "signup")
    assert outbox[-1]["to_email"] == "alice@x.com"

    r = client.post("/api/auth/signup/verify-otp", json={"email": "alice@x.com", "otp": code})
    assert r.status_code == 200

    r = client.post("/api/auth/signup/complete", json=_signup_payload(code))
    assert r.status_code == 201
    body = r.json()
    assert body["user"]["email"] == "alice@x.com"
    assert body["user"]["role"] == "USER"
    assert body["access_token"]

    assert db.query(User).filter(User.email == "alice@x.com").count() == 1

    # the code was consumed
    r = client.post("/api/auth/signup/verify-otp", json={"email": "alice@x.com", "otp": code})
    assert r.status_code == 400
    assert r.json()["detail"] == "No OTP request found"


def test_signup_init_rejects_existing_account(client, make_user, outbox):
    make_user("alice@x.com")
    r = client.post("/api/auth/signup/init", json={"email": "alice@x.com"})
    assert r.status_code == 400
    assert r.json()["detail"] == "Email already registered"
    assert outbox == []


def test_signup_resend_replaces_code(client, outbox, otp_manager):
    client.post("/api/auth/signup/init", json={"email": "bob@x.com"})
    first = _last_code(outbox, "signup")
    r = client.post("/api/auth/signup/resend-otp", json={"email": "bob@x.com"})
    assert r.json()["message"] == "New OTP sent successfully"
    second = _last_code(outbox, "signup")
    assert otp_manager.signup.get("bob@x.com").code == second
    if first != second:
        r = client.post("/api/auth/signup/verify-otp", json={"email": "bob@x.com", "otp": first})
        assert r.json()["detail"] == "Invalid OTP"


def test_signup_verify_wrong_code(client, outbox):
    client.post("/api/auth/signup/init", json={"email": "alice@x.com"})
    code = _last_code(outbox, "signup")
    wrong = "000000" if code != "000000" else "111111"
    r = client.post("/api/auth/signup/verify-otp", json={"email": "alice@x.com", "otp": wrong})
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid OTP"


def test_signup_expired_code(client, outbox, clock):
    client.post("/api/auth/signup/init", json={"email": "alice@x.com"})
    code = _last_code(outbox, "signup")
    clock.advance(minutes=11)
    r = client.post("/api/auth/signup/complete", json=_signup_payload(code))
    assert r.status_code == 400
    assert r.json()["detail"] == "OTP expired"
    r = client.post("/api/auth/signup/complete", json=_signup_payload(code))
    assert r.json()["detail"] == "No OTP request found"


def test_signup_complete_requires_fields_and_keeps_code(client, outbox, otp_manager):
    client.post("/api/auth/signup/init", json={"email": "alice@x.com"})
    code = _last_code(outbox, "signup")
    r = client.post("/api/auth/signup/complete", json=_signup_payload(code, number=""))
    assert r.status_code == 400
    assert r.json()["detail"] == "All fields are required"
    assert otp_manager.signup.get("alice@x.com") is not None


def test_signup_cannot_choose_admin_role(client, outbox):
    client.post("/api/auth/signup/init", json={"email": "alice@x.com"})
    code = _last_code(outbox, "signup")
    r = client.post("/api/auth/signup/complete", json=_signup_payload(code, role="ADMIN"))
    assert r.status_code == 201
    assert r.json()["user"]["role"] == "USER"


def test_email_failure_is_not_fatal(client, otp_manager, monkeypatch, caplog):
    def _boom(**kwargs):
        raise EmailDeliveryError("BREVO_API_KEY is not set")

    monkeypatch.setattr(auth_module, "send_signup_otp_email", _boom)
    with caplog.at_level("WARNING", logger="routers.auth"):
        r = client.post("/api/auth/signup/init", json={"email": "alice@x.com"})
    assert r.status_code == 200
    code = otp_manager.signup.get("alice@x.com").code
    assert code in caplog.text

    r = client.post("/api/auth/signup/verify-otp", json={"email": "alice@x.com", "otp": code})
    assert r.status_code == 200


def test_password_reset_flow(client, make_user, outbox, clock, otp_manager):
    make_user("alice@x.com", password="oldpass1")

    r = client.post("/api/auth/password-reset/init", json={"email": "alice@x.com"})
    assert r.json()["message"] == "Password reset OTP sent successfully"
    code = _last_code(outbox, "reset")

    clock.advance(minutes=9)
    r = client.post("/api/auth/password-reset/verify-otp", json={"email": "alice@x.com", "otp": code})
    assert r.status_code == 200

    # past the initial 10 minute window but inside the 15 minute extension
    clock.advance(minutes=12)
    r = client.post(
        "/api/auth/password-reset/complete",
        json={"email": "alice@x.com", "otp": code, "new_password": "newpass1"},
    )
    assert r.status_code == 200
    assert otp_manager.reset.get("alice@x.com") is None

    r = client.post("/api/auth/login", json={"email": "alice@x.com", "password": "oldpass1"})
    assert r.status_code == 401
    r = client.post("/api/auth/login", json={"email": "alice@x.com", "password": "newpass1"})
    assert r.status_code == 200


def test_password_reset_unknown_email_is_neutral(client, outbox, otp_manager):
    r = client.post("/api/auth/password-reset/init", json={"email": "ghost@x.com"})
    assert r.status_code == 200
    assert r.json()["message"].startswith("If your email is registered")
    assert outbox == []
    assert otp_manager.reset.get("ghost@x.com") is None


def test_password_reset_verify_validation(client, make_user):
    r = client.post("/api/auth/password-reset/verify-otp", json={"email": "alice@x.com"})
    assert r.status_code == 400
    r = client.post("/api/auth/password-reset/verify-otp", json={"email": "ghost@x.com", "otp": "123456"})
    assert r.status_code == 404


def test_signup_code_not_valid_for_reset(client, make_user, outbox):
    client.post("/api/auth/signup/init", json={"email": "new@x.com"})
    code = _last_code(outbox, "signup")
    make_user("new@x.com")
    r = client.post("/api/auth/password-reset/verify-otp", json={"email": "new@x.com", "otp": code})
    assert r.status_code == 400
    assert r.json()["detail"] == "No OTP request found"


def test_password_reset_complete_without_record_fails_closed(client, make_user):
    make_user("alice@x.com")
    r = client.post(
        "/api/auth/password-reset/complete",
        json={"email": "alice@x.com", "otp": "123456", "new_password": "newpass1"},
    )
    assert r.status_code == 400
    assert r.json()["detail"] == "No OTP request found"


def test_password_reset_complete_reseed_policy(client, make_user, otp_manager):
    make_user("alice@x.com")
    otp_manager.reseed_reset_on_missing = True
    r = client.post(
        "/api/auth/password-reset/complete",
        json={"email": "alice@x.com", "otp": "123456", "new_password": "newpass1"},
    )
    assert r.status_code == 200
    assert otp_manager.reset.get("alice@x.com") is None


def test_password_reset_short_password(client, make_user, outbox):
    make_user("alice@x.com")
    client.post("/api/auth/password-reset/init", json={"email": "alice@x.com"})
    code = _last_code(outbox, "reset")
    r = client.post(
        "/api/auth/password-reset/complete",
        json={"email": "alice@x.com", "otp": code, "new_password": "abc"},
    )
    assert r.status_code == 400


def test_password_reset_init_is_rate_limited(client, make_user):
    make_user("alice@x.com")
    for _ in range(3):
        assert client.post("/api/auth/password-reset/init", json={"email": "alice@x.com"}).status_code == 200
    r = client.post("/api/auth/password-reset/init", json={"email": "alice@x.com"})
    assert r.status_code == 429


def test_password_reset_complete_guessing_is_rate_limited(client, make_user, outbox):
    make_user("alice@x.com", password="oldpass1")
    client.post("/api/auth/password-reset/init", json={"email": "alice@x.com"})
    code = _last_code(outbox, "reset")
    wrong = "000000" if code != "000000" else "111111"
    body = {"email": "alice@x.com", "otp": wrong, "new_password": "newpass1"}

    for _ in range(5):
        r = client.post("/api/auth/password-reset/complete", json=body)
        assert r.status_code == 400
        assert r.json()["detail"] == "Invalid OTP"

    r = client.post("/api/auth/password-reset/complete", json=dict(body, otp=code))
    assert r.status_code == 429
    r = client.post("/api/auth/login", json={"email": "alice@x.com", "password": "oldpass1"})
    assert r.status_code == 200


def test_signup_complete_guessing_is_rate_limited(client, outbox):
    client.post("/api/auth/signup/init", json={"email": "alice@x.com"})
    code = _last_code(outbox, "signup")
    wrong = "000000" if code != "000000" else "111111"

    for _ in range(5):
        assert client.post("/api/auth/signup/complete", json=_signup_payload(wrong)).status_code == 400
    r = client.post("/api/auth/signup/complete", json=_signup_payload(code))
    assert r.status_code == 429


def test_signup_complete_lost_race_returns_400(client, make_user, otp_manager, monkeypatch):
    code = otp_manager.signup.issue("alice@x.com")
    make_user("alice@x.com")
    # The other request inserted the row after this one's existence check.
    monkeypatch.setattr(auth_module, "_find_user", lambda db, email: None)

    r = client.post("/api/auth/signup/complete", json=_signup_payload(code))
    assert r.status_code == 400
    assert r.json()["detail"] == "Email already registered"
    assert otp_manager.signup.get("alice@x.com") is not None


def test_login_errors(client, make_user):
    make_user("alice@x.com", password="secret123")
    assert client.post("/api/auth/login", json={"email": "ghost@x.com", "password": "x"}).status_code == 404
    assert client.post("/api/auth/login", json={"email": "alice@x.com", "password": "nope"}).status_code == 401


def test_validate_and_change_password(client, make_user, headers):
    user = make_user("alice@x.com", password="secret123")

    assert client.get("/api/auth/validate").status_code == 401
    r = client.get("/api/auth/validate", headers={"Authorization": "Bearer not-a-jwt"})
    assert r.status_code == 401

    r = client.get("/api/auth/validate", headers=headers(user))
    assert r.json() == {"valid": True, "user": {"id": user.id, "name": "Alice", "email": "alice@x.com", "role": "USER"}}

    r = client.post(
        "/api/auth/change-password",
        json={"current_password": "wrong", "new_password": "another1"},
        headers=headers(user),
    )
    assert r.status_code == 401
    r = client.post(
        "/api/auth/change-password",
        json={"current_password": "secret123", "new_password": "another1"},
        headers=headers(user),
    )
    assert r.status_code == 200
    assert client.post("/api/auth/login", json={"email": "alice@x.com", "password": "another1"}).status_code == 200


@pytest.mark.parametrize("password", ["pässwörd" * 10, "a" * 100])
def test_long_passwords_hash_and_check(password):
    hashed = auth_module.hash_password(password)
    assert auth_module.check_password(password, hashed)
