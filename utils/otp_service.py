"""
One-time passcodes for signup and password reset.

Each flow owns its own store; a store keeps at most one record per email.
Stores live in process memory unless REDIS_URL is set, in which case codes
are shared between processes through Redis.
"""

from __future__ import annotations

import enum
import hmac
import json
import logging
import os
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

import redis


logger = logging.getLogger(__name__)

OTP_EXP_MIN = int(os.getenv("OTP_EXP_MINUTES", "10"))
OTP_EXTEND_MIN = int(os.getenv("OTP_EXTEND_MINUTES", "15"))
# Keeps expired keys around briefly in Redis so verify can still say "expired".
REDIS_GRACE_SECONDS = 60

Clock = Callable[[], datetime]


class OtpErrorKind(enum.Enum):
    NOT_FOUND = "No OTP request found"
    EXPIRED = "OTP expired"
    MISMATCH = "Invalid OTP"


class OtpVerificationError(Exception):
    def __init__(self, kind: OtpErrorKind):
        super().__init__(kind.value)
        self.kind = kind

    @property
    def message(self) -> str:
        return self.kind.value


@dataclass
class OtpRecord:
    code: str
    expires_at: datetime


def _gen_otp() -> str:
    return f"{100000 + secrets.randbelow(900000)}"


def secrets_equal(a: str, b: str) -> bool:
    # Constant-time compare
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


class InMemoryOtpStore:
    """Lock-guarded map of identifier -> OtpRecord."""

    def __init__(
        self,
        *,
        name: str,
        ttl: timedelta = timedelta(minutes=OTP_EXP_MIN),
        extend_ttl: timedelta = timedelta(minutes=OTP_EXTEND_MIN),
        clock: Optional[Clock] = None,
    ):
        self.name = name
        self.ttl = ttl
        self.extend_ttl = extend_ttl
        self._clock = clock or datetime.utcnow
        self._records: Dict[str, OtpRecord] = {}
        self._lock = threading.Lock()

    def now(self) -> datetime:
        return self._clock()

    def issue(self, identifier: str) -> str:
        code = _gen_otp()
        self.put(identifier, code)
        return code

    def put(self, identifier: str, code: str) -> OtpRecord:
        rec = OtpRecord(code=code, expires_at=self.now() + self.ttl)
        with self._lock:
            self._records[identifier] = rec
        return rec

    def get(self, identifier: str) -> Optional[OtpRecord]:
        with self._lock:
            return self._records.get(identifier)

    def verify(self, identifier: str, supplied_code: str) -> None:
        """Raises OtpVerificationError; never deletes on success."""
        with self._lock:
            rec = self._records.get(identifier)
            if rec is None:
                raise OtpVerificationError(OtpErrorKind.NOT_FOUND)
            if self.now() >= rec.expires_at:
                del self._records[identifier]
                raise OtpVerificationError(OtpErrorKind.EXPIRED)
            if not secrets_equal(rec.code, supplied_code or ""):
                raise OtpVerificationError(OtpErrorKind.MISMATCH)

    def extend(self, identifier: str) -> None:
        with self._lock:
            rec = self._records.get(identifier)
            if rec is not None:
                rec.expires_at = self.now() + self.extend_ttl

    def consume(self, identifier: str) -> None:
        with self._lock:
            self._records.pop(identifier, None)

    def purge_expired(self) -> int:
        now = self.now()
        with self._lock:
            stale = [k for k, rec in self._records.items() if now >= rec.expires_at]
            for k in stale:
                del self._records[k]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class RedisOtpStore:
    """
    Same contract as InMemoryOtpStore, backed by Redis so several server
    processes see the same codes.

    Records are stored as JSON under "otp:<name>:<identifier>". The key TTL is
    the validity window plus a short grace so an expired code is still
    reported as expired instead of missing. verify + delete is not atomic
    across processes; a concurrent issue between the two can be lost.
    """

    def __init__(
        self,
        client,
        *,
        name: str,
        ttl: timedelta = timedelta(minutes=OTP_EXP_MIN),
        extend_ttl: timedelta = timedelta(minutes=OTP_EXTEND_MIN),
        clock: Optional[Clock] = None,
    ):
        self.client = client
        self.name = name
        self.ttl = ttl
        self.extend_ttl = extend_ttl
        self._clock = clock or datetime.utcnow

    def now(self) -> datetime:
        return self._clock()

    def _key(self, identifier: str) -> str:
        return f"otp:{self.name}:{identifier}"

    def _write(self, identifier: str, rec: OtpRecord, ttl: timedelta) -> None:
        payload = json.dumps({"code": rec.code, "expires_at": rec.expires_at.isoformat()})
        seconds = int(ttl.total_seconds()) + REDIS_GRACE_SECONDS
        self.client.setex(self._key(identifier), seconds, payload)

    def issue(self, identifier: str) -> str:
        code = _gen_otp()
        self.put(identifier, code)
        return code

    def put(self, identifier: str, code: str) -> OtpRecord:
        rec = OtpRecord(code=code, expires_at=self.now() + self.ttl)
        self._write(identifier, rec, self.ttl)
        return rec

    def get(self, identifier: str) -> Optional[OtpRecord]:
        raw = self.client.get(self._key(identifier))
        if not raw:
            return None
        data = json.loads(raw)
        return OtpRecord(code=data["code"], expires_at=datetime.fromisoformat(data["expires_at"]))

    def verify(self, identifier: str, supplied_code: str) -> None:
        rec = self.get(identifier)
        if rec is None:
            raise OtpVerificationError(OtpErrorKind.NOT_FOUND)
        if self.now() >= rec.expires_at:
            self.client.delete(self._key(identifier))
            raise OtpVerificationError(OtpErrorKind.EXPIRED)
        if not secrets_equal(rec.code, supplied_code or ""):
            raise OtpVerificationError(OtpErrorKind.MISMATCH)

    def extend(self, identifier: str) -> None:
        rec = self.get(identifier)
        if rec is None:
            return
        rec.expires_at = self.now() + self.extend_ttl
        self._write(identifier, rec, self.extend_ttl)

    def consume(self, identifier: str) -> None:
        self.client.delete(self._key(identifier))

    def purge_expired(self) -> int:
        # Redis expires keys on its own.
        return 0


class OtpManager:
    """Holds the signup and password-reset stores for one server process."""

    def __init__(self, *, signup, reset, reseed_reset_on_missing: bool = False):
        self.signup = signup
        self.reset = reset
        self.reseed_reset_on_missing = reseed_reset_on_missing

    @classmethod
    def in_memory(cls, *, clock: Optional[Clock] = None, reseed_reset_on_missing: bool = False) -> "OtpManager":
        return cls(
            signup=InMemoryOtpStore(name="signup", clock=clock),
            reset=InMemoryOtpStore(name="reset", clock=clock),
            reseed_reset_on_missing=reseed_reset_on_missing,
        )

    @classmethod
    def from_env(cls) -> "OtpManager":
        reseed = os.getenv("OTP_RESET_RESEED_ON_MISSING", "").strip().lower() in ("1", "true", "yes")
        url = os.getenv("REDIS_URL")
        if url:
            client = redis.Redis.from_url(url, decode_responses=True)
            logger.info("OTP stores backed by Redis")
            return cls(
                signup=RedisOtpStore(client, name="signup"),
                reset=RedisOtpStore(client, name="reset"),
                reseed_reset_on_missing=reseed,
            )
        logger.info("OTP stores kept in process memory; codes are lost on restart")
        return cls.in_memory(reseed_reset_on_missing=reseed)

    def verify_reset_for_completion(self, identifier: str, supplied_code: str) -> None:
        """
        Final check before a password change. With reseeding enabled a missing
        record is replaced by the client's code, which means the check passes
        for any code. Off by default.
        """
        if self.reseed_reset_on_missing and self.reset.get(identifier) is None:
            logger.warning("Reset OTP missing for %s; reseeding from client-supplied code", identifier)
            self.reset.put(identifier, supplied_code)
        self.reset.verify(identifier, supplied_code)

    def purge_expired(self) -> int:
        return self.signup.purge_expired() + self.reset.purge_expired()
