"""
Shared security utilities.

Covers:
  - One-time passcodes (generation + hashing via passlib)
  - Verification-challenge ids and ballot tokens (CSPRNG, opaque)
  - Officer credentials (HS256 JWT via python-jose)

Ballot tokens are bearer capabilities: whoever presents the value may view
and cast exactly one ballot for the owning voter.  They are drawn from
``secrets`` and carry no structure, so they cannot be enumerated.
"""

import secrets
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from passlib.context import CryptContext

from .errors import Unauthorized

# ---------------------------------------------------------------------------
# OTP hashing
# ---------------------------------------------------------------------------
otp_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def generate_otp(length: int = 6) -> str:
    """Return a zero-padded numeric code of ``length`` digits."""
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def hash_otp(code: str) -> str:
    return otp_context.hash(code)


def verify_otp(code: str, hashed: str) -> bool:
    return otp_context.verify(code, hashed)


# ---------------------------------------------------------------------------
# Opaque identifiers
# ---------------------------------------------------------------------------

def generate_challenge_id() -> str:
    """Verification ids are handed to the client, so they are unguessable too."""
    return secrets.token_urlsafe(16)


def generate_ballot_token() -> str:
    return secrets.token_urlsafe(32)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def expiry_from(now: datetime, minutes: int) -> datetime:
    return now + timedelta(minutes=minutes)


# ---------------------------------------------------------------------------
# Officer credentials
# ---------------------------------------------------------------------------
JWT_ALGORITHM = "HS256"
OFFICER_ROLE = "returning_officer"


def create_officer_token(officer_id: str, secret: str, ttl_hours: int = 12) -> str:
    """Mint an officer credential.  How officers obtain one is decided elsewhere."""
    return jwt.encode(
        {"officer_id": officer_id, "role": OFFICER_ROLE,
         "exp": datetime.now(timezone.utc) + timedelta(hours=ttl_hours)},
        secret, algorithm=JWT_ALGORITHM,
    )


def decode_officer_token(token: str, secret: str) -> str:
    """Return the officer id carried by ``token`` or raise ``Unauthorized``."""
    try:
        payload = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        msg = "Officer credential expired" if "expired" in str(e).lower() else None
        raise Unauthorized(msg)
    if payload.get("role") != OFFICER_ROLE or not payload.get("officer_id"):
        raise Unauthorized()
    return str(payload["officer_id"])
