"""
Pydantic schemas - request validation and response serialisation.

Organised by bounded context:
    1. Verification - OTP request / confirm
    2. Voting       - ballot, cast
    3. Nominations  - candidate review
    4. Admin        - voter roll, positions
    5. Common       - health, errors
"""
from __future__ import annotations
from datetime import datetime
from pydantic import BaseModel, EmailStr, Field


# ══════════════════════════════════════════════════════════════════════════════
# 1. VERIFICATION
# ══════════════════════════════════════════════════════════════════════════════

class RequestOtpRequest(BaseModel):
    reg_no: str = Field(min_length=1, max_length=64)
    method: str = "EMAIL"  # EMAIL | SMS


class RequestOtpResponse(BaseModel):
    verification_id: str
    voter_id: int
    message: str


class ConfirmOtpRequest(BaseModel):
    verification_id: str
    otp: str


class ConfirmOtpResponse(BaseModel):
    ballot_token: str
    voter_id: int
    expires_at: datetime


# ══════════════════════════════════════════════════════════════════════════════
# 2. VOTING
# ══════════════════════════════════════════════════════════════════════════════

class BallotCandidateOut(BaseModel):
    id: int
    name: str
    photo_url: str
    manifesto_url: str


class BallotPositionOut(BaseModel):
    id: int
    name: str
    seats: int
    candidates: list[BallotCandidateOut]


# One entry per selected candidate; the cast body is a flat list of these.
class VoteChoice(BaseModel):
    position_id: int
    candidate_id: int


class CastVoteResponse(BaseModel):
    success: bool
    message: str
    votes_recorded: int


# ══════════════════════════════════════════════════════════════════════════════
# 3. NOMINATIONS
# ══════════════════════════════════════════════════════════════════════════════

class CandidateOut(BaseModel):
    id: int
    position_id: int
    name: str
    voter_reg_no: str
    program: str
    photo_url: str
    manifesto_url: str
    status: str
    rejection_reason: str | None = None
    decided_by: str | None = None
    decided_at: datetime | None = None
    submitted_at: datetime


class NominateResponse(BaseModel):
    message: str
    candidate: CandidateOut


class DecisionRequest(BaseModel):
    action: str  # APPROVE | REJECT
    reason: str | None = None


class DecisionResponse(BaseModel):
    message: str
    candidate: CandidateOut


# ══════════════════════════════════════════════════════════════════════════════
# 4. ADMIN
# ══════════════════════════════════════════════════════════════════════════════

class PositionCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    seats: int = Field(default=1, ge=1)
    constituency: str | None = None
    display_order: int = 0


class PositionOut(BaseModel):
    id: int
    name: str
    seats: int
    constituency: str | None = None
    display_order: int


class RollUploadResponse(BaseModel):
    message: str
    voters_added: int
    voters_skipped: int


# One CSV row of the voter roll; blank cells arrive as missing.
class RollRow(BaseModel):
    reg_no: str = Field(min_length=1, max_length=64)
    email: EmailStr | None = None
    phone: str | None = None
    constituency: str | None = None
    eligible: bool = True


# ══════════════════════════════════════════════════════════════════════════════
# 5. COMMON
# ══════════════════════════════════════════════════════════════════════════════

class HealthResponse(BaseModel):
    status: str
    service: str
