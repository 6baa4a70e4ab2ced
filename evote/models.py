"""
Domain records shared by the core, the stores and the services.

Records are plain frozen dataclasses; stores hand out fresh instances and
state changes go through ``dataclasses.replace`` inside a store transaction.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Channel(str, Enum):
    EMAIL = "EMAIL"
    SMS = "SMS"


class ChallengeStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"


class TokenStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CONSUMED = "CONSUMED"
    EXPIRED = "EXPIRED"


class NominationStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Decision(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"


@dataclass(frozen=True)
class Voter:
    id: int
    reg_no: str
    email: str | None = None
    phone: str | None = None
    constituency: str | None = None
    eligible: bool = True

    def contact_for(self, channel: Channel) -> str | None:
        return self.email if channel is Channel.EMAIL else self.phone


@dataclass(frozen=True)
class VerificationChallenge:
    id: str
    voter_id: int
    otp_hash: str
    channel: Channel
    issued_at: datetime
    expires_at: datetime
    attempt_count: int = 0
    status: ChallengeStatus = ChallengeStatus.PENDING


@dataclass(frozen=True)
class BallotToken:
    token: str
    voter_id: int
    issued_at: datetime
    expires_at: datetime
    status: TokenStatus = TokenStatus.ACTIVE
    consumed_at: datetime | None = None


@dataclass(frozen=True)
class Position:
    id: int
    name: str
    seat_count: int = 1
    constituency: str | None = None
    display_order: int = 0


@dataclass(frozen=True)
class Nomination:
    """A candidate's submission; once APPROVED it is the ballot candidate."""

    id: int
    position_id: int
    name: str
    voter_reg_no: str
    program: str
    photo_url: str
    manifesto_url: str
    status: NominationStatus = NominationStatus.PENDING
    decision_reason: str | None = None
    decided_by: str | None = None
    decided_at: datetime | None = None
    submitted_at: datetime | None = None


@dataclass(frozen=True)
class VoteRecord:
    voter_id: int
    position_id: int
    candidate_id: int
    cast_at: datetime


@dataclass(frozen=True)
class AuditEntry:
    event_type: str
    actor_type: str
    actor_id: str | None = None
    detail: dict = field(default_factory=dict)
    created_at: datetime | None = None
