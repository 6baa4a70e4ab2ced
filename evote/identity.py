"""
IdentityVerifier - proves a voter controls a registered contact channel.

Flow:
    1. request_challenge(reg_no, channel)
         voter must be on the roll and eligible; any PENDING challenge of the
         voter is superseded (EXPIRED); a fresh OTP is hashed, stored and sent.
    2. confirm_challenge(verification_id, code)
         code checked against the hash within expiry and the attempt budget;
         on success the challenge becomes CONFIRMED and the ballot token is
         issued in the same transaction.

The server-side challenge is the only record of where a voter is in the
flow; the client's two-step form just mirrors it.
"""
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable

from .config import Settings
from .delivery import OtpSender
from .errors import (
    AlreadyConfirmed, ChallengeExpired, ChallengeNotFound, ChannelUnavailable,
    InvalidCode, NotEligible, TooManyAttempts, VotingError,
)
from .models import AuditEntry, Channel, ChallengeStatus, VerificationChallenge
from .security import (
    expiry_from, generate_challenge_id, generate_otp, hash_otp, utcnow, verify_otp,
)
from .store import Store
from .tokens import BallotTokenIssuer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChallengeIssued:
    verification_id: str
    voter_id: int
    channel: Channel
    message: str


@dataclass(frozen=True)
class Verified:
    ballot_token: str
    voter_id: int
    expires_at: datetime


def normalise_reg_no(reg_no: str | None) -> str:
    return (reg_no or "").strip().upper()


def mask_address(channel: Channel, address: str) -> str:
    if channel is Channel.EMAIL and "@" in address:
        local, domain = address.split("@", 1)
        return f"{local[:1]}***@{domain}"
    return f"***{address[-3:]}"


class IdentityVerifier:

    def __init__(self, store: Store, sender: OtpSender, issuer: BallotTokenIssuer,
                 settings: Settings, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.sender = sender
        self.issuer = issuer
        self.settings = settings
        self.clock = clock

    async def request_challenge(self, registration_id: str, channel: Channel | str) -> ChallengeIssued:
        reg_no = normalise_reg_no(registration_id)
        try:
            channel = Channel(str(getattr(channel, "value", channel)).strip().upper())
        except ValueError:
            raise ChannelUnavailable()

        code = generate_otp(self.settings.otp_length)
        otp_hash = hash_otp(code)
        now = self.clock()

        async with self.store.transaction() as tx:
            found = await tx.get_voter_by_reg_no(reg_no) if reg_no else None
            voter = await tx.lock_voter(found.id) if found else None
            if voter is None or not voter.eligible:
                raise NotEligible()

            address = voter.contact_for(channel)
            if not address or not self.sender.supports(channel):
                raise ChannelUnavailable()

            superseded = await tx.expire_pending_challenges(voter.id)
            challenge = VerificationChallenge(
                id=generate_challenge_id(),
                voter_id=voter.id,
                otp_hash=otp_hash,
                channel=channel,
                issued_at=now,
                expires_at=expiry_from(now, self.settings.otp_ttl_minutes),
            )
            await tx.insert_challenge(challenge)
            await tx.add_audit(AuditEntry(
                event_type="otp_requested", actor_type="voter", actor_id=str(voter.id),
                detail={"channel": channel.value, "superseded": superseded},
            ))

        # Deliver outside the transaction so a slow gateway holds no locks.
        try:
            await self.sender.send(channel, address, code)
        except Exception as e:
            logger.warning(f"OTP delivery via {channel.value} failed for voter {voter.id}: {e}")
            await self._mark_failed(challenge.id)
            raise ChannelUnavailable() from e

        logger.info(f"Challenge {challenge.id} issued to voter {voter.id} via {channel.value}")
        return ChallengeIssued(
            verification_id=challenge.id,
            voter_id=voter.id,
            channel=channel,
            message=f"Verification code sent to {mask_address(channel, address)}",
        )

    async def confirm_challenge(self, challenge_id: str, code: str) -> Verified:
        now = self.clock()
        failure: VotingError | None = None

        async with self.store.transaction() as tx:
            challenge = await tx.get_challenge(challenge_id) if challenge_id else None
            if challenge is None:
                raise ChallengeNotFound()
            voter = await tx.lock_voter(challenge.voter_id)
            # re-read under the voter lock
            challenge = await tx.get_challenge(challenge_id)

            if challenge.status is ChallengeStatus.CONFIRMED:
                raise AlreadyConfirmed()
            if challenge.status is ChallengeStatus.FAILED:
                raise TooManyAttempts()
            if challenge.status is ChallengeStatus.EXPIRED:
                raise ChallengeExpired()

            if challenge.expires_at <= now:
                await tx.save_challenge(replace(challenge, status=ChallengeStatus.EXPIRED))
                failure = ChallengeExpired()
            elif not verify_otp((code or "").strip(), challenge.otp_hash):
                failure = await self._record_wrong_code(tx, challenge)
            else:
                if voter is None or not voter.eligible:
                    raise NotEligible()
                await tx.save_challenge(replace(
                    challenge, status=ChallengeStatus.CONFIRMED,
                    attempt_count=challenge.attempt_count + 1,
                ))
                token = await self.issuer.issue_in(tx, voter)
                await tx.add_audit(AuditEntry(
                    event_type="otp_confirmed", actor_type="voter", actor_id=str(voter.id),
                    detail={"verification_id": challenge.id},
                ))

        # Raised only after commit so the attempt count sticks.
        if failure is not None:
            raise failure

        logger.info(f"Challenge {challenge_id} confirmed for voter {voter.id}")
        return Verified(ballot_token=token.token, voter_id=voter.id, expires_at=token.expires_at)

    async def _record_wrong_code(self, tx, challenge: VerificationChallenge) -> VotingError:
        attempts = challenge.attempt_count + 1
        remaining = self.settings.otp_max_attempts - attempts
        if remaining <= 0:
            await tx.save_challenge(replace(
                challenge, attempt_count=attempts, status=ChallengeStatus.FAILED,
            ))
            logger.warning(f"Challenge {challenge.id} locked after {attempts} wrong codes")
            return TooManyAttempts()
        await tx.save_challenge(replace(challenge, attempt_count=attempts))
        return InvalidCode(f"Invalid verification code. {remaining} attempt(s) left.")

    async def _mark_failed(self, challenge_id: str) -> None:
        async with self.store.transaction() as tx:
            current = await tx.get_challenge(challenge_id)
            if current is not None and current.status is ChallengeStatus.PENDING:
                await tx.save_challenge(replace(current, status=ChallengeStatus.FAILED))
