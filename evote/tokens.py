"""
BallotTokenIssuer - single-use ballot tokens bound to one voter.

A voter owns at most one ACTIVE token at a time and at most one token ever
reaches CONSUMED.  Issuance runs under the voter row lock, so concurrent
confirmations cannot mint two tokens; an unexpired ACTIVE token is handed
back instead of minting a fresh one.
"""
import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable

from .config import Settings
from .errors import (
    AlreadyVoted, ChallengeNotFound, InvalidToken, NotEligible, TokenConsumed, TokenExpired,
)
from .models import AuditEntry, BallotToken, TokenStatus, Voter
from .security import expiry_from, generate_ballot_token, utcnow
from .store import Store, StoreSession

logger = logging.getLogger(__name__)


class BallotTokenIssuer:

    def __init__(self, store: Store, settings: Settings,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.settings = settings
        self.clock = clock

    async def issue_token(self, voter_id: int) -> BallotToken:
        """Issue (or re-issue) the ballot token of a verified voter."""
        async with self.store.transaction() as tx:
            voter = await tx.lock_voter(voter_id)
            if voter is None or not voter.eligible:
                raise NotEligible()
            if not await tx.has_confirmed_challenge(voter_id):
                raise ChallengeNotFound("Identity verification required first")
            return await self.issue_in(tx, voter)

    async def issue_in(self, tx: StoreSession, voter: Voter) -> BallotToken:
        """Issue inside a caller-owned transaction that already holds the voter lock."""
        now = self.clock()
        tokens = await tx.voter_tokens(voter.id)

        if any(t.status is TokenStatus.CONSUMED for t in tokens):
            raise AlreadyVoted()

        for existing in tokens:
            if existing.status is not TokenStatus.ACTIVE:
                continue
            if existing.expires_at > now:
                logger.info(f"Re-issuing active ballot token for voter {voter.id}")
                return existing
            await tx.save_token(replace(existing, status=TokenStatus.EXPIRED))

        token = BallotToken(
            token=generate_ballot_token(),
            voter_id=voter.id,
            issued_at=now,
            expires_at=expiry_from(now, self.settings.ballot_token_ttl_minutes),
        )
        await tx.insert_token(token)
        await tx.add_audit(AuditEntry(
            event_type="ballot_token_issued", actor_type="system", actor_id=str(voter.id),
            detail={"expires_at": token.expires_at.isoformat()},
        ))
        logger.info(f"Ballot token issued for voter {voter.id}")
        return token

    async def validate_token(self, token: str) -> int:
        """Return the owning voter id of an ACTIVE, unexpired token."""
        async with self.store.connection() as conn:
            row = await self.check(conn, token)
        return row.voter_id

    async def check(self, session: StoreSession, token: str | None,
                    for_update: bool = False) -> BallotToken:
        if not token:
            raise InvalidToken()
        row = await (session.lock_token(token) if for_update else session.get_token(token))
        if row is None:
            raise InvalidToken()
        if row.status is TokenStatus.CONSUMED:
            raise TokenConsumed()
        if row.status is TokenStatus.EXPIRED or row.expires_at <= self.clock():
            raise TokenExpired()
        return row
