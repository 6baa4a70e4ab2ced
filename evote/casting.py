"""
VoteCaster - turns one ACTIVE ballot token into one immutable set of votes.

Everything happens in a single store transaction under the voter lock:

    (a) the token is checked (ACTIVE, unexpired, not consumed),
    (b) the ballot is re-assembled from the store,
    (c) the selections are validated against that ballot,
    (d) one VoteRecord per (position, candidate) is written and the token
        is marked CONSUMED.

Concurrent casts with the same token serialise on the lock; the first
commits and every later one sees CONSUMED.  Any failure rolls back every
write, so a rejected selection leaves the token ACTIVE for a retry.
"""
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable

from .ballot import BallotAssembler
from .errors import AlreadyVoted, InvalidToken
from .models import AuditEntry, TokenStatus, VoteRecord
from .security import utcnow
from .selection import SelectionSet, SelectionValidator
from .store import Store
from .tokens import BallotTokenIssuer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CastReceipt:
    voter_id: int
    votes_recorded: int
    cast_at: datetime


class VoteCaster:

    def __init__(self, store: Store, issuer: BallotTokenIssuer, assembler: BallotAssembler,
                 validator: SelectionValidator, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.issuer = issuer
        self.assembler = assembler
        self.validator = validator
        self.clock = clock

    async def cast_vote(self, token: str, selections: SelectionSet) -> CastReceipt:
        async with self.store.transaction() as tx:
            presented = await self.issuer.check(tx, token)
            voter = await tx.lock_voter(presented.voter_id)
            if voter is None:
                raise InvalidToken()
            current = await self.issuer.check(tx, token, for_update=True)

            if any(t.status is TokenStatus.CONSUMED for t in await tx.voter_tokens(voter.id)):
                raise AlreadyVoted()
            if await tx.list_vote_records(voter.id):
                raise AlreadyVoted()

            ballot = await self.assembler.assemble(tx, voter)
            outcome = self.validator.validate(ballot, selections)
            if not outcome.ok:
                logger.warning(
                    f"Rejected cast for voter {voter.id} "
                    f"(position {outcome.position_id}): {outcome.detail}"
                )
                raise outcome.to_error()

            cast_at = self.clock()
            records = [
                VoteRecord(voter_id=voter.id, position_id=p, candidate_id=c, cast_at=cast_at)
                for p, c in selections.pairs()
            ]
            await tx.insert_vote_records(records)
            await tx.save_token(replace(
                current, status=TokenStatus.CONSUMED, consumed_at=cast_at,
            ))
            await tx.add_audit(AuditEntry(
                event_type="ballot_cast", actor_type="voter", actor_id=str(voter.id),
                detail={"votes_recorded": len(records)},
            ))

        logger.info(f"Ballot cast by voter {voter.id} ({len(records)} votes)")
        return CastReceipt(voter_id=voter.id, votes_recorded=len(records), cast_at=cast_at)
