"""
BallotAssembler - the positions and approved candidates a voter may choose from.

The ballot is derived on every request and never stored.  Positions without
a constituency appear on every voter's ballot; the rest only on ballots of
voters registered in that constituency.
"""
from dataclasses import dataclass

from .errors import NotEligible
from .models import NominationStatus, Voter
from .store import Store, StoreSession


@dataclass(frozen=True)
class BallotCandidate:
    id: int
    name: str
    photo_url: str
    manifesto_url: str


@dataclass(frozen=True)
class BallotPosition:
    id: int
    name: str
    seat_count: int
    candidates: tuple[BallotCandidate, ...]

    @property
    def candidate_ids(self) -> frozenset[int]:
        return frozenset(c.id for c in self.candidates)


@dataclass(frozen=True)
class Ballot:
    voter_id: int
    positions: tuple[BallotPosition, ...]

    def position(self, position_id: int) -> BallotPosition | None:
        for position in self.positions:
            if position.id == position_id:
                return position
        return None


class BallotAssembler:

    def __init__(self, store: Store):
        self.store = store

    async def get_ballot(self, voter_id: int) -> Ballot:
        async with self.store.connection() as conn:
            voter = await conn.get_voter(voter_id)
            if voter is None:
                raise NotEligible()
            return await self.assemble(conn, voter)

    async def assemble(self, session: StoreSession, voter: Voter) -> Ballot:
        positions = [
            p for p in await session.list_positions()
            if p.constituency is None or p.constituency == voter.constituency
        ]
        approved = await session.list_nominations(status=NominationStatus.APPROVED)

        by_position: dict[int, list[BallotCandidate]] = {}
        for n in approved:
            by_position.setdefault(n.position_id, []).append(BallotCandidate(
                id=n.id, name=n.name, photo_url=n.photo_url, manifesto_url=n.manifesto_url,
            ))

        return Ballot(
            voter_id=voter.id,
            positions=tuple(
                BallotPosition(
                    id=p.id, name=p.name, seat_count=p.seat_count,
                    candidates=tuple(by_position.get(p.id, ())),
                )
                for p in positions
            ),
        )
