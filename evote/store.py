"""
Storage contract for the voting core, plus the in-process implementation.

The core never talks to a driver directly.  It opens a unit of work with
``Store.connection()`` (plain reads, autocommit writes) or
``Store.transaction()`` (all-or-nothing, row locks held until exit) and calls
the typed methods of the yielded ``StoreSession``.

``MemoryStore`` keeps everything in dicts.  Row locks are ``asyncio.Lock``s
keyed per voter / token / nomination, so transactions for different voters
never wait on each other; an undo journal rolls back every write of a
transaction that exits with an exception (including cancellation).
"""
from __future__ import annotations

import abc
import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import AsyncIterator, Callable

from .models import (
    AuditEntry, BallotToken, ChallengeStatus, Nomination, NominationStatus,
    Position, TokenStatus, VerificationChallenge, VoteRecord, Voter,
)

logger = logging.getLogger(__name__)


class StoreSession(abc.ABC):
    """Operations available inside a connection or transaction."""

    # -- voters --
    @abc.abstractmethod
    async def get_voter(self, voter_id: int) -> Voter | None: ...

    @abc.abstractmethod
    async def get_voter_by_reg_no(self, reg_no: str) -> Voter | None: ...

    @abc.abstractmethod
    async def lock_voter(self, voter_id: int) -> Voter | None:
        """Read the voter and hold an exclusive lock on it until the transaction ends."""

    @abc.abstractmethod
    async def insert_voter(self, reg_no: str, email: str | None, phone: str | None,
                           constituency: str | None, eligible: bool) -> Voter | None:
        """Insert a voter; returns ``None`` when the reg_no is already on the roll."""

    # -- verification challenges --
    @abc.abstractmethod
    async def insert_challenge(self, challenge: VerificationChallenge) -> None: ...

    @abc.abstractmethod
    async def get_challenge(self, challenge_id: str) -> VerificationChallenge | None: ...

    @abc.abstractmethod
    async def save_challenge(self, challenge: VerificationChallenge) -> None: ...

    @abc.abstractmethod
    async def expire_pending_challenges(self, voter_id: int) -> int: ...

    @abc.abstractmethod
    async def has_confirmed_challenge(self, voter_id: int) -> bool: ...

    # -- ballot tokens --
    @abc.abstractmethod
    async def get_token(self, token: str) -> BallotToken | None: ...

    @abc.abstractmethod
    async def lock_token(self, token: str) -> BallotToken | None: ...

    @abc.abstractmethod
    async def voter_tokens(self, voter_id: int) -> list[BallotToken]: ...

    @abc.abstractmethod
    async def insert_token(self, token: BallotToken) -> None: ...

    @abc.abstractmethod
    async def save_token(self, token: BallotToken) -> None: ...

    # -- positions --
    @abc.abstractmethod
    async def list_positions(self) -> list[Position]:
        """All positions ordered by display_order, then id."""

    @abc.abstractmethod
    async def get_position(self, position_id: int) -> Position | None: ...

    @abc.abstractmethod
    async def insert_position(self, name: str, seat_count: int,
                              constituency: str | None, display_order: int) -> Position: ...

    # -- nominations / candidates --
    @abc.abstractmethod
    async def insert_nomination(self, position_id: int, name: str, voter_reg_no: str,
                                program: str, photo_url: str, manifesto_url: str,
                                submitted_at: datetime) -> Nomination: ...

    @abc.abstractmethod
    async def get_nomination(self, nomination_id: int) -> Nomination | None: ...

    @abc.abstractmethod
    async def lock_nomination(self, nomination_id: int) -> Nomination | None: ...

    @abc.abstractmethod
    async def list_nominations(self, status: NominationStatus | None = None,
                               position_id: int | None = None) -> list[Nomination]: ...

    @abc.abstractmethod
    async def save_nomination(self, nomination: Nomination) -> None: ...

    # -- votes --
    @abc.abstractmethod
    async def insert_vote_records(self, records: list[VoteRecord]) -> None: ...

    @abc.abstractmethod
    async def list_vote_records(self, voter_id: int | None = None) -> list[VoteRecord]: ...

    # -- audit --
    @abc.abstractmethod
    async def add_audit(self, entry: AuditEntry) -> None: ...

    @abc.abstractmethod
    async def list_audit(self, event_type: str | None = None) -> list[AuditEntry]: ...


class Store(abc.ABC):
    """A persistent store the core can open sessions against."""

    async def open(self) -> None:
        """Prepare the backend (pools, schema).  No-op by default."""

    async def close(self) -> None:
        """Release backend resources.  No-op by default."""

    @abc.abstractmethod
    def connection(self) -> "AsyncIterator[StoreSession]": ...

    @abc.abstractmethod
    def transaction(self) -> "AsyncIterator[StoreSession]": ...


# ══════════════════════════════════════════════════════════════════════════════
# In-memory implementation
# ══════════════════════════════════════════════════════════════════════════════

class MemoryStore(Store):
    """Dict-backed store with per-row asyncio locks and rollback journal."""

    def __init__(self):
        self.voters: dict[int, Voter] = {}
        self.challenges: dict[str, VerificationChallenge] = {}
        self.tokens: dict[str, BallotToken] = {}
        self.positions: dict[int, Position] = {}
        self.nominations: dict[int, Nomination] = {}
        self.votes: list[VoteRecord] = []
        self.audit: list[AuditEntry] = []
        self._ids = {
            "voter": itertools.count(1),
            "position": itertools.count(1),
            "nomination": itertools.count(1),
        }
        # a lock lives only while some session holds or waits on it
        self._locks: dict[tuple[str, object], asyncio.Lock] = {}
        self._lock_users: dict[tuple[str, object], int] = {}

    def _row_lock(self, key: tuple[str, object]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        return lock

    def _drop_lock(self, key: tuple[str, object]) -> None:
        users = self._lock_users[key] - 1
        if users:
            self._lock_users[key] = users
        else:
            del self._lock_users[key]
            del self._locks[key]

    @asynccontextmanager
    async def connection(self):
        yield _MemorySession(self, transactional=False)

    @asynccontextmanager
    async def transaction(self):
        session = _MemorySession(self, transactional=True)
        try:
            yield session
        except BaseException:
            session.rollback()
            raise
        finally:
            session.release()


def _discard(rows: list, items: list) -> None:
    """Remove exactly these objects from ``rows`` (other sessions may have appended)."""
    doomed = {id(item) for item in items}
    rows[:] = [row for row in rows if id(row) not in doomed]


class _MemorySession(StoreSession):

    def __init__(self, store: MemoryStore, transactional: bool):
        self._store = store
        self._transactional = transactional
        self._held: list[tuple[tuple[str, object], asyncio.Lock]] = []
        self._held_keys: set[tuple[str, object]] = set()
        self._undo: list[Callable[[], None]] = []

    # -- unit-of-work plumbing --

    async def _io(self) -> None:
        # Stand-in for a driver round trip so concurrent sessions interleave.
        await asyncio.sleep(0)

    async def _lock(self, key: tuple[str, object]) -> None:
        if not self._transactional or key in self._held_keys:
            return
        lock = self._store._row_lock(key)
        try:
            await lock.acquire()
        except BaseException:
            self._store._drop_lock(key)
            raise
        self._held.append((key, lock))
        self._held_keys.add(key)

    def _journal(self, undo: Callable[[], None]) -> None:
        if self._transactional:
            self._undo.append(undo)

    def _put(self, table: dict, key, value) -> None:
        if key in table:
            old = table[key]
            self._journal(lambda: table.__setitem__(key, old))
        else:
            self._journal(lambda: table.pop(key, None))
        table[key] = value

    def rollback(self) -> None:
        for undo in reversed(self._undo):
            undo()
        if self._undo:
            logger.debug(f"Rolled back {len(self._undo)} in-memory writes")
        self._undo.clear()

    def release(self) -> None:
        for key, lock in reversed(self._held):
            lock.release()
            self._store._drop_lock(key)
        self._held.clear()
        self._held_keys.clear()

    # -- voters --

    async def get_voter(self, voter_id):
        await self._io()
        return self._store.voters.get(voter_id)

    async def get_voter_by_reg_no(self, reg_no):
        await self._io()
        for voter in self._store.voters.values():
            if voter.reg_no == reg_no:
                return voter
        return None

    async def lock_voter(self, voter_id):
        await self._lock(("voter", voter_id))
        return await self.get_voter(voter_id)

    async def insert_voter(self, reg_no, email, phone, constituency, eligible):
        if await self.get_voter_by_reg_no(reg_no) is not None:
            return None
        voter = Voter(
            id=next(self._store._ids["voter"]), reg_no=reg_no, email=email,
            phone=phone, constituency=constituency, eligible=eligible,
        )
        self._put(self._store.voters, voter.id, voter)
        return voter

    # -- challenges --

    async def insert_challenge(self, challenge):
        await self._io()
        self._put(self._store.challenges, challenge.id, challenge)

    async def get_challenge(self, challenge_id):
        await self._io()
        return self._store.challenges.get(challenge_id)

    async def save_challenge(self, challenge):
        await self._io()
        self._put(self._store.challenges, challenge.id, challenge)

    async def expire_pending_challenges(self, voter_id):
        await self._io()
        stale = [
            c for c in self._store.challenges.values()
            if c.voter_id == voter_id and c.status is ChallengeStatus.PENDING
        ]
        for challenge in stale:
            self._put(self._store.challenges, challenge.id,
                      replace(challenge, status=ChallengeStatus.EXPIRED))
        return len(stale)

    async def has_confirmed_challenge(self, voter_id):
        await self._io()
        return any(
            c.voter_id == voter_id and c.status is ChallengeStatus.CONFIRMED
            for c in self._store.challenges.values()
        )

    # -- tokens --

    async def get_token(self, token):
        await self._io()
        return self._store.tokens.get(token)

    async def lock_token(self, token):
        await self._lock(("token", token))
        return await self.get_token(token)

    async def voter_tokens(self, voter_id):
        await self._io()
        rows = [t for t in self._store.tokens.values() if t.voter_id == voter_id]
        return sorted(rows, key=lambda t: t.issued_at)

    async def insert_token(self, token):
        await self._io()
        live = (TokenStatus.ACTIVE, TokenStatus.CONSUMED)
        if token.status in live and any(
            t.voter_id == token.voter_id and t.status in live
            for t in self._store.tokens.values()
        ):
            raise RuntimeError(f"voter {token.voter_id} already holds a live ballot token")
        self._put(self._store.tokens, token.token, token)

    async def save_token(self, token):
        await self._io()
        self._put(self._store.tokens, token.token, token)

    # -- positions --

    async def list_positions(self):
        await self._io()
        return sorted(self._store.positions.values(), key=lambda p: (p.display_order, p.id))

    async def get_position(self, position_id):
        await self._io()
        return self._store.positions.get(position_id)

    async def insert_position(self, name, seat_count, constituency, display_order):
        await self._io()
        position = Position(
            id=next(self._store._ids["position"]), name=name, seat_count=seat_count,
            constituency=constituency, display_order=display_order,
        )
        self._put(self._store.positions, position.id, position)
        return position

    # -- nominations --

    async def insert_nomination(self, position_id, name, voter_reg_no, program,
                                photo_url, manifesto_url, submitted_at):
        await self._io()
        nomination = Nomination(
            id=next(self._store._ids["nomination"]), position_id=position_id, name=name,
            voter_reg_no=voter_reg_no, program=program, photo_url=photo_url,
            manifesto_url=manifesto_url, submitted_at=submitted_at,
        )
        self._put(self._store.nominations, nomination.id, nomination)
        return nomination

    async def get_nomination(self, nomination_id):
        await self._io()
        return self._store.nominations.get(nomination_id)

    async def lock_nomination(self, nomination_id):
        await self._lock(("nomination", nomination_id))
        return await self.get_nomination(nomination_id)

    async def list_nominations(self, status=None, position_id=None):
        await self._io()
        return [
            n for n in sorted(self._store.nominations.values(), key=lambda n: n.id)
            if (status is None or n.status is status)
            and (position_id is None or n.position_id == position_id)
        ]

    async def save_nomination(self, nomination):
        await self._io()
        self._put(self._store.nominations, nomination.id, nomination)

    # -- votes --

    async def insert_vote_records(self, records):
        await self._io()
        votes = self._store.votes
        seen = {(v.voter_id, v.position_id, v.candidate_id) for v in votes}
        for record in records:
            key = (record.voter_id, record.position_id, record.candidate_id)
            if key in seen:
                raise RuntimeError(f"duplicate vote record {key}")
            seen.add(key)
        votes.extend(records)
        self._journal(lambda: _discard(votes, records))

    async def list_vote_records(self, voter_id=None):
        await self._io()
        return [v for v in self._store.votes if voter_id is None or v.voter_id == voter_id]

    # -- audit --

    async def add_audit(self, entry):
        if entry.created_at is None:
            entry = replace(entry, created_at=datetime.now(timezone.utc))
        audit = self._store.audit
        audit.append(entry)
        self._journal(lambda: _discard(audit, [entry]))

    async def list_audit(self, event_type=None):
        await self._io()
        return [a for a in self._store.audit if event_type is None or a.event_type == event_type]
