"""
PostgreSQL store for the voting core.
Uses asyncpg for non-blocking PostgreSQL access with connection pooling.

Exclusivity is done with row locks (``SELECT ... FOR UPDATE``) taken inside
``conn.transaction()``: locks live until commit/rollback, so two casts for
the same voter serialise while different voters proceed in parallel.
"""
import json
import logging
from contextlib import asynccontextmanager

import asyncpg

from .config import Settings
from .models import (
    AuditEntry, BallotToken, Channel, ChallengeStatus, Nomination,
    NominationStatus, Position, TokenStatus, VerificationChallenge, VoteRecord, Voter,
)
from .store import Store, StoreSession

logger = logging.getLogger(__name__)

# pg_advisory_xact_lock key held while the schema is applied
SCHEMA_LOCK_ID = 72_026_031

SCHEMA = """
CREATE TABLE IF NOT EXISTS voters (
    id            SERIAL PRIMARY KEY,
    reg_no        VARCHAR(64)  NOT NULL UNIQUE,
    email         VARCHAR(255),
    phone         VARCHAR(32),
    constituency  VARCHAR(128),
    eligible      BOOLEAN      NOT NULL DEFAULT TRUE,
    created_at    TIMESTAMPTZ  NOT NULL DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS verification_challenges (
    id             VARCHAR(64)  PRIMARY KEY,
    voter_id       INTEGER      NOT NULL REFERENCES voters(id),
    otp_hash       TEXT         NOT NULL,
    channel        VARCHAR(8)   NOT NULL,
    issued_at      TIMESTAMPTZ  NOT NULL,
    expires_at     TIMESTAMPTZ  NOT NULL,
    attempt_count  INTEGER      NOT NULL DEFAULT 0,
    status         VARCHAR(16)  NOT NULL DEFAULT 'PENDING'
);
CREATE INDEX IF NOT EXISTS idx_challenges_voter_status
    ON verification_challenges (voter_id, status);

CREATE TABLE IF NOT EXISTS ballot_tokens (
    token        VARCHAR(128) PRIMARY KEY,
    voter_id     INTEGER      NOT NULL REFERENCES voters(id),
    issued_at    TIMESTAMPTZ  NOT NULL,
    expires_at   TIMESTAMPTZ  NOT NULL,
    status       VARCHAR(16)  NOT NULL DEFAULT 'ACTIVE',
    consumed_at  TIMESTAMPTZ
);
-- at most one ACTIVE-or-CONSUMED token per voter, ever
CREATE UNIQUE INDEX IF NOT EXISTS uq_ballot_tokens_live_voter
    ON ballot_tokens (voter_id) WHERE status IN ('ACTIVE', 'CONSUMED');

CREATE TABLE IF NOT EXISTS positions (
    id             SERIAL PRIMARY KEY,
    name           VARCHAR(255) NOT NULL,
    seat_count     INTEGER      NOT NULL CHECK (seat_count >= 1),
    constituency   VARCHAR(128),
    display_order  INTEGER      NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS candidates (
    id               SERIAL PRIMARY KEY,
    position_id      INTEGER      NOT NULL REFERENCES positions(id),
    name             VARCHAR(255) NOT NULL,
    voter_reg_no     VARCHAR(64)  NOT NULL,
    program          VARCHAR(255) NOT NULL DEFAULT '',
    photo_url        TEXT         NOT NULL,
    manifesto_url    TEXT         NOT NULL,
    status           VARCHAR(16)  NOT NULL DEFAULT 'PENDING',
    decision_reason  TEXT,
    decided_by       VARCHAR(128),
    decided_at       TIMESTAMPTZ,
    submitted_at     TIMESTAMPTZ  NOT NULL DEFAULT CURRENT_TIMESTAMP,
    CHECK (status <> 'REJECTED' OR decision_reason IS NOT NULL)
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_candidates_live_nomination
    ON candidates (position_id, voter_reg_no) WHERE status IN ('PENDING', 'APPROVED');

CREATE TABLE IF NOT EXISTS vote_records (
    id            SERIAL PRIMARY KEY,
    voter_id      INTEGER     NOT NULL REFERENCES voters(id),
    position_id   INTEGER     NOT NULL REFERENCES positions(id),
    candidate_id  INTEGER     NOT NULL REFERENCES candidates(id),
    cast_at       TIMESTAMPTZ NOT NULL,
    UNIQUE (voter_id, position_id, candidate_id)
);

CREATE OR REPLACE FUNCTION forbid_vote_record_change() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'vote records are immutable';
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS vote_records_immutable ON vote_records;
CREATE TRIGGER vote_records_immutable
    BEFORE UPDATE OR DELETE ON vote_records
    FOR EACH ROW EXECUTE FUNCTION forbid_vote_record_change();

CREATE TABLE IF NOT EXISTS audit_log (
    id          SERIAL PRIMARY KEY,
    event_type  VARCHAR(64)  NOT NULL,
    actor_type  VARCHAR(32)  NOT NULL,
    actor_id    VARCHAR(128),
    detail      JSONB        NOT NULL DEFAULT '{}'::jsonb,
    created_at  TIMESTAMPTZ  NOT NULL DEFAULT CURRENT_TIMESTAMP
);
"""


class PostgresStore(Store):
    """Async database connection pool manager."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._pool: asyncpg.Pool | None = None

    async def get_pool(self) -> asyncpg.Pool:
        """Return the existing pool or create one lazily."""
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                host=self.settings.db_host,
                port=self.settings.db_port,
                database=self.settings.db_name,
                user=self.settings.db_user,
                password=self.settings.db_password,
                min_size=self.settings.db_pool_min,
                max_size=self.settings.db_pool_max,
            )
        return self._pool

    async def open(self) -> None:
        """Create the pool and apply the idempotent schema.

        Both services run this at startup; the advisory lock serialises them
        so concurrent ``CREATE ... IF NOT EXISTS`` never collide.
        """
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("SELECT pg_advisory_xact_lock($1)", SCHEMA_LOCK_ID)
                await conn.execute(SCHEMA)
        logger.info(f"Schema ready on {self.settings.db_host}/{self.settings.db_name}")

    async def close(self) -> None:
        """Gracefully close the pool (called on app shutdown)."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def connection(self):
        """Acquire a connection from the pool (auto-released on exit)."""
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            yield PostgresSession(conn)

    @asynccontextmanager
    async def transaction(self):
        """Acquire a connection and open a transaction (auto-committed/rolled-back)."""
        pool = await self.get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                yield PostgresSession(conn)


# ── Row mapping ──────────────────────────────────────────────────────────────

def _voter(row) -> Voter | None:
    if row is None:
        return None
    return Voter(
        id=row["id"], reg_no=row["reg_no"], email=row["email"], phone=row["phone"],
        constituency=row["constituency"], eligible=row["eligible"],
    )


def _challenge(row) -> VerificationChallenge | None:
    if row is None:
        return None
    return VerificationChallenge(
        id=row["id"], voter_id=row["voter_id"], otp_hash=row["otp_hash"],
        channel=Channel(row["channel"]), issued_at=row["issued_at"],
        expires_at=row["expires_at"], attempt_count=row["attempt_count"],
        status=ChallengeStatus(row["status"]),
    )


def _token(row) -> BallotToken | None:
    if row is None:
        return None
    return BallotToken(
        token=row["token"], voter_id=row["voter_id"], issued_at=row["issued_at"],
        expires_at=row["expires_at"], status=TokenStatus(row["status"]),
        consumed_at=row["consumed_at"],
    )


def _position(row) -> Position | None:
    if row is None:
        return None
    return Position(
        id=row["id"], name=row["name"], seat_count=row["seat_count"],
        constituency=row["constituency"], display_order=row["display_order"],
    )


def _nomination(row) -> Nomination | None:
    if row is None:
        return None
    return Nomination(
        id=row["id"], position_id=row["position_id"], name=row["name"],
        voter_reg_no=row["voter_reg_no"], program=row["program"],
        photo_url=row["photo_url"], manifesto_url=row["manifesto_url"],
        status=NominationStatus(row["status"]), decision_reason=row["decision_reason"],
        decided_by=row["decided_by"], decided_at=row["decided_at"],
        submitted_at=row["submitted_at"],
    )


_VOTER_COLS = "id, reg_no, email, phone, constituency, eligible"
_CHALLENGE_COLS = "id, voter_id, otp_hash, channel, issued_at, expires_at, attempt_count, status"
_TOKEN_COLS = "token, voter_id, issued_at, expires_at, status, consumed_at"
_POSITION_COLS = "id, name, seat_count, constituency, display_order"
_CANDIDATE_COLS = (
    "id, position_id, name, voter_reg_no, program, photo_url, manifesto_url, "
    "status, decision_reason, decided_by, decided_at, submitted_at"
)


class PostgresSession(StoreSession):

    def __init__(self, conn: asyncpg.Connection):
        self.conn = conn

    # -- voters --

    async def get_voter(self, voter_id):
        return _voter(await self.conn.fetchrow(
            f"SELECT {_VOTER_COLS} FROM voters WHERE id = $1", voter_id,
        ))

    async def get_voter_by_reg_no(self, reg_no):
        return _voter(await self.conn.fetchrow(
            f"SELECT {_VOTER_COLS} FROM voters WHERE reg_no = $1", reg_no,
        ))

    async def lock_voter(self, voter_id):
        return _voter(await self.conn.fetchrow(
            f"SELECT {_VOTER_COLS} FROM voters WHERE id = $1 FOR UPDATE", voter_id,
        ))

    async def insert_voter(self, reg_no, email, phone, constituency, eligible):
        return _voter(await self.conn.fetchrow(
            f"""
            INSERT INTO voters (reg_no, email, phone, constituency, eligible)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (reg_no) DO NOTHING
            RETURNING {_VOTER_COLS}
            """,
            reg_no, email, phone, constituency, eligible,
        ))

    # -- challenges --

    async def insert_challenge(self, challenge):
        await self.conn.execute(
            """
            INSERT INTO verification_challenges
                (id, voter_id, otp_hash, channel, issued_at, expires_at, attempt_count, status)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            challenge.id, challenge.voter_id, challenge.otp_hash, challenge.channel.value,
            challenge.issued_at, challenge.expires_at, challenge.attempt_count,
            challenge.status.value,
        )

    async def get_challenge(self, challenge_id):
        return _challenge(await self.conn.fetchrow(
            f"SELECT {_CHALLENGE_COLS} FROM verification_challenges WHERE id = $1",
            challenge_id,
        ))

    async def save_challenge(self, challenge):
        await self.conn.execute(
            "UPDATE verification_challenges SET attempt_count = $2, status = $3 WHERE id = $1",
            challenge.id, challenge.attempt_count, challenge.status.value,
        )

    async def expire_pending_challenges(self, voter_id):
        result = await self.conn.execute(
            "UPDATE verification_challenges SET status = 'EXPIRED' "
            "WHERE voter_id = $1 AND status = 'PENDING'",
            voter_id,
        )
        return int(result.split()[-1])

    async def has_confirmed_challenge(self, voter_id):
        return await self.conn.fetchval(
            "SELECT EXISTS(SELECT 1 FROM verification_challenges "
            "WHERE voter_id = $1 AND status = 'CONFIRMED')",
            voter_id,
        )

    # -- tokens --

    async def get_token(self, token):
        return _token(await self.conn.fetchrow(
            f"SELECT {_TOKEN_COLS} FROM ballot_tokens WHERE token = $1", token,
        ))

    async def lock_token(self, token):
        return _token(await self.conn.fetchrow(
            f"SELECT {_TOKEN_COLS} FROM ballot_tokens WHERE token = $1 FOR UPDATE", token,
        ))

    async def voter_tokens(self, voter_id):
        rows = await self.conn.fetch(
            f"SELECT {_TOKEN_COLS} FROM ballot_tokens WHERE voter_id = $1 ORDER BY issued_at",
            voter_id,
        )
        return [_token(r) for r in rows]

    async def insert_token(self, token):
        await self.conn.execute(
            """
            INSERT INTO ballot_tokens (token, voter_id, issued_at, expires_at, status, consumed_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            token.token, token.voter_id, token.issued_at, token.expires_at,
            token.status.value, token.consumed_at,
        )

    async def save_token(self, token):
        await self.conn.execute(
            "UPDATE ballot_tokens SET status = $2, consumed_at = $3 WHERE token = $1",
            token.token, token.status.value, token.consumed_at,
        )

    # -- positions --

    async def list_positions(self):
        rows = await self.conn.fetch(
            f"SELECT {_POSITION_COLS} FROM positions ORDER BY display_order, id"
        )
        return [_position(r) for r in rows]

    async def get_position(self, position_id):
        return _position(await self.conn.fetchrow(
            f"SELECT {_POSITION_COLS} FROM positions WHERE id = $1", position_id,
        ))

    async def insert_position(self, name, seat_count, constituency, display_order):
        return _position(await self.conn.fetchrow(
            f"""
            INSERT INTO positions (name, seat_count, constituency, display_order)
            VALUES ($1, $2, $3, $4)
            RETURNING {_POSITION_COLS}
            """,
            name, seat_count, constituency, display_order,
        ))

    # -- nominations --

    async def insert_nomination(self, position_id, name, voter_reg_no, program,
                                photo_url, manifesto_url, submitted_at):
        return _nomination(await self.conn.fetchrow(
            f"""
            INSERT INTO candidates
                (position_id, name, voter_reg_no, program, photo_url, manifesto_url, submitted_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING {_CANDIDATE_COLS}
            """,
            position_id, name, voter_reg_no, program, photo_url, manifesto_url, submitted_at,
        ))

    async def get_nomination(self, nomination_id):
        return _nomination(await self.conn.fetchrow(
            f"SELECT {_CANDIDATE_COLS} FROM candidates WHERE id = $1", nomination_id,
        ))

    async def lock_nomination(self, nomination_id):
        return _nomination(await self.conn.fetchrow(
            f"SELECT {_CANDIDATE_COLS} FROM candidates WHERE id = $1 FOR UPDATE",
            nomination_id,
        ))

    async def list_nominations(self, status=None, position_id=None):
        rows = await self.conn.fetch(
            f"""
            SELECT {_CANDIDATE_COLS} FROM candidates
            WHERE ($1::text IS NULL OR status = $1)
              AND ($2::int IS NULL OR position_id = $2)
            ORDER BY id
            """,
            status.value if status else None, position_id,
        )
        return [_nomination(r) for r in rows]

    async def save_nomination(self, nomination):
        await self.conn.execute(
            """
            UPDATE candidates
            SET status = $2, decision_reason = $3, decided_by = $4, decided_at = $5
            WHERE id = $1
            """,
            nomination.id, nomination.status.value, nomination.decision_reason,
            nomination.decided_by, nomination.decided_at,
        )

    # -- votes --

    async def insert_vote_records(self, records):
        await self.conn.executemany(
            "INSERT INTO vote_records (voter_id, position_id, candidate_id, cast_at) "
            "VALUES ($1, $2, $3, $4)",
            [(r.voter_id, r.position_id, r.candidate_id, r.cast_at) for r in records],
        )

    async def list_vote_records(self, voter_id=None):
        rows = await self.conn.fetch(
            """
            SELECT voter_id, position_id, candidate_id, cast_at FROM vote_records
            WHERE ($1::int IS NULL OR voter_id = $1)
            ORDER BY id
            """,
            voter_id,
        )
        return [
            VoteRecord(voter_id=r["voter_id"], position_id=r["position_id"],
                       candidate_id=r["candidate_id"], cast_at=r["cast_at"])
            for r in rows
        ]

    # -- audit --

    async def add_audit(self, entry):
        await self.conn.execute(
            """
            INSERT INTO audit_log (event_type, actor_type, actor_id, detail)
            VALUES ($1, $2, $3, $4::jsonb)
            """,
            entry.event_type, entry.actor_type, entry.actor_id, json.dumps(entry.detail),
        )

    async def list_audit(self, event_type=None):
        rows = await self.conn.fetch(
            """
            SELECT event_type, actor_type, actor_id, detail, created_at FROM audit_log
            WHERE ($1::text IS NULL OR event_type = $1)
            ORDER BY id
            """,
            event_type,
        )
        return [
            AuditEntry(event_type=r["event_type"], actor_type=r["actor_type"],
                       actor_id=r["actor_id"], detail=json.loads(r["detail"]),
                       created_at=r["created_at"])
            for r in rows
        ]


def create_store(settings: Settings) -> Store:
    """Pick the store backend named by ``STORE_BACKEND``."""
    if settings.store_backend == "memory":
        from .store import MemoryStore
        return MemoryStore()
    if settings.store_backend == "postgres":
        return PostgresStore(settings)
    raise ValueError(f"Unknown STORE_BACKEND: {settings.store_backend!r}")
