"""
PostgresStore against a live PostgreSQL, configured the way the services are:
DB_HOST, DB_PORT, DB_NAME, DB_USER and DB_PASSWORD.

Every test empties the evote tables first, so point DB_* at a scratch
database.  The module is skipped when DB_HOST is unset or unreachable.
"""
import asyncio
import os
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import asyncpg
import pytest

from evote.casting import CastReceipt
from evote.config import Settings
from evote.database import PostgresStore
from evote.errors import AlreadyVoted, TokenConsumed
from evote.models import (
    AuditEntry, BallotToken, ChallengeStatus, Channel, NominationStatus, TokenStatus,
    VerificationChallenge, VoteRecord,
)
from evote.security import generate_ballot_token
from evote.selection import SelectionSet
from evote.services import build_services

TABLES = (
    "audit_log, vote_records, candidates, positions, "
    "ballot_tokens, verification_challenges, voters"
)
PARALLEL_CASTS = 10


@pytest.fixture(scope="module")
def pg_settings():
    if not os.getenv("DB_HOST"):
        pytest.skip("DB_HOST is not set")
    settings = replace(Settings.from_env(), store_backend="postgres",
                       db_pool_min=1, db_pool_max=PARALLEL_CASTS + 2)

    async def ping():
        conn = await asyncpg.connect(
            host=settings.db_host, port=settings.db_port, database=settings.db_name,
            user=settings.db_user, password=settings.db_password, timeout=5,
        )
        await conn.close()

    try:
        asyncio.run(ping())
    except (OSError, asyncio.TimeoutError, asyncpg.PostgresError,
            asyncpg.InterfaceError) as e:
        pytest.skip(f"PostgreSQL at {settings.db_host} unreachable: {e}")
    return settings


def run(settings: Settings, scenario):
    """Run ``scenario(store)`` against freshly emptied tables."""

    async def main():
        store = PostgresStore(settings)
        await store.open()
        try:
            async with store.connection() as conn:
                await conn.conn.execute(f"TRUNCATE {TABLES} RESTART IDENTITY CASCADE")
            return await scenario(store)
        finally:
            await store.close()

    return asyncio.run(main())


async def _seed_ballot(store):
    """One voter holding an ACTIVE token, one single-seat position, one candidate."""
    now = datetime.now(timezone.utc)
    async with store.transaction() as tx:
        voter = await tx.insert_voter("DIT/22/001", "ada@students.dit.ie", None, "DIT", True)
        president = await tx.insert_position("President", 1, None, 1)
        alice = await tx.insert_nomination(
            position_id=president.id, name="Alice", voter_reg_no="DIT/21/101",
            program="BSc", photo_url="/uploads/photos/alice.png",
            manifesto_url="/uploads/manifestos/alice.pdf", submitted_at=now,
        )
        await tx.save_nomination(replace(alice, status=NominationStatus.APPROVED))
        token = BallotToken(generate_ballot_token(), voter.id, now, now + timedelta(hours=1))
        await tx.insert_token(token)
    return voter, president, alice, token.token


def test_schema_applied_by_concurrent_services(pg_settings):
    async def scenario(store):
        async with store.connection() as conn:
            await conn.conn.execute(
                f"DROP TABLE IF EXISTS {TABLES} CASCADE;"
                "DROP FUNCTION IF EXISTS forbid_vote_record_change() CASCADE;"
            )
        stores = [PostgresStore(pg_settings) for _ in range(4)]
        try:
            await asyncio.gather(*(s.open() for s in stores))
        finally:
            await asyncio.gather(*(s.close() for s in stores))
        async with store.connection() as conn:
            return await conn.conn.fetchval(
                "SELECT count(*) FROM pg_trigger WHERE tgname = 'vote_records_immutable'"
            )

    assert run(pg_settings, scenario) == 1


def test_parallel_casts_with_one_token_record_once(pg_settings):
    async def scenario(store):
        voter, president, alice, token = await _seed_ballot(store)
        services = build_services(pg_settings, store=store)
        selections = SelectionSet.from_mapping({president.id: [alice.id]})
        results = await asyncio.gather(
            *(services.caster.cast_vote(token, selections) for _ in range(PARALLEL_CASTS)),
            return_exceptions=True,
        )
        async with store.connection() as conn:
            return results, await conn.list_vote_records(voter.id), await conn.get_token(token)

    results, votes, token = run(pg_settings, scenario)

    receipts = [r for r in results if isinstance(r, CastReceipt)]
    failures = [r for r in results if not isinstance(r, CastReceipt)]
    assert len(receipts) == 1
    assert all(isinstance(f, (TokenConsumed, AlreadyVoted)) for f in failures)
    assert len(votes) == 1
    assert token.status is TokenStatus.CONSUMED


def test_second_live_token_refused_by_index(pg_settings):
    now = datetime.now(timezone.utc)

    async def scenario(store):
        async with store.connection() as conn:
            voter = await conn.insert_voter("DIT/22/002", None, None, None, True)
            await conn.insert_token(BallotToken("old", voter.id, now - timedelta(hours=2),
                                                now - timedelta(hours=1),
                                                status=TokenStatus.EXPIRED))
            live = BallotToken("live", voter.id, now, now + timedelta(hours=1))
            await conn.insert_token(live)
            with pytest.raises(asyncpg.UniqueViolationError):
                await conn.insert_token(replace(live, token="live-2"))

            await conn.save_token(replace(live, status=TokenStatus.CONSUMED, consumed_at=now))
            with pytest.raises(asyncpg.UniqueViolationError):
                await conn.insert_token(replace(live, token="live-3"))
            return await conn.voter_tokens(voter.id)

    tokens = run(pg_settings, scenario)
    assert [(t.token, t.status) for t in tokens] == [
        ("old", TokenStatus.EXPIRED), ("live", TokenStatus.CONSUMED),
    ]


def test_vote_records_cannot_change(pg_settings):
    async def scenario(store):
        voter, president, alice, _ = await _seed_ballot(store)
        record = VoteRecord(voter.id, president.id, alice.id, datetime.now(timezone.utc))
        async with store.connection() as conn:
            await conn.insert_vote_records([record])
            with pytest.raises(asyncpg.UniqueViolationError):
                await conn.insert_vote_records([record])
            with pytest.raises(asyncpg.RaiseError, match="immutable"):
                await conn.conn.execute("UPDATE vote_records SET cast_at = now()")
            with pytest.raises(asyncpg.RaiseError, match="immutable"):
                await conn.conn.execute("DELETE FROM vote_records")
            return record, await conn.list_vote_records()

    record, votes = run(pg_settings, scenario)
    assert [(v.voter_id, v.position_id, v.candidate_id) for v in votes] == [
        (record.voter_id, record.position_id, record.candidate_id),
    ]


def test_expire_pending_challenges_counts_rows(pg_settings):
    now = datetime.now(timezone.utc)

    async def scenario(store):
        async with store.transaction() as tx:
            voter = await tx.insert_voter("DIT/22/003", "cal@students.dit.ie", None, None, True)
            for i, status in enumerate([ChallengeStatus.PENDING, ChallengeStatus.PENDING,
                                        ChallengeStatus.PENDING, ChallengeStatus.CONFIRMED]):
                await tx.insert_challenge(VerificationChallenge(
                    id=f"ch-{i}", voter_id=voter.id, otp_hash="x", channel=Channel.EMAIL,
                    issued_at=now, expires_at=now + timedelta(minutes=10), status=status,
                ))
        async with store.transaction() as tx:
            first = await tx.expire_pending_challenges(voter.id)
            second = await tx.expire_pending_challenges(voter.id)
            confirmed = await tx.has_confirmed_challenge(voter.id)
            expired = await tx.get_challenge("ch-0")
        return first, second, confirmed, expired.status

    assert run(pg_settings, scenario) == (3, 0, True, ChallengeStatus.EXPIRED)


def test_audit_detail_round_trips_as_json(pg_settings):
    async def scenario(store):
        async with store.transaction() as tx:
            await tx.add_audit(AuditEntry("position_created", "officer", "ro-1",
                                          {"position_id": 4, "seat_count": 2}))
            await tx.add_audit(AuditEntry("ballot_cast", "voter", "7", {"votes_recorded": 1}))
        async with store.connection() as conn:
            return await conn.list_audit("position_created")

    (entry,) = run(pg_settings, scenario)
    assert (entry.actor_type, entry.actor_id) == ("officer", "ro-1")
    assert entry.detail == {"position_id": 4, "seat_count": 2}
    assert entry.created_at is not None
