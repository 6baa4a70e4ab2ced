import asyncio
from dataclasses import replace

import pytest

from evote.errors import (
    AlreadyConfirmed, ChallengeExpired, ChallengeNotFound, ChannelUnavailable, InvalidCode,
    NotEligible, TokenExpired, TooManyAttempts,
)
from evote.models import ChallengeStatus, Channel, TokenStatus


def test_request_and_confirm_issues_ballot_token(services, sender, store, election):
    issued = asyncio.run(services.verifier.request_challenge("DIT/22/001", "EMAIL"))

    assert issued.voter_id == election.voter_id
    assert issued.channel is Channel.EMAIL
    assert issued.message == "Verification code sent to a***@students.dit.ie"
    channel, address, code = sender.outbox[-1]
    assert address == "ada@students.dit.ie"
    assert len(code) == 6 and code.isdigit()

    verified = asyncio.run(services.verifier.confirm_challenge(issued.verification_id, code))

    assert verified.voter_id == election.voter_id
    assert store.tokens[verified.ballot_token].status is TokenStatus.ACTIVE
    assert store.challenges[issued.verification_id].status is ChallengeStatus.CONFIRMED


def test_otp_is_stored_hashed(services, sender, store, election):
    issued = asyncio.run(services.verifier.request_challenge("DIT/22/001", "EMAIL"))
    stored = store.challenges[issued.verification_id]
    assert sender.last_code not in stored.otp_hash
    for entry in store.audit:
        assert sender.last_code not in str(entry.detail)


def test_registration_number_is_normalised(services, election):
    issued = asyncio.run(services.verifier.request_challenge("  dit/22/001 ", "email"))
    assert issued.voter_id == election.voter_id


def test_unknown_and_ineligible_voters_get_the_same_answer(services, election):
    with pytest.raises(NotEligible) as unknown:
        asyncio.run(services.verifier.request_challenge("DIT/99/999", "EMAIL"))
    with pytest.raises(NotEligible) as ineligible:
        asyncio.run(services.verifier.request_challenge("DIT/22/003", "EMAIL"))
    assert unknown.value.to_dict() == ineligible.value.to_dict()


def test_channel_without_contact_is_unavailable(services, store, election):
    with pytest.raises(ChannelUnavailable):
        asyncio.run(services.verifier.request_challenge("DIT/22/002", "SMS"))
    assert store.challenges == {}


def test_unknown_channel_is_unavailable(services, election):
    with pytest.raises(ChannelUnavailable):
        asyncio.run(services.verifier.request_challenge("DIT/22/001", "CARRIER_PIGEON"))


def test_sms_unavailable_without_gateway(settings, services, sender, election):
    sender.settings = replace(settings, sms_gateway_url="")
    with pytest.raises(ChannelUnavailable):
        asyncio.run(services.verifier.request_challenge("DIT/22/001", "SMS"))


def test_delivery_failure_marks_challenge_failed(services, sender, store, election):
    sender.fail = True
    with pytest.raises(ChannelUnavailable):
        asyncio.run(services.verifier.request_challenge("DIT/22/001", "EMAIL"))

    (challenge,) = store.challenges.values()
    assert challenge.status is ChallengeStatus.FAILED


def test_wrong_code_counts_attempts(services, sender, store, election):
    issued = asyncio.run(services.verifier.request_challenge("DIT/22/001", "EMAIL"))
    wrong = "000000" if sender.last_code != "000000" else "111111"

    with pytest.raises(InvalidCode) as exc:
        asyncio.run(services.verifier.confirm_challenge(issued.verification_id, wrong))

    assert "4 attempt(s) left" in exc.value.message
    challenge = store.challenges[issued.verification_id]
    assert challenge.attempt_count == 1
    assert challenge.status is ChallengeStatus.PENDING
    assert store.tokens == {}


def test_attempts_exhausted_fails_challenge(services, sender, store, election):
    issued = asyncio.run(services.verifier.request_challenge("DIT/22/001", "EMAIL"))
    code = sender.last_code
    wrong = "000000" if code != "000000" else "111111"

    for _ in range(4):
        with pytest.raises(InvalidCode):
            asyncio.run(services.verifier.confirm_challenge(issued.verification_id, wrong))
    with pytest.raises(TooManyAttempts):
        asyncio.run(services.verifier.confirm_challenge(issued.verification_id, wrong))

    assert store.challenges[issued.verification_id].status is ChallengeStatus.FAILED
    # even the right code is refused now
    with pytest.raises(TooManyAttempts):
        asyncio.run(services.verifier.confirm_challenge(issued.verification_id, code))
    assert store.tokens == {}


def test_expired_challenge_issues_no_token(services, sender, store, clock, election):
    issued = asyncio.run(services.verifier.request_challenge("DIT/22/001", "EMAIL"))
    clock.advance(minutes=11)

    with pytest.raises(ChallengeExpired) as exc:
        asyncio.run(services.verifier.confirm_challenge(issued.verification_id, sender.last_code))

    assert isinstance(exc.value, TokenExpired)
    assert store.challenges[issued.verification_id].status is ChallengeStatus.EXPIRED
    assert store.tokens == {}


def test_new_request_supersedes_pending_challenge(services, sender, store, election):
    first = asyncio.run(services.verifier.request_challenge("DIT/22/001", "EMAIL"))
    first_code = sender.last_code
    second = asyncio.run(services.verifier.request_challenge("DIT/22/001", "SMS"))
    second_code = sender.last_code

    assert store.challenges[first.verification_id].status is ChallengeStatus.EXPIRED
    with pytest.raises(ChallengeExpired):
        asyncio.run(services.verifier.confirm_challenge(first.verification_id, first_code))

    verified = asyncio.run(services.verifier.confirm_challenge(second.verification_id, second_code))
    assert verified.voter_id == election.voter_id
    assert sender.outbox[-1][1] == "+353871110001"


def test_confirming_twice_never_regrants(services, sender, election):
    issued = asyncio.run(services.verifier.request_challenge("DIT/22/001", "EMAIL"))
    asyncio.run(services.verifier.confirm_challenge(issued.verification_id, sender.last_code))

    with pytest.raises(AlreadyConfirmed):
        asyncio.run(services.verifier.confirm_challenge(issued.verification_id, sender.last_code))


def test_unknown_challenge(services, election):
    with pytest.raises(ChallengeNotFound):
        asyncio.run(services.verifier.confirm_challenge("no-such-id", "123456"))


def test_audit_trail_records_verification(services, sender, store, election):
    issued = asyncio.run(services.verifier.request_challenge("DIT/22/001", "EMAIL"))
    asyncio.run(services.verifier.confirm_challenge(issued.verification_id, sender.last_code))

    events = [a.event_type for a in store.audit]
    assert events == ["otp_requested", "ballot_token_issued", "otp_confirmed"]
