import pytest

from evote.errors import Unauthorized
from evote.security import (
    create_officer_token, decode_officer_token, generate_ballot_token, generate_otp,
    hash_otp, verify_otp,
)


def test_otp_is_numeric_and_padded():
    for length in (4, 6, 8):
        code = generate_otp(length)
        assert len(code) == length and code.isdigit()


def test_otp_hash_roundtrip():
    hashed = hash_otp("012345")
    assert verify_otp("012345", hashed)
    assert not verify_otp("012346", hashed)


def test_ballot_tokens_are_unique():
    assert len({generate_ballot_token() for _ in range(200)}) == 200


def test_officer_token_roundtrip():
    token = create_officer_token("ro-7", "s3cret")
    assert decode_officer_token(token, "s3cret") == "ro-7"


@pytest.mark.parametrize("token, secret", [
    ("garbage", "s3cret"),
    (create_officer_token("ro-7", "other"), "s3cret"),
    (create_officer_token("ro-7", "s3cret", ttl_hours=-1), "s3cret"),
])
def test_bad_officer_tokens_rejected(token, secret):
    with pytest.raises(Unauthorized):
        decode_officer_token(token, secret)
