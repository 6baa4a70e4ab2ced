"""Shared fixtures: in-memory store, frozen clock, capturing OTP sender, seeded election."""
import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from evote.config import Settings
from evote.delivery import OtpSender
from evote.documents import Document
from evote.models import NominationStatus
from evote.services import build_services
from evote.store import MemoryStore

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
PDF_BYTES = b"%PDF-1.4\n1 0 obj << /Type /Catalog >> endobj\n%%EOF\n"


class FrozenClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


class CapturingSender(OtpSender):
    """Records every code instead of delivering it."""

    def __init__(self, settings: Settings, fail: bool = False):
        super().__init__(settings)
        self.outbox = []
        self.fail = fail

    async def send(self, channel, address, code):
        if self.fail:
            raise ConnectionError("gateway unreachable")
        self.outbox.append((channel, address, code))

    @property
    def last_code(self) -> str:
        return self.outbox[-1][2]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        store_backend="memory",
        sms_gateway_url="https://sms.gateway.example.com/v1/send",
        upload_dir=str(tmp_path / "uploads"),
        log_level="DEBUG",
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def sender(settings):
    return CapturingSender(settings)


@pytest.fixture
def services(settings, store, sender, clock):
    return build_services(settings, store=store, sender=sender, clock=clock)


@pytest.fixture
def photo_doc():
    return Document("me.png", "image/png", PNG_BYTES)


@pytest.fixture
def manifesto_doc():
    return Document("manifesto.pdf", "application/pdf", PDF_BYTES)


async def _seed(store: MemoryStore) -> SimpleNamespace:
    async with store.transaction() as tx:
        alice_voter = await tx.insert_voter("DIT/22/001", "ada@students.dit.ie",
                                            "+353871110001", "DIT", True)
        await tx.insert_voter("DIT/22/002", "ben@students.dit.ie", None, "DIT", True)
        await tx.insert_voter("DIT/22/003", "cal@students.dit.ie", None, "DIT", False)
        eng_voter = await tx.insert_voter("ENG/22/010", "dee@students.dit.ie", None, "ENG", True)

        president = await tx.insert_position("President", 1, None, 1)
        reps = await tx.insert_position("Class Representatives", 2, "DIT", 2)
        eng_rep = await tx.insert_position("Engineering Representative", 1, "ENG", 3)

        def nominate(position, name, reg_no):
            return tx.insert_nomination(
                position_id=position.id, name=name, voter_reg_no=reg_no, program="BSc",
                photo_url=f"/uploads/photos/{name}.png",
                manifesto_url=f"/uploads/manifestos/{name}.pdf", submitted_at=START,
            )

        candidates = {}
        for position, name, reg_no in [
            (president, "Alice", "DIT/21/101"),
            (president, "Bob", "DIT/21/102"),
            (reps, "Carol", "DIT/21/103"),
            (reps, "Dan", "DIT/21/104"),
            (reps, "Eve", "DIT/21/105"),
            (eng_rep, "Gina", "ENG/21/106"),
        ]:
            n = await nominate(position, name, reg_no)
            await tx.save_nomination(replace(n, status=NominationStatus.APPROVED))
            candidates[name] = n.id
        frank = await nominate(reps, "Frank", "DIT/21/107")
        candidates["Frank"] = frank.id

    return SimpleNamespace(
        voter_id=alice_voter.id,
        eng_voter_id=eng_voter.id,
        president=president.id,
        reps=reps.id,
        eng_rep=eng_rep.id,
        candidates=candidates,
    )


@pytest.fixture
def election(store):
    """Two DIT positions (1 and 2 seats), one ENG-only position, one pending nominee."""
    return asyncio.run(_seed(store))


@pytest.fixture
def login(services, sender):
    """Run the OTP flow for ``reg_no`` and return the issued ballot token."""

    def _login(reg_no: str = "DIT/22/001", channel: str = "EMAIL") -> str:
        async def flow():
            issued = await services.verifier.request_challenge(reg_no, channel)
            verified = await services.verifier.confirm_challenge(
                issued.verification_id, sender.last_code)
            return verified.ballot_token
        return asyncio.run(flow())

    return _login
