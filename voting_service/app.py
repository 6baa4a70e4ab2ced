"""
Voting Service - the voter-facing API.

It owns the voter experience end to end:
    1. Identity verification (OTP by email or SMS)
    2. Ballot token issuance on successful verification
    3. Ballot presentation (bearer ballot token)
    4. Vote casting (bearer ballot token, single use)

and the returning officer's roll and position administration.

Run with:  uvicorn voting_service.app:app --port 5003
"""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import Depends, FastAPI, File, UploadFile

from evote.config import Settings, configure_logging
from evote.delivery import OtpSender
from evote.errors import InvalidRoll
from evote.schemas import (
    BallotPositionOut, CastVoteResponse, ConfirmOtpRequest, ConfirmOtpResponse,
    HealthResponse, PositionCreate, PositionOut, RequestOtpRequest, RequestOtpResponse,
    RollUploadResponse, VoteChoice,
)
from evote.selection import SelectionSet
from evote.services import Services, build_services
from evote.store import Store
from evote.web import (
    ballot_token, get_services, install_error_handlers, officer_id, position_out,
)

logger = logging.getLogger("voting-service")


def create_app(settings: Settings | None = None, store: Store | None = None,
               sender: OtpSender | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    services = build_services(settings, store=store, sender=sender)

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        configure_logging(settings.log_level)
        await services.store.open()
        http_client = None
        if services.sender.http_client is None:
            http_client = httpx.AsyncClient(timeout=10.0)
            services.sender.http_client = http_client
        logger.info("Voting service started")
        yield
        if http_client is not None:
            services.sender.http_client = None
            await http_client.aclose()
        await services.store.close()

    app = FastAPI(
        title="Voting Service",
        description="Voter verification, ballot presentation and single-use vote casting",
        lifespan=lifespan,
    )
    app.state.services = services
    install_error_handlers(app)

    # ── Health ───────────────────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return {"status": "healthy", "service": "voting"}

    # ── Identity verification ────────────────────────────────────────────────

    @app.post("/api/verify/request-otp", response_model=RequestOtpResponse)
    async def request_otp(data: RequestOtpRequest, svc: Services = Depends(get_services)):
        issued = await svc.verifier.request_challenge(data.reg_no, data.method)
        return {
            "verification_id": issued.verification_id,
            "voter_id": issued.voter_id,
            "message": issued.message,
        }

    @app.post("/api/verify/confirm", response_model=ConfirmOtpResponse)
    async def confirm_otp(data: ConfirmOtpRequest, svc: Services = Depends(get_services)):
        verified = await svc.verifier.confirm_challenge(data.verification_id, data.otp)
        return {
            "ballot_token": verified.ballot_token,
            "voter_id": verified.voter_id,
            "expires_at": verified.expires_at,
        }

    # ── Ballot and casting ───────────────────────────────────────────────────

    @app.get("/api/ballot", response_model=list[BallotPositionOut])
    async def get_ballot(token: str = Depends(ballot_token),
                         svc: Services = Depends(get_services)):
        voter_id = await svc.issuer.validate_token(token)
        ballot = await svc.assembler.get_ballot(voter_id)
        return [
            {
                "id": p.id,
                "name": p.name,
                "seats": p.seat_count,
                "candidates": [
                    {"id": c.id, "name": c.name,
                     "photo_url": c.photo_url, "manifesto_url": c.manifesto_url}
                    for c in p.candidates
                ],
            }
            for p in ballot.positions
        ]

    @app.post("/api/vote/cast", response_model=CastVoteResponse)
    async def cast_vote(choices: list[VoteChoice], token: str = Depends(ballot_token),
                        svc: Services = Depends(get_services)):
        selections = SelectionSet.from_pairs((c.position_id, c.candidate_id) for c in choices)
        receipt = await svc.caster.cast_vote(token, selections)
        return {
            "success": True,
            "message": "Your vote has been cast successfully",
            "votes_recorded": receipt.votes_recorded,
        }

    # ── Administration (returning officer) ───────────────────────────────────

    @app.post("/api/admin/voters/upload", status_code=201, response_model=RollUploadResponse)
    async def upload_voters(file: UploadFile = File(...), officer: str = Depends(officer_id),
                            svc: Services = Depends(get_services)):
        """Upload the voter roll from CSV (requires a reg_no column)."""
        contents = await file.read()
        try:
            csv_data = contents.decode("utf-8-sig")
        except UnicodeDecodeError:
            raise InvalidRoll("Voter roll must be UTF-8 encoded CSV")
        result = await svc.roll.import_voters(csv_data, officer)
        return {
            "message": "Voters uploaded successfully",
            "voters_added": result.voters_added,
            "voters_skipped": result.voters_skipped,
        }

    @app.get("/api/admin/positions", response_model=list[PositionOut])
    async def list_positions(svc: Services = Depends(get_services)):
        return [position_out(p) for p in await svc.roll.list_positions()]

    @app.post("/api/admin/positions", status_code=201, response_model=PositionOut)
    async def create_position(data: PositionCreate, officer: str = Depends(officer_id),
                              svc: Services = Depends(get_services)):
        position = await svc.roll.create_position(
            data.name, data.seats, data.constituency, data.display_order, officer,
        )
        return position_out(position)

    return app


app = create_app()
