"""
Nomination Service - candidate submissions and the officer's review.

Candidates submit a nomination with a photo and a PDF manifesto; the
returning officer lists pending nominations and approves or rejects each
one (a rejection must say why).  Approved nominations are the candidates
shown on ballots by the voting service.

Stored documents are served read-only under UPLOAD_URL_PREFIX.

Run with:  uvicorn nomination_service.app:app --port 5004
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import Depends, FastAPI, File, Form, UploadFile
from fastapi.staticfiles import StaticFiles

from evote.config import Settings, configure_logging
from evote.documents import Document
from evote.models import Nomination, NominationStatus
from evote.nominations import NominationForm
from evote.schemas import (
    CandidateOut, DecisionRequest, DecisionResponse, HealthResponse, NominateResponse,
    PositionOut,
)
from evote.services import Services, build_services
from evote.store import Store
from evote.web import get_services, install_error_handlers, officer_id, position_out

logger = logging.getLogger("nomination-service")


def _candidate_out(n: Nomination) -> dict:
    return {
        "id": n.id,
        "position_id": n.position_id,
        "name": n.name,
        "voter_reg_no": n.voter_reg_no,
        "program": n.program,
        "photo_url": n.photo_url,
        "manifesto_url": n.manifesto_url,
        "status": n.status.value,
        "rejection_reason": n.decision_reason,
        "decided_by": n.decided_by,
        "decided_at": n.decided_at,
        "submitted_at": n.submitted_at,
    }


async def _document(upload: UploadFile | None) -> Document | None:
    if upload is None:
        return None
    return Document(
        filename=upload.filename or "",
        content_type=upload.content_type or "",
        data=await upload.read(),
    )


def create_app(settings: Settings | None = None, store: Store | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    services = build_services(settings, store=store)

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        configure_logging(settings.log_level)
        Path(settings.upload_dir).mkdir(parents=True, exist_ok=True)
        await services.store.open()
        logger.info("Nomination service started")
        yield
        await services.store.close()

    app = FastAPI(
        title="Nomination Service",
        description="Candidate nominations and returning-officer review",
        lifespan=lifespan,
    )
    app.state.services = services
    install_error_handlers(app)
    app.mount(
        settings.upload_url_prefix,
        StaticFiles(directory=settings.upload_dir, check_dir=False),
        name="uploads",
    )

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return {"status": "healthy", "service": "nomination"}

    @app.get("/api/admin/positions", response_model=list[PositionOut])
    async def list_positions(svc: Services = Depends(get_services)):
        """Positions open for nomination (feeds the nomination form)."""
        return [position_out(p) for p in await svc.roll.list_positions()]

    @app.post("/api/candidate/nominate", status_code=201, response_model=NominateResponse)
    async def nominate(
        candidate_name: str = Form(...),
        voter_reg_no: str = Form(...),
        program: str = Form(...),
        position_id: int = Form(...),
        photoFile: UploadFile | None = File(None),
        manifestoFile: UploadFile | None = File(None),
        svc: Services = Depends(get_services),
    ):
        form = NominationForm(
            candidate_name=candidate_name,
            voter_reg_no=voter_reg_no,
            program=program,
            position_id=position_id,
        )
        nomination = await svc.nominations.submit(
            form, await _document(photoFile), await _document(manifestoFile),
        )
        return {
            "message": "Nomination submitted successfully",
            "candidate": _candidate_out(nomination),
        }

    @app.get("/api/candidate", response_model=list[CandidateOut])
    async def list_candidates(status: NominationStatus | None = None,
                              position_id: int | None = None,
                              officer: str = Depends(officer_id),
                              svc: Services = Depends(get_services)):
        nominations = await svc.nominations.list_nominations(status, position_id)
        return [_candidate_out(n) for n in nominations]

    @app.patch("/api/candidate/{candidate_id}/decision", response_model=DecisionResponse)
    async def decide(candidate_id: int, data: DecisionRequest,
                     officer: str = Depends(officer_id),
                     svc: Services = Depends(get_services)):
        decided = await svc.nominations.decide(candidate_id, data.action, data.reason, officer)
        verb = "approved" if decided.status is NominationStatus.APPROVED else "rejected"
        return {
            "message": f"Candidate {decided.name} {verb}",
            "candidate": _candidate_out(decided),
        }

    return app


app = create_app()
