"""
NominationWorkflow - candidate submissions and the returning officer's decision.

    SUBMITTED --(documents + fields valid)--> PENDING --APPROVE--> APPROVED
                                                      --REJECT---> REJECTED

SUBMITTED only exists while a submission is being checked; what is stored
is PENDING.  A decision is taken once: APPROVED and REJECTED are terminal,
and a rejection always carries its reason.  An APPROVED nomination is the
candidate that appears on ballots.
"""
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable

from .documents import Document, DocumentStore
from .errors import (
    AlreadyDecided, DuplicateNomination, InvalidDecision, NominationNotFound,
    NotEligible, ReasonRequired, UnknownPosition,
)
from .identity import normalise_reg_no
from .models import AuditEntry, Decision, Nomination, NominationStatus
from .security import utcnow
from .store import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NominationForm:
    candidate_name: str
    voter_reg_no: str
    program: str
    position_id: int


class NominationWorkflow:

    def __init__(self, store: Store, documents: DocumentStore,
                 clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.documents = documents
        self.clock = clock

    async def submit(self, form: NominationForm, photo: Document | None,
                     manifesto: Document | None) -> Nomination:
        photo_ext = self.documents.check_photo(photo)
        manifesto_ext = self.documents.check_manifesto(manifesto)
        reg_no = normalise_reg_no(form.voter_reg_no)

        stored: list[str] = []
        try:
            photo_url = await self.documents.save("photos", photo, photo_ext)
            stored.append(photo_url)
            manifesto_url = await self.documents.save("manifestos", manifesto, manifesto_ext)
            stored.append(manifesto_url)

            async with self.store.transaction() as tx:
                if await tx.get_position(form.position_id) is None:
                    raise UnknownPosition()
                voter = await tx.get_voter_by_reg_no(reg_no)
                if voter is None or not voter.eligible:
                    raise NotEligible()
                await tx.lock_voter(voter.id)

                live = [
                    n for n in await tx.list_nominations(position_id=form.position_id)
                    if n.voter_reg_no == reg_no and n.status is not NominationStatus.REJECTED
                ]
                if live:
                    raise DuplicateNomination()

                nomination = await tx.insert_nomination(
                    position_id=form.position_id,
                    name=form.candidate_name.strip(),
                    voter_reg_no=reg_no,
                    program=form.program.strip(),
                    photo_url=photo_url,
                    manifesto_url=manifesto_url,
                    submitted_at=self.clock(),
                )
                await tx.add_audit(AuditEntry(
                    event_type="nomination_submitted", actor_type="candidate", actor_id=reg_no,
                    detail={"nomination_id": nomination.id, "position_id": form.position_id},
                ))
        except BaseException:
            for url in stored:
                await self.documents.discard(url)
            raise

        logger.info(f"Nomination {nomination.id} submitted for position {form.position_id}")
        return nomination

    async def decide(self, nomination_id: int, action: Decision | str,
                     reason: str | None, officer_id: str) -> Nomination:
        try:
            decision = Decision(str(getattr(action, "value", action)).upper())
        except ValueError:
            raise InvalidDecision()
        reason = (reason or "").strip() or None

        async with self.store.transaction() as tx:
            nomination = await tx.lock_nomination(nomination_id)
            if nomination is None:
                raise NominationNotFound()
            if nomination.status is not NominationStatus.PENDING:
                raise AlreadyDecided()
            if decision is Decision.REJECT and reason is None:
                raise ReasonRequired()

            decided = replace(
                nomination,
                status=(NominationStatus.APPROVED if decision is Decision.APPROVE
                        else NominationStatus.REJECTED),
                decision_reason=reason if decision is Decision.REJECT else None,
                decided_by=officer_id,
                decided_at=self.clock(),
            )
            await tx.save_nomination(decided)
            await tx.add_audit(AuditEntry(
                event_type="nomination_decided", actor_type="officer", actor_id=officer_id,
                detail={"nomination_id": nomination_id, "status": decided.status.value},
            ))

        logger.info(f"Nomination {nomination_id} {decided.status.value.lower()} by {officer_id}")
        return decided

    async def list_nominations(self, status: NominationStatus | str | None = None,
                               position_id: int | None = None) -> list[Nomination]:
        if status is not None:
            status = NominationStatus(str(getattr(status, "value", status)).upper())
        async with self.store.connection() as conn:
            return await conn.list_nominations(status=status, position_id=position_id)
