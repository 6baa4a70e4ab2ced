"""Wiring: one place that builds the core components from settings."""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .ballot import BallotAssembler
from .casting import VoteCaster
from .config import Settings
from .database import create_store
from .delivery import OtpSender
from .documents import DocumentStore
from .identity import IdentityVerifier
from .nominations import NominationWorkflow
from .roll import RollAdmin
from .security import utcnow
from .selection import SelectionValidator
from .store import Store
from .tokens import BallotTokenIssuer


@dataclass
class Services:
    settings: Settings
    store: Store
    sender: OtpSender
    documents: DocumentStore
    issuer: BallotTokenIssuer
    verifier: IdentityVerifier
    assembler: BallotAssembler
    caster: VoteCaster
    nominations: NominationWorkflow
    roll: RollAdmin


def build_services(settings: Settings, store: Store | None = None,
                   sender: OtpSender | None = None,
                   clock: Callable[[], datetime] = utcnow) -> Services:
    store = store if store is not None else create_store(settings)
    sender = sender if sender is not None else OtpSender(settings)
    documents = DocumentStore(settings)
    issuer = BallotTokenIssuer(store, settings, clock)
    assembler = BallotAssembler(store)
    return Services(
        settings=settings,
        store=store,
        sender=sender,
        documents=documents,
        issuer=issuer,
        verifier=IdentityVerifier(store, sender, issuer, settings, clock),
        assembler=assembler,
        caster=VoteCaster(store, issuer, assembler,
                          SelectionValidator(settings.abstention_policy), clock),
        nominations=NominationWorkflow(store, documents, clock),
        roll=RollAdmin(store),
    )
