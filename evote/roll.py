"""
Voter roll and position administration (returning-officer operations).

The roll arrives as CSV with a ``reg_no`` column and optional ``email``,
``phone``, ``constituency`` and ``eligible`` columns.  Rows already on the
roll, missing a reg_no or failing validation are skipped and counted,
never fatal.
"""
import csv
import logging
from dataclasses import dataclass
from io import StringIO

from pydantic import ValidationError

from .errors import InvalidRoll
from .identity import normalise_reg_no
from .models import AuditEntry, Position
from .schemas import RollRow
from .store import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RollImport:
    voters_added: int
    voters_skipped: int


def _blank_to_none(value: str | None) -> str | None:
    value = (value or "").strip()
    return value or None


class RollAdmin:

    def __init__(self, store: Store):
        self.store = store

    async def import_voters(self, csv_text: str, officer_id: str) -> RollImport:
        reader = csv.DictReader(StringIO(csv_text))
        if reader.fieldnames is None or "reg_no" not in reader.fieldnames:
            raise InvalidRoll('CSV must have a "reg_no" column')

        added = 0
        skipped = 0
        async with self.store.transaction() as tx:
            for line_no, raw in enumerate(reader, start=2):
                cells = {k: v.strip() for k, v in raw.items() if k and v and v.strip()}
                try:
                    row = RollRow(**cells)
                except ValidationError as e:
                    logger.warning(f"Roll line {line_no} skipped: {e.error_count()} invalid field(s)")
                    skipped += 1
                    continue
                voter = await tx.insert_voter(
                    reg_no=normalise_reg_no(row.reg_no),
                    email=row.email,
                    phone=row.phone,
                    constituency=row.constituency,
                    eligible=row.eligible,
                )
                if voter is None:
                    skipped += 1
                else:
                    added += 1
            await tx.add_audit(AuditEntry(
                event_type="roll_imported", actor_type="officer", actor_id=officer_id,
                detail={"voters_added": added, "voters_skipped": skipped},
            ))

        logger.info(f"Voter roll imported by {officer_id}: {added} added, {skipped} skipped")
        return RollImport(voters_added=added, voters_skipped=skipped)

    async def create_position(self, name: str, seat_count: int, constituency: str | None,
                              display_order: int, officer_id: str) -> Position:
        async with self.store.transaction() as tx:
            position = await tx.insert_position(
                name=name.strip(), seat_count=seat_count,
                constituency=_blank_to_none(constituency), display_order=display_order,
            )
            await tx.add_audit(AuditEntry(
                event_type="position_created", actor_type="officer", actor_id=officer_id,
                detail={"position_id": position.id, "seat_count": seat_count},
            ))
        logger.info(f"Position {position.id} '{position.name}' created ({seat_count} seats)")
        return position

    async def list_positions(self) -> list[Position]:
        async with self.store.connection() as conn:
            return await conn.list_positions()
