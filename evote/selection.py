"""
SelectionValidator - checks a voter's choices against a freshly assembled ballot.

Client selections are never trusted: every position and candidate id is
resolved against the ballot, seat limits are enforced, and the configured
abstention policy decides how much of the ballot must be filled in.
Validation returns an outcome value; only the caster turns a rejection into
``InvalidSelection``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Union

from .ballot import Ballot
from .config import AbstentionPolicy
from .errors import InvalidSelection


@dataclass(frozen=True)
class SelectionSet:
    """Position id -> ordered candidate ids, exactly as submitted."""

    choices: Mapping[int, tuple[int, ...]]

    @classmethod
    def from_pairs(cls, pairs: Iterable[tuple[int, int]]) -> "SelectionSet":
        grouped: dict[int, list[int]] = {}
        for position_id, candidate_id in pairs:
            grouped.setdefault(position_id, []).append(candidate_id)
        return cls({p: tuple(ids) for p, ids in grouped.items()})

    @classmethod
    def from_mapping(cls, mapping: Mapping[int, Iterable[int]]) -> "SelectionSet":
        return cls({p: tuple(ids) for p, ids in mapping.items()})

    def pairs(self) -> list[tuple[int, int]]:
        return [(p, c) for p, ids in self.choices.items() for c in ids]

    def is_empty(self) -> bool:
        return not any(self.choices.values())


@dataclass(frozen=True)
class SelectionOk:
    selections: SelectionSet
    ok = True


@dataclass(frozen=True)
class SelectionRejected:
    position_id: int | None
    detail: str
    ok = False

    def to_error(self) -> InvalidSelection:
        return InvalidSelection(self.detail, position_id=self.position_id)


SelectionOutcome = Union[SelectionOk, SelectionRejected]


class SelectionValidator:

    def __init__(self, policy: AbstentionPolicy = AbstentionPolicy.REQUIRE_ANY):
        self.policy = policy

    def validate(self, ballot: Ballot, selections: SelectionSet) -> SelectionOutcome:
        for position_id, candidate_ids in selections.choices.items():
            position = ballot.position(position_id)
            if position is None:
                return SelectionRejected(position_id, "Position is not on your ballot")

            if len(set(candidate_ids)) != len(candidate_ids):
                return SelectionRejected(
                    position_id, f"A candidate was selected more than once for {position.name}")

            allowed = position.candidate_ids
            for candidate_id in candidate_ids:
                if candidate_id not in allowed:
                    return SelectionRejected(
                        position_id,
                        f"Candidate {candidate_id} is not standing for {position.name}",
                    )

            if len(candidate_ids) > position.seat_count:
                return SelectionRejected(
                    position_id,
                    f"You may select at most {position.seat_count} "
                    f"candidate(s) for {position.name}",
                )

        if self.policy is AbstentionPolicy.REQUIRE_ANY and selections.is_empty():
            return SelectionRejected(
                None, "Please select at least one candidate before casting your vote.")

        if self.policy is AbstentionPolicy.REQUIRE_EACH:
            for position in ballot.positions:
                if position.candidates and not selections.choices.get(position.id):
                    return SelectionRejected(
                        position.id, f"Please select at least one candidate for {position.name}")

        return SelectionOk(selections)
