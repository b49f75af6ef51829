"""
Challenge selection policies.

A policy picks one ChallengeDefinition for a user and day. Policies are
pure given their inputs, so re-running generation for the same day picks the
same definition.
"""
from __future__ import annotations

import hashlib
from datetime import date
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from gameloop.features.challenges.catalog import find_definition
from gameloop.models.challenge import DIFFICULTIES, ChallengeAssignment, ChallengeDefinition


class SelectionPolicy(Protocol):
    def select(
        self,
        user_id: str,
        reference_date: date,
        catalog: Sequence[ChallengeDefinition],
        recent: Sequence[ChallengeAssignment],
    ) -> ChallengeDefinition:
        ...


def _hash_index(seed: str, size: int) -> int:
    hash_val = int(hashlib.sha256(seed.encode()).hexdigest(), 16)
    return hash_val % size


class RotationPolicy:
    """Deterministic pick seeded by user + date.

    Avoids handing out the definition the user got most recently when the
    catalog has anything else to offer.
    """

    def select(
        self,
        user_id: str,
        reference_date: date,
        catalog: Sequence[ChallengeDefinition],
        recent: Sequence[ChallengeAssignment],
    ) -> ChallengeDefinition:
        if not catalog:
            raise ValueError("Challenge catalog is empty")
        index = _hash_index(f"{user_id}:{reference_date.isoformat()}", len(catalog))
        chosen = catalog[index]
        last_id = recent[0].definition_id if recent else None
        if chosen.definition_id == last_id and len(catalog) > 1:
            chosen = catalog[(index + 1) % len(catalog)]
        return chosen


class WeakestTopicPolicy:
    """Steer users toward their weakest topics.

    Candidates are the three lowest-strength topics the catalog covers; the
    day picks one of them and the difficulty cycles easy -> medium -> hard.
    Users without progress fall back to rotation.
    """

    def __init__(
        self,
        strengths_for: Callable[[str], Dict[str, float]],
        *,
        candidates: int = 3,
        fallback: Optional[SelectionPolicy] = None,
    ):
        self._strengths_for = strengths_for
        self._candidates = candidates
        self._fallback = fallback or RotationPolicy()

    def select(
        self,
        user_id: str,
        reference_date: date,
        catalog: Sequence[ChallengeDefinition],
        recent: Sequence[ChallengeAssignment],
    ) -> ChallengeDefinition:
        strengths = self._strengths_for(user_id)
        offered = {definition.topic_id for definition in catalog}
        weakest: List[str] = [
            topic for topic, _ in sorted(strengths.items(), key=lambda item: (item[1], item[0]))
            if topic in offered
        ][: self._candidates]
        if not weakest:
            return self._fallback.select(user_id, reference_date, catalog, recent)

        day_number = reference_date.toordinal()
        topic_id = weakest[day_number % len(weakest)]
        difficulty = DIFFICULTIES[day_number % len(DIFFICULTIES)]
        definition = find_definition(catalog, topic_id, difficulty)
        if definition is None:
            return self._fallback.select(user_id, reference_date, catalog, recent)
        return definition
