from __future__ import annotations

from typing import Iterable, Optional, Tuple

from gameloop.models.challenge import DIFFICULTIES, ChallengeDefinition


# Practice topics, each offered at every difficulty
TOPICS = [
    ("arrays", "Arrays"),
    ("strings", "Strings"),
    ("linked-lists", "Linked Lists"),
    ("stacks-queues", "Stacks & Queues"),
    ("trees", "Trees"),
    ("graphs", "Graphs"),
    ("dynamic-programming", "Dynamic Programming"),
    ("greedy", "Greedy Algorithms"),
    ("hashing", "Hashing"),
    ("recursion-backtracking", "Recursion & Backtracking"),
]

TARGET_QUESTIONS = 3
REWARD_POINTS = 50


def build_catalog(topics: Iterable[Tuple[str, str]] = TOPICS) -> Tuple[ChallengeDefinition, ...]:
    return tuple(
        ChallengeDefinition(
            definition_id=f"{topic_id}:{difficulty}",
            topic_id=topic_id,
            topic_name=topic_name,
            difficulty=difficulty,  # type: ignore[arg-type]
            target_count=TARGET_QUESTIONS,
            reward_points=REWARD_POINTS,
        )
        for topic_id, topic_name in topics
        for difficulty in DIFFICULTIES
    )


DEFAULT_CATALOG = build_catalog()


def find_definition(
    catalog: Iterable[ChallengeDefinition], topic_id: str, difficulty: str
) -> Optional[ChallengeDefinition]:
    for definition in catalog:
        if definition.topic_id == topic_id and definition.difficulty == difficulty:
            return definition
    return None
