from datetime import date, datetime, timezone

from gameloop.features.challenges.catalog import DEFAULT_CATALOG, TOPICS, build_catalog, find_definition
from gameloop.features.challenges.policy import RotationPolicy, WeakestTopicPolicy
from gameloop.models.challenge import ChallengeAssignment


def test_catalog_offers_every_topic_at_every_difficulty():
    assert len(DEFAULT_CATALOG) == len(TOPICS) * 3
    assert find_definition(DEFAULT_CATALOG, "graphs", "hard").definition_id == "graphs:hard"
    assert find_definition(DEFAULT_CATALOG, "graphs", "impossible") is None


def test_rotation_is_deterministic_per_user_and_day():
    policy = RotationPolicy()
    day = date(2024, 6, 1)
    first = policy.select("alice", day, DEFAULT_CATALOG, [])
    again = policy.select("alice", day, DEFAULT_CATALOG, [])
    assert first == again


def test_rotation_avoids_repeating_the_last_definition():
    policy = RotationPolicy()
    day = date(2024, 6, 1)
    picked = policy.select("alice", day, DEFAULT_CATALOG, [])
    previous = ChallengeAssignment.from_definition(
        user_id="alice",
        day=date(2024, 5, 31),
        definition=picked,
        created_at=datetime(2024, 5, 31, tzinfo=timezone.utc),
    )

    assert policy.select("alice", day, DEFAULT_CATALOG, [previous]) != picked


def test_rotation_with_single_definition_repeats():
    catalog = build_catalog([("arrays", "Arrays")])[:1]
    previous = ChallengeAssignment.from_definition(
        user_id="bob",
        day=date(2024, 5, 31),
        definition=catalog[0],
        created_at=datetime(2024, 5, 31, tzinfo=timezone.utc),
    )
    assert RotationPolicy().select("bob", date(2024, 6, 1), catalog, [previous]) == catalog[0]


def test_weakest_topic_picks_among_lowest_strengths():
    strengths = {"arrays": 0.9, "graphs": 0.1, "trees": 0.2, "strings": 0.3, "greedy": 0.8}
    policy = WeakestTopicPolicy(lambda _uid: strengths)

    picks = {policy.select("carol", date(2024, 6, d), DEFAULT_CATALOG, []).topic_id for d in range(1, 10)}

    assert picks <= {"graphs", "trees", "strings"}
    assert len(picks) > 1


def test_weakest_topic_falls_back_without_progress():
    policy = WeakestTopicPolicy(lambda _uid: {})
    day = date(2024, 6, 1)
    assert policy.select("dave", day, DEFAULT_CATALOG, []) == RotationPolicy().select("dave", day, DEFAULT_CATALOG, [])


def test_weakest_topic_ignores_topics_outside_catalog():
    policy = WeakestTopicPolicy(lambda _uid: {"quantum": 0.0, "hashing": 0.5})
    assert policy.select("erin", date(2024, 6, 1), DEFAULT_CATALOG, []).topic_id == "hashing"
