import threading
from typing import Dict, Iterable, Optional

from redis.exceptions import WatchError

from gameloop.features.challenges.store import InMemoryChallengeStore
from gameloop.features.users.store import InMemoryUserStore


class StoreDown(Exception):
    pass


class FailingUserStore(InMemoryUserStore):
    """In-memory store whose reads can be switched off one by one."""

    def __init__(self):
        super().__init__()
        self.fail_active = False
        self.fail_scores = False
        self.fail_topics: set = set()

    def list_active_user_ids(self, since):
        if self.fail_active:
            raise StoreDown("user store unreachable")
        return super().list_active_user_ids(since)

    def get_scores(self):
        if self.fail_scores:
            raise StoreDown("score source unreachable")
        return super().get_scores()

    def get_topic_scores(self, topic_id):
        if topic_id in self.fail_topics:
            raise StoreDown(f"topic {topic_id} unreachable")
        return super().get_topic_scores(topic_id)


class RecordingChallengeStore(InMemoryChallengeStore):
    """Counts writes; creating for `fail_for` users raises."""

    def __init__(self, fail_for: Iterable[str] = ()):
        super().__init__()
        self.fail_for = set(fail_for)
        self.fail_expire = False
        self.writes = 0

    def create_if_absent(self, assignment):
        if assignment.user_id in self.fail_for:
            raise StoreDown(f"write failed for {assignment.user_id}")
        created = super().create_if_absent(assignment)
        if created:
            self.writes += 1
        return created

    def expire_before(self, cutoff):
        if self.fail_expire:
            raise StoreDown("expiry update failed")
        expired = super().expire_before(cutoff)
        self.writes += expired
        return expired


class RacingChallengeStore(InMemoryChallengeStore):
    """Simulates a concurrent writer landing between the existence check and the insert."""

    def __init__(self, rival_factory):
        super().__init__()
        self._rival_factory = rival_factory

    def create_if_absent(self, assignment):
        rival = self._rival_factory(assignment)
        super().create_if_absent(rival)
        return super().create_if_absent(assignment)


class GatedChallengeStore(InMemoryChallengeStore):
    """Holds the next `parties` reads at a barrier so every caller sees the same row."""

    def __init__(self):
        super().__init__()
        self._gate_lock = threading.Lock()
        self._gated_reads = 0
        self._barrier: Optional[threading.Barrier] = None

    def gate(self, parties: int, timeout: float = 5) -> None:
        self._barrier = threading.Barrier(parties, timeout=timeout)
        self._gated_reads = parties

    def get_assignment(self, user_id, day):
        row = super().get_assignment(user_id, day)
        with self._gate_lock:
            gated = self._gated_reads > 0
            if gated:
                self._gated_reads -= 1
        if gated:
            self._barrier.wait()
        return row


class FakePipeline:
    def __init__(self, redis: "FakeRedis"):
        self._redis = redis
        self._watched: Dict[str, Optional[bytes]] = {}
        self._queued = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.reset()
        return False

    def reset(self):
        self._watched = {}
        self._queued = None

    def watch(self, *keys):
        for key in keys:
            self._watched[key] = self._redis.get(key)

    def unwatch(self):
        self._watched = {}

    def multi(self):
        self._queued = []

    def get(self, key):
        return self._redis.get(key)

    def set(self, key, value):
        self._queued.append(("set", key, value))

    def expire(self, key, seconds):
        self._queued.append(("expire", key, seconds))

    def execute(self):
        with self._redis.lock:
            if self._redis.conflicts > 0:
                self._redis.conflicts -= 1
                self.reset()
                raise WatchError("watched key changed")
            for key, seen in self._watched.items():
                if self._redis.data.get(key) != seen:
                    self.reset()
                    raise WatchError("watched key changed")
            for op, key, arg in self._queued:
                if op == "set":
                    self._redis.data[key] = arg.encode() if isinstance(arg, str) else arg
                else:
                    self._redis.ttls[key] = arg
        self.reset()
        return True


class FakeRedis:
    """Just enough of redis-py for the leaderboard cache."""

    def __init__(self, conflicts: int = 0):
        self.data: Dict[str, bytes] = {}
        self.ttls: Dict[str, int] = {}
        self.conflicts = conflicts
        self.lock = threading.Lock()

    def get(self, key):
        with self.lock:
            return self.data.get(key)

    def pipeline(self):
        return FakePipeline(self)
