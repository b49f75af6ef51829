"""
Leaderboard snapshot cache.

publish(snapshot) writes the whole snapshot first and only then moves the
"current" pointer for its scope, so get_current() returns either the old
snapshot or the new one, never a mix. A snapshot computed earlier than the
current one is refused (a slow, abandoned run must not roll the board back).
"""
from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional, Protocol

from redis import Redis
from redis.exceptions import WatchError

from gameloop.models.leaderboard import LeaderboardSnapshot

logger = logging.getLogger("gameloop.leaderboard")


class LeaderboardCache(Protocol):
    def publish(self, snapshot: LeaderboardSnapshot) -> bool:
        ...

    def get_current(self, scope: str) -> Optional[LeaderboardSnapshot]:
        ...


class InMemoryLeaderboardCache:
    """Per-scope reference swap under a lock. Snapshots are immutable."""

    def __init__(self):
        self._current: Dict[str, LeaderboardSnapshot] = {}
        self._lock = threading.Lock()

    def publish(self, snapshot: LeaderboardSnapshot) -> bool:
        with self._lock:
            current = self._current.get(snapshot.scope)
            if current is not None and snapshot.computed_at < current.computed_at:
                return False
            self._current[snapshot.scope] = snapshot
            return True

    def get_current(self, scope: str) -> Optional[LeaderboardSnapshot]:
        with self._lock:
            return self._current.get(scope)

    def scopes(self) -> List[str]:
        with self._lock:
            return sorted(self._current)


def _decode(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class RedisLeaderboardCache:
    """
    Redis layout per scope:
      {prefix}:{scope}:{version}  -> snapshot JSON
      {prefix}:{scope}:current    -> version

    The superseded version key gets a grace TTL instead of being deleted so a
    reader that fetched the old pointer can still load it.
    """

    def __init__(self, client: Redis, *, prefix: str = "gameloop:leaderboard", grace_seconds: int = 60):
        self._client = client
        self._prefix = prefix
        self._grace_seconds = grace_seconds

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisLeaderboardCache":
        return cls(Redis.from_url(url), **kwargs)

    def _pointer_key(self, scope: str) -> str:
        return f"{self._prefix}:{scope}:current"

    def _data_key(self, scope: str, version: str) -> str:
        return f"{self._prefix}:{scope}:{version}"

    def _load(self, reader, scope: str, version: Optional[str]) -> Optional[LeaderboardSnapshot]:
        if not version:
            return None
        raw = _decode(reader.get(self._data_key(scope, version)))
        if raw is None:
            return None
        return LeaderboardSnapshot.model_validate_json(raw)

    def publish(self, snapshot: LeaderboardSnapshot) -> bool:
        pointer_key = self._pointer_key(snapshot.scope)
        data_key = self._data_key(snapshot.scope, snapshot.version)
        payload = snapshot.model_dump_json()

        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(pointer_key)
                    current_version = _decode(pipe.get(pointer_key))
                    current = self._load(pipe, snapshot.scope, current_version)
                    if current is not None and snapshot.computed_at < current.computed_at:
                        pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.set(data_key, payload)
                    pipe.set(pointer_key, snapshot.version)
                    if current_version and current_version != snapshot.version:
                        pipe.expire(self._data_key(snapshot.scope, current_version), self._grace_seconds)
                    pipe.execute()
                    return True
                except WatchError:
                    # Another publisher moved the pointer; re-check staleness
                    logger.info("leaderboard publish retry", extra={"scope": snapshot.scope})
                    continue

    def get_current(self, scope: str) -> Optional[LeaderboardSnapshot]:
        version = _decode(self._client.get(self._pointer_key(scope)))
        return self._load(self._client, scope, version)
