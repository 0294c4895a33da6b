from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from dataclasses import replace
from typing import Callable

from .errors import TurnInProgress
from .models import Episode
from .stage import stage_for

log = logging.getLogger(__name__)

Reducer = Callable[[Episode], Episode]


class EpisodeSession:
    """Owns one episode and serializes every change to it.

    Each turn is tagged with a generation number. A reset bumps the generation
    so results from a superseded turn are dropped when they arrive.
    """

    def __init__(self, episode: Episode | None = None) -> None:
        self._lock = threading.Lock()
        self._episode = episode or Episode()
        self._generation = 0
        self._in_flight: int | None = None

    @property
    def episode(self) -> Episode:
        with self._lock:
            return self._episode

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    @property
    def busy(self) -> bool:
        with self._lock:
            return self._in_flight is not None

    def begin_turn(self) -> tuple[int, Episode]:
        with self._lock:
            if self._in_flight is not None:
                raise TurnInProgress("A turn is already in progress for this episode.")
            self._generation += 1
            self._in_flight = self._generation
            return self._generation, self._episode

    def commit(self, generation: int, reducer: Reducer) -> Episode | None:
        with self._lock:
            if generation != self._generation:
                log.info("dropping stale turn generation=%s current=%s", generation, self._generation)
                return None
            self._episode = reducer(self._episode)
            return self._episode

    def finish(self, generation: int) -> None:
        with self._lock:
            if self._in_flight == generation:
                self._in_flight = None

    def update(self, reducer: Reducer, *, when_idle: bool = False) -> Episode:
        """Apply a direct edit and recompute the stage.

        With ``when_idle`` the edit is refused while a turn is in flight, for
        fields that the turn's own commit would overwrite.
        """
        with self._lock:
            if when_idle and self._in_flight is not None:
                raise TurnInProgress("A turn is in progress for this episode.")
            changed = reducer(self._episode)
            self._episode = replace(changed, stage=stage_for(changed))
            return self._episode

    def reset(self) -> Episode:
        with self._lock:
            self._generation += 1
            self._in_flight = None
            # Tasks are their own collection and survive a conversation reset.
            self._episode = Episode(evidence_lock=self._episode.evidence_lock, tasks=self._episode.tasks)
            return self._episode


class SessionRegistry:
    """Live sessions keyed by (user_id, session_key), least recently used first.

    Past ``max_sessions`` the oldest idle session is evicted; a signed-in
    user's episode is restored from its snapshot on the next request.
    """

    def __init__(
        self,
        loader: Callable[[str, str], Episode | None] | None = None,
        *,
        max_sessions: int = 1024,
    ) -> None:
        self._lock = threading.Lock()
        self._sessions: OrderedDict[tuple[str, str], EpisodeSession] = OrderedDict()
        self._loader = loader
        self.max_sessions = max_sessions

    def get(self, user_id: str, session_key: str) -> EpisodeSession:
        key = (user_id, session_key)
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                restored = self._loader(user_id, session_key) if self._loader else None
                session = EpisodeSession(restored)
                self._sessions[key] = session
                self._evict()
            else:
                self._sessions.move_to_end(key)
            return session

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _evict(self) -> None:
        overflow = len(self._sessions) - self.max_sessions
        if overflow <= 0:
            return
        idle = [key for key, session in self._sessions.items() if not session.busy][:overflow]
        for key in idle:
            del self._sessions[key]
        log.debug("evicted %s idle sessions", len(idle))

    def drop(self, user_id: str, session_key: str) -> None:
        with self._lock:
            self._sessions.pop((user_id, session_key), None)
