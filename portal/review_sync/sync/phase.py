"""
Load phase state machine.

    Uninitialized ──begin_load()──▶ Loading ──complete_load(token)──▶ Ready
          ▲                            │                               │
          └──────fail_load(token)──────┘                               │
          └──────────────────────reset()───────────────────────────────┘

Every reset bumps the generation. Async work captures a token when it
starts and checks it before committing; a token from an older generation
means the session it belonged to is gone and the result is discarded.

Invariants:
    - Only a token of the current generation can move the phase
    - Reloads started from Ready keep the phase Ready
    - reset() always lands in Uninitialized
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class SyncPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"


@dataclass(frozen=True)
class PhaseToken:
    """Ticket for one piece of async work within a generation."""

    generation: int


class PhaseTracker:
    """Tracks the load phase and the session generation."""

    def __init__(self) -> None:
        self._phase = SyncPhase.UNINITIALIZED
        self._generation = 0

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_ready(self) -> bool:
        return self._phase is SyncPhase.READY

    def token(self) -> PhaseToken:
        return PhaseToken(self._generation)

    def is_current(self, token: PhaseToken) -> bool:
        return token.generation == self._generation

    def begin_load(self) -> PhaseToken:
        if self._phase is SyncPhase.UNINITIALIZED:
            self._phase = SyncPhase.LOADING
        return self.token()

    def complete_load(self, token: PhaseToken) -> bool:
        """Mark a load complete; False if the token is superseded."""
        if not self.is_current(token):
            logger.debug(
                "Discarding superseded load",
                extra={"token_generation": token.generation, "generation": self._generation},
            )
            return False
        self._phase = SyncPhase.READY
        return True

    def fail_load(self, token: PhaseToken) -> None:
        if self.is_current(token) and self._phase is SyncPhase.LOADING:
            self._phase = SyncPhase.UNINITIALIZED

    def reset(self) -> None:
        self._generation += 1
        self._phase = SyncPhase.UNINITIALIZED
