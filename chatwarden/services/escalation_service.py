"""
Escalation State Service.
Per (tenant, actor) history used to contextualize and escalate decisions.
"""

import asyncio
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Tuple


Key = Tuple[str, str]


@dataclass
class EscalationSnapshot:
    """Point-in-time view of one actor's escalation state."""
    tenant_id: str
    actor_id: str
    open_warnings: int
    average_risk_score: float
    recent_scores: List[int]
    message_history: List[str]


@dataclass
class _ActorState:
    open_warnings: int = 0
    seeded: bool = False
    recent_scores: Deque[int] = field(default_factory=deque)
    message_lengths: Deque[int] = field(default_factory=deque)


class EscalationStore:
    """
    Manages escalation state for the Content Risk Engine and the abuse-rate detector.
    Warnings raised by either engine feed the same counters.
    """

    def __init__(self, score_history_size: int = 10, message_history_size: int = 5):
        self.score_history_size = score_history_size
        self.message_history_size = message_history_size
        self._states: Dict[Key, _ActorState] = {}
        self._state_lock = threading.Lock()
        self._guards: Dict[Key, asyncio.Lock] = {}

    def _state(self, key: Key) -> _ActorState:
        # Writers only
        state = self._states.get(key)
        if state is None:
            state = self._states[key] = _ActorState(
                recent_scores=deque(maxlen=self.score_history_size),
                message_lengths=deque(maxlen=self.message_history_size),
            )
        return state

    def guard(self, tenant_id: str, actor_id: str) -> asyncio.Lock:
        """Lock serializing a whole evaluate-enforce-update cycle for one actor."""
        key = (tenant_id, actor_id)
        with self._state_lock:
            lock = self._guards.get(key)
            if lock is None:
                lock = self._guards[key] = asyncio.Lock()
            return lock

    def is_seeded(self, tenant_id: str, actor_id: str) -> bool:
        with self._state_lock:
            state = self._states.get((tenant_id, actor_id))
            return state is not None and state.seeded

    def seed_warnings(self, tenant_id: str, actor_id: str, open_warnings: int):
        """Load the persisted warning count the first time an actor is seen."""
        with self._state_lock:
            state = self._state((tenant_id, actor_id))
            state.open_warnings = max(0, open_warnings)
            state.seeded = True

    def open_warnings(self, tenant_id: str, actor_id: str) -> int:
        with self._state_lock:
            state = self._states.get((tenant_id, actor_id))
            return state.open_warnings if state is not None else 0

    def add_warning(self, tenant_id: str, actor_id: str) -> int:
        """Increment open warnings and return the new count."""
        with self._state_lock:
            state = self._state((tenant_id, actor_id))
            state.open_warnings += 1
            return state.open_warnings

    def clear_warnings(self, tenant_id: str, actor_id: str):
        with self._state_lock:
            state = self._state((tenant_id, actor_id))
            state.open_warnings = 0
            state.seeded = True

    def record_score(self, tenant_id: str, actor_id: str, risk_score: int) -> float:
        """Push a risk score and return the rolling average."""
        with self._state_lock:
            state = self._state((tenant_id, actor_id))
            state.recent_scores.append(risk_score)
            return sum(state.recent_scores) / len(state.recent_scores)

    def record_message(self, tenant_id: str, actor_id: str, length: int):
        with self._state_lock:
            self._state((tenant_id, actor_id)).message_lengths.append(length)

    def message_history(self, tenant_id: str, actor_id: str) -> List[str]:
        """Recent message-length summaries, oldest first."""
        with self._state_lock:
            state = self._states.get((tenant_id, actor_id))
            lengths = list(state.message_lengths) if state is not None else []
        return [f"[{n} chars]" for n in lengths]

    def snapshot(self, tenant_id: str, actor_id: str) -> Optional[EscalationSnapshot]:
        """Current state, or None if the actor has never been seen in this tenant."""
        key = (tenant_id, actor_id)
        with self._state_lock:
            state = self._states.get(key)
            if state is None:
                return None
            scores = list(state.recent_scores)
            return EscalationSnapshot(
                tenant_id=tenant_id,
                actor_id=actor_id,
                open_warnings=state.open_warnings,
                average_risk_score=(sum(scores) / len(scores)) if scores else 0.0,
                recent_scores=scores,
                message_history=[f"[{n} chars]" for n in state.message_lengths],
            )
