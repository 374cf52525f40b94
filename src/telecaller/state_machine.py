"""
Conversation lifecycle for one call.

    initializing -> greeting -> listening -> processing -> speaking -> listening ...
    processing | speaking -> completed
    any non-terminal state -> failed

`completed` is also reachable from listening because a speech-to-speech
session can confirm a booking while the caller is already talking again.
`processing -> listening` covers turns that produce nothing to say.
"""

from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

import structlog

from src.telecaller.errors import InvalidTransition

logger = structlog.get_logger(__name__)


class ConversationState(str, Enum):
    INITIALIZING = "initializing"
    GREETING = "greeting"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES: FrozenSet[ConversationState] = frozenset(
    {ConversationState.COMPLETED, ConversationState.FAILED}
)

ALLOWED_TRANSITIONS: Dict[ConversationState, FrozenSet[ConversationState]] = {
    ConversationState.INITIALIZING: frozenset({ConversationState.GREETING, ConversationState.FAILED}),
    ConversationState.GREETING: frozenset({ConversationState.LISTENING, ConversationState.FAILED}),
    ConversationState.LISTENING: frozenset(
        {ConversationState.PROCESSING, ConversationState.COMPLETED, ConversationState.FAILED}
    ),
    ConversationState.PROCESSING: frozenset(
        {
            ConversationState.SPEAKING,
            ConversationState.LISTENING,
            ConversationState.COMPLETED,
            ConversationState.FAILED,
        }
    ),
    ConversationState.SPEAKING: frozenset(
        {ConversationState.LISTENING, ConversationState.COMPLETED, ConversationState.FAILED}
    ),
    ConversationState.COMPLETED: frozenset(),
    ConversationState.FAILED: frozenset(),
}


class ConversationStateMachine:
    """Validates transitions and reports each one to `on_change(old, new)`."""

    def __init__(
        self,
        on_change: Optional[Callable[[ConversationState, ConversationState], None]] = None,
        *,
        call_sid: str = "",
    ):
        self._state = ConversationState.INITIALIZING
        self._on_change = on_change
        self._call_sid = call_sid
        self.history: List[Tuple[ConversationState, ConversationState]] = []

    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def can_transition(self, new_state: ConversationState) -> bool:
        return new_state in ALLOWED_TRANSITIONS[self._state]

    def transition(self, new_state: ConversationState) -> bool:
        """
        Move to `new_state`.

        Returns False for a same-state move (no event). Raises InvalidTransition
        for a move the lifecycle does not allow.
        """
        if new_state == self._state:
            return False
        if not self.can_transition(new_state):
            raise InvalidTransition(f"{self._state.value} -> {new_state.value}")

        old = self._state
        self._state = new_state
        self.history.append((old, new_state))
        logger.debug("State transition", call_sid=self._call_sid, old=old.value, new=new_state.value)
        if self._on_change is not None:
            self._on_change(old, new_state)
        return True
