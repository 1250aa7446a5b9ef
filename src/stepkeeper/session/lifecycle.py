"""
Process lifecycle observation.

The platform adapter reports OS transitions through ``notify``; the observer
keeps the current state and fans each transition out to subscribers.

- Consecutive duplicate states are dropped.
- Every accepted transition reaches every listener subscribed at dispatch
  time, in arrival order, including transitions reported from inside a
  listener (they are queued behind the one being delivered).
- A failing listener is logged and skipped; the others still get the event.
"""

from collections import deque
from typing import Callable, Deque, List

from stepkeeper.errors import ListenerError
from stepkeeper.logger import get_logger
from stepkeeper.session.models import LifecycleState

logger = get_logger(__name__)

LifecycleListener = Callable[[LifecycleState], None]


class LifecycleObserver:
    """Tracks active/inactive/backgrounded and dispatches changes."""

    def __init__(self, initial_state: LifecycleState = LifecycleState.ACTIVE):
        self._state = LifecycleState(initial_state)
        self._listeners: List[LifecycleListener] = []
        self._pending: Deque[LifecycleState] = deque()
        self._dispatching = False
        self.last_errors: List[ListenerError] = []

    def subscribe(self, listener: LifecycleListener) -> Callable[[], None]:
        """
        Register a listener for lifecycle transitions.

        Returns:
            A callable that removes the listener; calling it twice is harmless.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def get_current_state(self) -> LifecycleState:
        return self._state

    def is_active(self) -> bool:
        return self._state is LifecycleState.ACTIVE

    def is_in_background(self) -> bool:
        return self._state in (LifecycleState.INACTIVE, LifecycleState.BACKGROUNDED)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def notify(self, state: LifecycleState) -> None:
        """Report an OS lifecycle transition."""
        self._pending.append(LifecycleState(state))
        if self._dispatching:
            return

        self._dispatching = True
        try:
            while self._pending:
                self._deliver(self._pending.popleft())
        finally:
            self._dispatching = False

    def _deliver(self, state: LifecycleState) -> None:
        if state is self._state:
            logger.debug(f"Ignoring duplicate lifecycle state: {state.value}")
            return

        previous, self._state = self._state, state
        logger.info(f"Lifecycle changed from {previous.value} to {state.value}")

        self.last_errors = []
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                error = ListenerError(listener, state.value, e)
                self.last_errors.append(error)
                logger.error(f"{error}")
