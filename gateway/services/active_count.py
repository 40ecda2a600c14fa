import threading

from gateway.logging_config import get_logger
from gateway.services.state_machine import Transition

logger = get_logger("active_count")


class ActiveCountCache:
    """Process-local gauge of sessions in talk_to_us or live_chat.

    Advisory only: it decides whether the sweeper timer is worth running.
    The sweeper reconciles it against the store on every cycle and uses the
    reconciled number, not this one, to decide whether to stop.
    """

    def __init__(self, initial: int = 0):
        self._value = max(0, initial)
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def increment(self, amount: int = 1) -> int:
        with self._lock:
            self._value += amount
            return self._value

    def decrement(self, amount: int = 1) -> int:
        with self._lock:
            self._value = max(0, self._value - amount)
            return self._value

    def reconcile(self, authoritative: int) -> int:
        with self._lock:
            drift = self._value - authoritative
            self._value = max(0, authoritative)
        if drift:
            logger.info(
                "Active count reconciled",
                extra={"context": {"drift": drift, "active": authoritative}},
            )
        return authoritative

    def record_transition(self, transition: Transition) -> int:
        """Adjust the gauge for a session entering or leaving a tracked state."""
        if transition.entered_tracked:
            return self.increment()
        if transition.left_tracked:
            return self.decrement()
        return self.value
