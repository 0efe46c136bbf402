import logging
import threading
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class SlotLease:
    """A reserved slot of a bounded counter. Releasing twice is a no-op."""

    __slots__ = ("_counter", "_released", "_lock")

    def __init__(self, counter: "_BoundedCounter") -> None:
        self._counter = counter
        self._released = False
        self._lock = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        """Give the slot back. Returns False if it was already released."""
        with self._lock:
            if self._released:
                return False
            self._released = True
        self._counter.decrement()
        return True


@dataclass
class _BoundedCounter:
    name: str
    maximum: int
    value: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def try_increment(self) -> SlotLease | None:
        with self._lock:
            if self.value >= self.maximum:
                logger.info(f"{self.name} limit reached ({self.value}/{self.maximum})")
                return None
            self.value += 1
        return SlotLease(self)

    def decrement(self) -> None:
        with self._lock:
            if self.value > 0:
                self.value -= 1


class ConcurrencyGovernor:
    """Process-wide limits on engine processes and simultaneously running searches.

    Each connection holds an engine lease for its lifetime and a search lease
    while its engine is searching.
    """

    def __init__(self, max_engines: int, max_active_searches: int) -> None:
        if max_engines < 0 or max_active_searches < 0:
            raise ValueError("Concurrency limits must not be negative")
        self._engines = _BoundedCounter("engine", max_engines)
        self._searches = _BoundedCounter("analysis", max_active_searches)

    def acquire_engine(self) -> SlotLease | None:
        return self._engines.try_increment()

    def acquire_search(self) -> SlotLease | None:
        return self._searches.try_increment()

    @property
    def connected_engines(self) -> int:
        return self._engines.value

    @property
    def active_searches(self) -> int:
        return self._searches.value

    def snapshot(self) -> dict[str, int]:
        return {
            "connectedEngines": self.connected_engines,
            "activeAnalysisCount": self.active_searches,
        }
