from collections.abc import Callable
from dataclasses import dataclass, field

from uci_stream.models import InfoRecord, SearchMode
from uci_stream.utils import now_ms

DEFAULT_MIN_INTERVAL_MS = 120
DEFAULT_EVAL_DELTA = 0.15
DEFAULT_DEPTH_STEP = 1


def dynamic_interval_ms(mode: SearchMode, depth: int | None) -> int:
    """Minimum time between two updates for the current search progress.

    Deeper iterations take longer and change less, so they are forwarded less often.
    Fixed-time searches use a flat rate.
    """
    if mode == SearchMode.DEPTH:
        depth = depth or 0
        if depth <= 6:
            return 80
        if depth <= 12:
            return 140
        if depth <= 18:
            return 220
        return 350

    return 180


def is_pv_changed(prev_pv: list[str] | None, next_pv: list[str] | None) -> bool:
    """Element-wise comparison of two principal variations."""
    return list(prev_pv or []) != list(next_pv or [])


@dataclass
class UpdateThrottler:
    """Decides which info records of a search are worth forwarding.

    A record is forwarded only when enough time passed since the last forwarded
    record of the session (on any result line) and it differs meaningfully from
    the last record forwarded for its own result line.

    Attributes:
        min_interval_ms: Lower bound for the interval between two updates
        eval_delta: Minimum score change that counts as significant
        depth_step: Minimum depth increase that counts as significant
        clock: Millisecond clock, injectable for tests
    """

    min_interval_ms: float = DEFAULT_MIN_INTERVAL_MS
    eval_delta: float = DEFAULT_EVAL_DELTA
    depth_step: int = DEFAULT_DEPTH_STEP
    clock: Callable[[], float] = now_ms

    last_emit_at: float | None = field(default=None, init=False)
    last_sent: dict[int, InfoRecord] = field(default_factory=dict, init=False)

    def reset(
        self,
        *,
        min_interval_ms: float | None = None,
        eval_delta: float | None = None,
        depth_step: int | None = None,
    ) -> None:
        """Forget everything about the previous search and optionally retune."""
        if min_interval_ms is not None:
            self.min_interval_ms = min_interval_ms
        if eval_delta is not None:
            self.eval_delta = eval_delta
        if depth_step is not None:
            self.depth_step = depth_step
        self.last_emit_at = None
        self.last_sent.clear()

    def is_significant(self, record: InfoRecord) -> bool:
        prev = self.last_sent.get(record.multi_pv)
        if prev is None:
            return True

        if (
            prev.depth is not None
            and record.depth is not None
            and record.depth >= prev.depth + self.depth_step
        ):
            return True

        if (
            prev.eval_value is not None
            and record.eval_value is not None
            and abs(record.eval_value - prev.eval_value) >= self.eval_delta
        ):
            return True

        return is_pv_changed(prev.pv, record.pv)

    def should_emit(self, record: InfoRecord, mode: SearchMode) -> bool:
        """Return whether to forward the record, remembering it if so."""
        interval = max(self.min_interval_ms, dynamic_interval_ms(mode, record.depth))
        now = self.clock()

        time_ok = self.last_emit_at is None or now - self.last_emit_at >= interval
        if not time_ok or not self.is_significant(record):
            return False

        self.last_emit_at = now
        self.last_sent[record.multi_pv] = record
        return True
