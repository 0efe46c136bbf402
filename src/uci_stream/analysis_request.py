import chess
import msgspec

from uci_stream.config import ServerConfig
from uci_stream.errors import InvalidRequest
from uci_stream.models import Perspective, SearchMode
from uci_stream.throttle import DEFAULT_DEPTH_STEP, DEFAULT_EVAL_DELTA, DEFAULT_MIN_INTERVAL_MS
from uci_stream.utils import clamp_number, to_finite

# Bounds and fallback for the search bound, per mode
DEPTH_MIN, DEPTH_FALLBACK = 1, 12
MOVETIME_MIN_MS, MOVETIME_FALLBACK_MS = 10, 500

HASH_MIN_MB = 16

Number = int | float | str | None


class StartRequest(msgspec.Struct, rename="camel"):
    """Payload of an ``analysis:start`` event as sent by the client.

    Numeric fields are kept loose here, they are checked and clamped by
    :func:`resolve_start_request`.
    """

    fen: str | None = None
    mode: str | None = None
    value: Number = None
    eval_view: str = "white"

    # engine tuning
    threads: Number = None
    hash_mb: Number = None
    multi_pv: Number = None

    group_pv: bool = False

    # smart updates
    smart_updates: bool = False
    min_interval_ms: Number = None
    eval_delta: Number = None
    depth_step: Number = None


class EngineOptions(msgspec.Struct, rename="camel"):
    threads: int
    hash_mb: int
    multi_pv: int


class UpdateOptions(msgspec.Struct, rename="camel"):
    group_pv: bool
    smart_updates: bool
    min_interval_ms: float
    eval_delta: float
    depth_step: int


class Clamped(msgspec.Struct, rename="camel"):
    value_was_clamped: bool
    threads_was_clamped: bool
    hash_was_clamped: bool
    multi_pv_was_clamped: bool


class SessionConfig(msgspec.Struct):
    """A fully validated start request"""

    fen: str
    mode: SearchMode
    value: int
    eval_view: Perspective
    engine: EngineOptions
    options: UpdateOptions
    clamped: Clamped

    def started_payload(self) -> dict:
        return {
            "ok": True,
            "fen": self.fen,
            "mode": str(self.mode),
            "value": self.value,
            "evalView": str(self.eval_view),
            "engine": msgspec.to_builtins(self.engine),
            "options": msgspec.to_builtins(self.options),
            "clamped": msgspec.to_builtins(self.clamped),
        }


def decode_start_request(data: object) -> StartRequest:
    if data is None:
        data = {}
    try:
        return msgspec.convert(data, StartRequest)
    except msgspec.ValidationError as e:
        raise InvalidRequest(f"Invalid analysis request: {e}") from e


def _validate_fen(fen: str | None) -> str:
    if not fen or not isinstance(fen, str) or not fen.strip():
        raise InvalidRequest("Invalid FEN")
    fen = fen.strip()
    try:
        chess.Board(fen, chess960=True)
    except ValueError as e:
        raise InvalidRequest(f"Invalid FEN: {e}") from e
    return fen


def _clamp_int(value: Number, *, min_value: int, max_value: int, fallback: int) -> tuple[int, bool]:
    """Clamp to an integer range, reporting whether a supplied value had to change."""
    resolved = int(clamp_number(value, min_value=min_value, max_value=max_value, fallback=fallback))
    supplied = to_finite(value)
    return resolved, supplied is not None and supplied != resolved


def resolve_start_request(request: StartRequest, cfg: ServerConfig) -> SessionConfig:
    """Validate a start request and clamp every tunable into the server limits.

    Raises:
        InvalidRequest: if the position, the mode or the perspective is invalid
    """
    fen = _validate_fen(request.fen)

    try:
        mode = SearchMode(request.mode)
    except ValueError as e:
        raise InvalidRequest('Invalid mode. Use "depth" or "time".') from e

    try:
        eval_view = Perspective(request.eval_view)
    except ValueError as e:
        raise InvalidRequest('Invalid evalView. Use "white" or "turn".') from e

    if mode == SearchMode.DEPTH:
        value, value_clamped = _clamp_int(
            request.value,
            min_value=DEPTH_MIN,
            max_value=cfg.max_depth,
            fallback=min(DEPTH_FALLBACK, cfg.max_depth),
        )
    else:
        value, value_clamped = _clamp_int(
            request.value,
            min_value=MOVETIME_MIN_MS,
            max_value=cfg.max_movetime_ms,
            fallback=min(MOVETIME_FALLBACK_MS, cfg.max_movetime_ms),
        )

    threads, threads_clamped = _clamp_int(
        request.threads,
        min_value=1,
        max_value=cfg.max_threads,
        fallback=cfg.default_threads,
    )
    hash_mb, hash_clamped = _clamp_int(
        request.hash_mb,
        min_value=HASH_MIN_MB,
        max_value=cfg.max_hash_mb,
        fallback=cfg.default_hash_mb,
    )
    multi_pv, multi_pv_clamped = _clamp_int(
        request.multi_pv,
        min_value=1,
        max_value=cfg.max_multipv,
        fallback=cfg.default_multipv,
    )

    min_interval_ms = to_finite(request.min_interval_ms)
    eval_delta = to_finite(request.eval_delta)
    depth_step = to_finite(request.depth_step)

    return SessionConfig(
        fen=fen,
        mode=mode,
        value=value,
        eval_view=eval_view,
        engine=EngineOptions(threads=threads, hash_mb=hash_mb, multi_pv=multi_pv),
        options=UpdateOptions(
            group_pv=request.group_pv,
            smart_updates=request.smart_updates,
            min_interval_ms=(
                min_interval_ms
                if min_interval_ms is not None and min_interval_ms > 0
                else DEFAULT_MIN_INTERVAL_MS
            ),
            eval_delta=(
                eval_delta if eval_delta is not None and eval_delta >= 0 else DEFAULT_EVAL_DELTA
            ),
            depth_step=(
                int(depth_step) if depth_step is not None and depth_step >= 1 else DEFAULT_DEPTH_STEP
            ),
        ),
        clamped=Clamped(
            value_was_clamped=value_clamped,
            threads_was_clamped=threads_clamped,
            hash_was_clamped=hash_clamped,
            multi_pv_was_clamped=multi_pv_clamped,
        ),
    )
