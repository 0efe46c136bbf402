from enum import StrEnum

import msgspec


class SearchMode(StrEnum):
    DEPTH = "depth"
    TIME = "time"


class Perspective(StrEnum):
    """Which side a reported score favours.

    WHITE: positive always means White is better
    TURN: positive means the side to move is better (raw engine output)
    """

    WHITE = "white"
    TURN = "turn"


class EngineState(StrEnum):
    UNINITIALIZED = "uninitialized"
    SPAWNING = "spawning"
    AWAITING_HANDSHAKE = "awaiting_handshake"
    READY = "ready"
    ANALYZING = "analyzing"
    STOPPING_SEARCH = "stopping_search"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


class InfoRecord(
    msgspec.Struct,
    rename={
        "sel_depth": "selDepth",
        "multi_pv": "multiPv",
        "eval_type": "evalType",
        "eval_value": "eval",
        "time_ms": "timeMs",
        "hash_full": "hashFull",
    },
):
    """One informative ``info`` line of a running search"""

    depth: int | None = None
    sel_depth: int | None = None
    multi_pv: int = 1  # result line index, starting at 1

    eval_type: str | None = None  # "cp" or "mate"
    eval_value: int | None = None

    pv: list[str] = msgspec.field(default_factory=list)

    time_ms: int | None = None
    nodes: int | None = None
    nps: int | None = None
    hash_full: int | None = None  # permille


class BestMove(msgspec.Struct):
    move: str | None
    ponder: str | None = None


# Engine events, produced by both output readers of an engine process and
# consumed in order by the owning session.


class ReadyEvent(msgspec.Struct, tag=True):
    pass


class InfoEvent(msgspec.Struct, tag=True):
    search_id: int
    record: InfoRecord
    perspective: Perspective
    turn: str


class BestMoveEvent(msgspec.Struct, tag=True):
    search_id: int
    best: BestMove


class ErrorEvent(msgspec.Struct, tag=True):
    message: str


class ExitEvent(msgspec.Struct, tag=True):
    returncode: int | None


EngineEvent = ReadyEvent | InfoEvent | BestMoveEvent | ErrorEvent | ExitEvent


def info_payload(event: InfoEvent) -> dict:
    """Wire representation of an info event: the record plus its perspective and side to move."""
    payload = msgspec.to_builtins(event.record)
    payload["evalView"] = str(event.perspective)
    payload["turn"] = event.turn
    return payload
