"""Parsing of the lines a UCI engine writes while it searches.

Example::

    info depth 20 seldepth 30 multipv 2 score cp -15 nodes 12345 nps 99999 time 123 pv e2e4 e7e5
"""

from uci_stream.models import BestMove, InfoRecord

# Keys followed by exactly one integer token, mapped to InfoRecord fields
_INT_KEYS = {
    "depth": "depth",
    "seldepth": "sel_depth",
    "time": "time_ms",
    "nodes": "nodes",
    "nps": "nps",
    "hashfull": "hash_full",
}

SCORE_TYPES = ("cp", "mate")


def _to_int(token: str | None) -> int | None:
    """Parse an integer token, returning None instead of raising."""
    if token is None:
        return None
    try:
        return int(token)
    except ValueError:
        return None


def parse_info_line(line: str) -> InfoRecord | None:
    """Parse an ``info`` line into an InfoRecord.

    Args:
        line: A raw line from the engine (surrounding whitespace is ignored)

    Returns:
        The parsed record, or None if the line is not an ``info`` line or carries
        neither a depth, a score nor a principal variation
    """
    if not line or not isinstance(line, str):
        return None

    trimmed = line.strip()
    if not trimmed.startswith("info "):
        return None

    tokens = trimmed.split()
    values: dict[str, object] = {}
    multi_pv = 1
    pv: list[str] = []

    i = 1
    while i < len(tokens):
        token = tokens[i]

        if token in _INT_KEYS:
            values[_INT_KEYS[token]] = _to_int(tokens[i + 1] if i + 1 < len(tokens) else None)
            i += 2
            continue

        if token == "multipv":
            index = _to_int(tokens[i + 1] if i + 1 < len(tokens) else None)
            multi_pv = index if index is not None and index > 0 else 1
            i += 2
            continue

        if token == "score":
            score_type = tokens[i + 1] if i + 1 < len(tokens) else None
            score_value = tokens[i + 2] if i + 2 < len(tokens) else None
            if score_type in SCORE_TYPES:
                values["eval_type"] = score_type
                values["eval_value"] = _to_int(score_value)
            # skip <type> <value>
            i += 3
            continue

        # pv runs to the end of the line, nothing after it is a key
        if token == "pv":
            pv = tokens[i + 1 :]
            break

        # free text for humans, also runs to the end of the line
        if token == "string":
            break

        i += 1

    if values.get("depth") is None and values.get("eval_value") is None and not pv:
        return None

    return InfoRecord(multi_pv=multi_pv, pv=pv, **values)  # type: ignore[arg-type]


def parse_bestmove_line(line: str) -> BestMove | None:
    """Parse ``bestmove <move> [ponder <move>]``, the line that ends a search."""
    if not line or not isinstance(line, str):
        return None

    tokens = line.split()
    if not tokens or tokens[0] != "bestmove":
        return None

    move = tokens[1] if len(tokens) > 1 else None
    ponder = None
    if len(tokens) > 3 and tokens[2] == "ponder":
        ponder = tokens[3]
    return BestMove(move=move, ponder=ponder)


def parse_id_name(line: str) -> str | None:
    """Return the engine name announced by an ``id name ...`` line."""
    prefix = "id name "
    trimmed = line.strip()
    if trimmed.startswith(prefix):
        return trimmed[len(prefix) :].strip() or None
    return None
