from uci_stream.models import Perspective


def side_to_move(fen: str | None) -> str:
    """Side to move ("w" or "b") from the second field of a FEN, defaulting to "w"."""
    if not fen:
        return "w"
    parts = fen.split()
    return "b" if len(parts) > 1 and parts[1] == "b" else "w"


def normalize_eval(
    eval_type: str | None,
    eval_value: int | None,
    turn: str,
    perspective: Perspective,
) -> int | None:
    """Convert an engine score to the requested perspective.

    The engine reports scores from the side to move, so for White's perspective
    the value is negated when Black is to move. Centipawn and mate scores are
    treated alike.

    Args:
        eval_type: "cp" or "mate" (the sign rule is the same for both)
        eval_value: The raw score as reported by the engine
        turn: Side to move, "w" or "b"
        perspective: The perspective the client asked for

    Returns:
        The score from the requested perspective, or the input unchanged if it is not a number
    """
    if eval_value is None or isinstance(eval_value, bool) or not isinstance(eval_value, int | float):
        return eval_value

    if perspective == Perspective.WHITE and turn == "b":
        return -eval_value

    return eval_value
