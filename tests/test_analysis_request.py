import pytest

from uci_stream.analysis_request import decode_start_request, resolve_start_request
from uci_stream.config import ServerConfig
from uci_stream.errors import InvalidRequest
from uci_stream.models import Perspective, SearchMode

from conftest import START_FEN


@pytest.fixture
def cfg():
    return ServerConfig()


def resolve(cfg, **payload):
    payload.setdefault("fen", START_FEN)
    return resolve_start_request(decode_start_request(payload), cfg)


def test_depth_above_limit_is_clamped(cfg):
    session = resolve(cfg, mode="depth", value=999)
    assert session.mode == SearchMode.DEPTH
    assert session.value == 30
    assert session.clamped.value_was_clamped


def test_defaults_are_applied(cfg):
    session = resolve(cfg, mode="depth", value=10)

    assert session.value == 10
    assert session.eval_view == Perspective.WHITE
    assert (session.engine.threads, session.engine.hash_mb, session.engine.multi_pv) == (1, 64, 1)
    assert not session.options.group_pv
    assert not session.options.smart_updates
    assert session.options.min_interval_ms == 120
    assert session.options.eval_delta == 0.15
    assert session.options.depth_step == 1
    assert not any(
        (
            session.clamped.value_was_clamped,
            session.clamped.threads_was_clamped,
            session.clamped.hash_was_clamped,
            session.clamped.multi_pv_was_clamped,
        )
    )


@pytest.mark.parametrize(
    "mode, value, expected",
    [
        ("depth", None, 12),
        ("depth", "abc", 12),
        ("depth", 0, 1),
        ("depth", 7.9, 7),
        ("time", None, 500),
        ("time", 1, 10),
        ("time", 99_999, 15_000),
        ("time", "2500", 2500),
    ],
)
def test_search_bound(cfg, mode, value, expected):
    assert resolve(cfg, mode=mode, value=value).value == expected


def test_fallback_respects_low_limits():
    cfg = ServerConfig(max_depth=8, max_movetime_ms=200)
    assert resolve(cfg, mode="depth").value == 8
    assert resolve(cfg, mode="time").value == 200


def test_engine_options_are_clamped(cfg):
    session = resolve(cfg, mode="time", value=1000, threads=16, hashMb=1, multiPv=10)

    assert session.engine.threads == 2
    assert session.engine.hash_mb == 16
    assert session.engine.multi_pv == 3
    assert session.clamped.threads_was_clamped
    assert session.clamped.hash_was_clamped
    assert session.clamped.multi_pv_was_clamped
    assert not session.clamped.value_was_clamped


def test_string_numbers_are_accepted(cfg):
    session = resolve(cfg, mode="depth", value="15", threads="2", multiPv="2")
    assert session.value == 15
    assert session.engine.threads == 2
    assert session.engine.multi_pv == 2


@pytest.mark.parametrize("fen", [None, "", "   ", "not a fen", "rnbqkbnr/pppppppp/8/8 w KQkq - 0 1"])
def test_invalid_fen(cfg, fen):
    with pytest.raises(InvalidRequest, match="Invalid FEN"):
        resolve(cfg, fen=fen, mode="depth", value=10)


def test_fen_is_trimmed(cfg):
    assert resolve(cfg, fen=f"  {START_FEN}  ", mode="depth", value=10).fen == START_FEN


def test_chess960_castling_rights_are_accepted(cfg):
    fen = "bqnbrkrn/pppppppp/8/8/8/8/PPPPPPPP/BQNBRKRN w KQkq - 0 1"
    assert resolve(cfg, fen=fen, mode="depth", value=10).fen == fen


@pytest.mark.parametrize("mode", [None, "nodes", "DEPTH"])
def test_invalid_mode(cfg, mode):
    with pytest.raises(InvalidRequest, match="Invalid mode"):
        resolve(cfg, mode=mode, value=10)


def test_invalid_eval_view(cfg):
    with pytest.raises(InvalidRequest, match="Invalid evalView"):
        resolve(cfg, mode="depth", value=10, evalView="black")


def test_turn_perspective(cfg):
    assert resolve(cfg, mode="depth", value=10, evalView="turn").eval_view == Perspective.TURN


def test_smart_update_tuning(cfg):
    session = resolve(
        cfg,
        mode="depth",
        value=10,
        smartUpdates=True,
        groupPv=True,
        minIntervalMs=250,
        evalDelta=5,
        depthStep=2,
    )
    assert session.options.smart_updates
    assert session.options.group_pv
    assert session.options.min_interval_ms == 250
    assert session.options.eval_delta == 5
    assert session.options.depth_step == 2


@pytest.mark.parametrize(
    "tuning",
    [
        {"minIntervalMs": 0, "evalDelta": -1, "depthStep": 0},
        {"minIntervalMs": "soon", "evalDelta": None, "depthStep": "x"},
    ],
)
def test_bad_smart_update_tuning_falls_back(cfg, tuning):
    options = resolve(cfg, mode="depth", value=10, **tuning).options
    assert options.min_interval_ms == 120
    assert options.eval_delta == 0.15
    assert options.depth_step == 1


def test_wrongly_typed_payload_is_invalid_request(cfg):
    with pytest.raises(InvalidRequest):
        decode_start_request({"fen": START_FEN, "mode": "depth", "groupPv": [1]})
    with pytest.raises(InvalidRequest):
        decode_start_request("depth 10")


def test_started_payload_uses_wire_names(cfg):
    payload = resolve(cfg, mode="time", value=800, multiPv=2).started_payload()

    assert payload["ok"] is True
    assert payload["mode"] == "time"
    assert payload["value"] == 800
    assert payload["evalView"] == "white"
    assert payload["engine"] == {"threads": 1, "hashMb": 64, "multiPv": 2}
    assert payload["options"]["smartUpdates"] is False
    assert payload["clamped"] == {
        "valueWasClamped": False,
        "threadsWasClamped": False,
        "hashWasClamped": False,
        "multiPvWasClamped": False,
    }
