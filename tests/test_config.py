import pytest

from uci_stream.config import ServerConfig, load_config


def test_defaults():
    cfg = load_config(environ={})

    assert cfg == ServerConfig()
    assert cfg.port == 3000
    assert cfg.engine_path == "stockfish"
    assert cfg.defaults() == {"threads": 1, "hashMb": 64, "multiPv": 1}
    assert cfg.limits() == {
        "maxThreads": 2,
        "maxHashMb": 128,
        "maxMultiPv": 3,
        "maxDepth": 30,
        "maxMovetimeMs": 15000,
    }
    assert (cfg.max_engines, cfg.max_active_analysis) == (3, 2)


def test_environment_overrides():
    cfg = load_config(
        environ={
            "PORT": "8080",
            "STOCKFISH_PATH": "/usr/games/stockfish",
            "MAX_ENGINES": "10",
            "MAX_ACTIVE_ANALYSIS": "0",
            "MAX_DEPTH": "40",
            "UNRELATED": "ignored",
        }
    )
    assert cfg.port == 8080
    assert cfg.engine_path == "/usr/games/stockfish"
    assert cfg.max_engines == 10
    assert cfg.max_active_analysis == 0
    assert cfg.max_depth == 40


def test_empty_environment_values_are_ignored():
    assert load_config(environ={"PORT": ""}).port == 3000


def test_toml_file_with_environment_precedence(tmp_path):
    path = tmp_path / "server.toml"
    path.write_text('engine_path = "sf --nnue"\nport = 4000\nmax_multipv = 5\n')

    cfg = load_config(path, environ={"PORT": "5000"})

    assert cfg.engine_path == "sf --nnue"
    assert cfg.max_multipv == 5
    assert cfg.port == 5000


def test_unknown_file_keys_are_rejected(tmp_path):
    path = tmp_path / "server.toml"
    path.write_text("max_enignes = 4\n")

    with pytest.raises(ValueError, match="Invalid server configuration"):
        load_config(path, environ={})


@pytest.mark.parametrize(
    "environ",
    [
        {"PORT": "eighty"},
        {"MAX_DEPTH": "0"},
        {"ENGINE_THREADS": "-1"},
        {"MAX_ENGINES": "-1"},
        {"STOCKFISH_PATH": "   "},
        {"STOCKFISH_PATH": "stockfish \"--unterminated"},
    ],
)
def test_invalid_values_are_rejected(environ):
    with pytest.raises(ValueError):
        load_config(environ=environ)


def test_direct_construction_is_validated():
    with pytest.raises(ValueError):
        ServerConfig(max_hash_mb=0)


def test_engine_path_must_split_into_a_command_line():
    with pytest.raises(ValueError, match="engine_path is not a valid command line"):
        ServerConfig(engine_path="'/opt/engines/stock fish")

    assert ServerConfig(engine_path="'/opt/engines/stock fish' --nnue").engine_path.endswith("--nnue")
