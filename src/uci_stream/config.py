import functools
import os
import shlex
from pathlib import Path

import msgspec

# Environment variable for every configurable field
ENV_VARS = {
    "host": "HOST",
    "port": "PORT",
    "engine_path": "STOCKFISH_PATH",
    "default_threads": "ENGINE_THREADS",
    "default_hash_mb": "ENGINE_HASH_MB",
    "default_multipv": "ENGINE_MULTIPV",
    "max_threads": "MAX_ENGINE_THREADS",
    "max_hash_mb": "MAX_ENGINE_HASH_MB",
    "max_multipv": "MAX_ENGINE_MULTIPV",
    "max_depth": "MAX_DEPTH",
    "max_movetime_ms": "MAX_MOVETIME_MS",
    "max_engines": "MAX_ENGINES",
    "max_active_analysis": "MAX_ACTIVE_ANALYSIS",
}


class ServerConfig(msgspec.Struct, kw_only=True, forbid_unknown_fields=True):
    """Server wide settings

    Attributes:
        host: Interface to bind the HTTP server to
        port: Port of the HTTP server
        engine_path: Command used to start the UCI engine (may include arguments)
        default_threads: Threads used when a client does not ask for a value
        default_hash_mb: Hash size in MB used when a client does not ask for a value
        default_multipv: Number of result lines used when a client does not ask for a value
        max_threads: Upper bound for client requested threads
        max_hash_mb: Upper bound for client requested hash size
        max_multipv: Upper bound for client requested result lines
        max_depth: Upper bound for depth searches
        max_movetime_ms: Upper bound for fixed-time searches
        max_engines: How many engine processes (connections) may run at once
        max_active_analysis: How many searches may run at once across all connections
    """

    host: str = "0.0.0.0"
    port: int = 3000

    engine_path: str = "stockfish"

    default_threads: int = 1
    default_hash_mb: int = 64
    default_multipv: int = 1

    max_threads: int = 2
    max_hash_mb: int = 128
    max_multipv: int = 3

    max_depth: int = 30
    max_movetime_ms: int = 15000

    max_engines: int = 3
    max_active_analysis: int = 2

    def __post_init__(self) -> None:
        if not self.engine_path.strip():
            raise ValueError("engine_path must not be empty")
        try:
            shlex.split(self.engine_path)
        except ValueError as e:
            raise ValueError(f"engine_path is not a valid command line: {e}") from e
        for name in ("default_threads", "default_hash_mb", "default_multipv"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        for name in (
            "max_threads",
            "max_hash_mb",
            "max_multipv",
            "max_depth",
            "max_movetime_ms",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.max_engines < 0 or self.max_active_analysis < 0:
            raise ValueError("concurrency limits must not be negative")

    def defaults(self) -> dict[str, int]:
        return {
            "threads": self.default_threads,
            "hashMb": self.default_hash_mb,
            "multiPv": self.default_multipv,
        }

    def limits(self) -> dict[str, int]:
        return {
            "maxThreads": self.max_threads,
            "maxHashMb": self.max_hash_mb,
            "maxMultiPv": self.max_multipv,
            "maxDepth": self.max_depth,
            "maxMovetimeMs": self.max_movetime_ms,
        }


def _read_env(environ: dict[str, str]) -> dict[str, str]:
    return {field: environ[var] for field, var in ENV_VARS.items() if environ.get(var)}


def load_config(path: str | Path | None = None, environ: dict[str, str] | None = None) -> ServerConfig:
    """Build the server config from defaults, an optional TOML file and the environment.

    Environment variables take precedence over the file.
    """
    data: dict[str, object] = {}
    if path is not None:
        with open(path, "rb") as f:
            data.update(msgspec.toml.decode(f.read()))

    data.update(_read_env(dict(os.environ) if environ is None else environ))

    try:
        return msgspec.convert(data, ServerConfig, strict=False)
    except msgspec.ValidationError as e:
        raise ValueError(f"Invalid server configuration: {e}") from e


@functools.cache
def get_config() -> ServerConfig:
    """Config of this process, read once from the environment"""
    return load_config()
