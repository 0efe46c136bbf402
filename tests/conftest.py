import asyncio
import shlex
import sys
from pathlib import Path

import pytest

from uci_stream.config import ServerConfig

FAKE_ENGINE = Path(__file__).parent / "fake_engine.py"

START_FEN = "rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR w KQkq - 0 1"
BLACK_TO_MOVE_FEN = "rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR b KQkq - 0 1"


def fake_engine_command(*flags: str) -> str:
    return " ".join(shlex.quote(part) for part in (sys.executable, str(FAKE_ENGINE), *flags))


@pytest.fixture
def make_config():
    def _make(*flags: str, **overrides) -> ServerConfig:
        return ServerConfig(engine_path=fake_engine_command(*flags), **overrides)

    return _make


class RecordingEmitter:
    """Collects the events a session sends to its client."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []
        self._changed = asyncio.Event()

    async def __call__(self, event: str, data: dict) -> None:
        self.events.append((event, data))
        self._changed.set()

    def named(self, name: str) -> list[dict]:
        return [data for event, data in self.events if event == name]

    async def wait_for(self, name: str, count: int = 1, timeout: float = 5.0) -> list[dict]:
        async def _wait() -> list[dict]:
            while len(self.named(name)) < count:
                self._changed.clear()
                await self._changed.wait()
            return self.named(name)

        return await asyncio.wait_for(_wait(), timeout=timeout)


@pytest.fixture
def emitter() -> RecordingEmitter:
    return RecordingEmitter()
