"""Lifecycle of one UCI engine process.

The process writes on stdout and stderr; each stream has its own reader task
and both feed the same event queue. Only the order within one stream is
guaranteed. Commands are fire-and-forget, the only rendezvous is the
``isready``/``readyok`` pair.
"""

import asyncio
import contextlib
import logging
import math
import shlex
from collections import deque
from dataclasses import dataclass

import msgspec

from uci_stream.errors import EngineProcessError, EngineTimeout, InvalidRequest
from uci_stream.models import (
    BestMove,
    BestMoveEvent,
    EngineState,
    ErrorEvent,
    ExitEvent,
    InfoEvent,
    InfoRecord,
    Perspective,
    ReadyEvent,
    SearchMode,
)
from uci_stream.perspective import normalize_eval, side_to_move
from uci_stream.protocol import parse_bestmove_line, parse_id_name, parse_info_line

logger = logging.getLogger(__name__)

READY_TIMEOUT_S = 2.0
# Time given to the engine after "stop". The engine may still write lines of the
# stopped search afterwards, consumers drop them by search id.
STOP_GRACE_S = 0.15
# Long pv lines of deep searches exceed asyncio's default 64 KiB line limit
_STREAM_LIMIT = 1024 * 1024


@dataclass(frozen=True)
class _Search:
    """A ``go`` command that has not been answered with ``bestmove`` yet.

    Tickets are closed by ``bestmove`` lines, which engines write on stdout.
    Info lines written on stderr are therefore attributed relative to a line
    of the other stream: a late stderr line of a stopped search that is read
    after the next ``go`` is tagged with the new search's id and side to move.
    """

    search_id: int
    fen: str
    turn: str
    perspective: Perspective
    mode: SearchMode


def _is_positive(value: object) -> bool:
    return (
        isinstance(value, int | float)
        and not isinstance(value, bool)
        and math.isfinite(value)
        and value > 0
    )


class EngineProcess:
    """Owns one engine process and drives its handshake/search state machine.

    Results are never returned from the lifecycle methods. They arrive as engine
    events (info, bestmove, exit, ...) on ``events``, tagged with the id of the
    search they belong to. UCI answers every ``go`` with exactly one ``bestmove``,
    so open searches are closed first-in-first-out and info lines belong to the
    oldest open search.

    Callers must not run two lifecycle methods of the same instance concurrently.
    """

    def __init__(
        self,
        path: str,
        events: asyncio.Queue,
        *,
        threads: int = 1,
        hash_mb: int = 64,
        multi_pv: int = 1,
        ready_timeout: float = READY_TIMEOUT_S,
        stop_grace: float = STOP_GRACE_S,
    ) -> None:
        self.command = shlex.split(path)
        self.events = events

        self.threads = threads
        self.hash_mb = hash_mb
        self.multi_pv = multi_pv

        self.ready_timeout = ready_timeout
        self.stop_grace = stop_grace

        self.state = EngineState.UNINITIALIZED
        self.process: asyncio.subprocess.Process | None = None
        self.engine_name: str | None = None
        self.returncode: int | None = None

        self._ready = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._searches: deque[_Search] = deque()
        self._last_search_id = 0

    @property
    def is_analyzing(self) -> bool:
        return self.state == EngineState.ANALYZING

    @property
    def is_alive(self) -> bool:
        return (
            self.process is not None
            and self.process.returncode is None
            and self.state not in (EngineState.TERMINATING, EngineState.TERMINATED)
        )

    async def initialize(self) -> None:
        """Start the engine, apply the configured options and wait until it is ready."""
        if self.process is not None:
            return

        self.state = EngineState.SPAWNING
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT,
            )
        except (OSError, ValueError) as e:
            self.state = EngineState.TERMINATED
            raise EngineProcessError(f"Failed to start engine {self.command[0]!r}: {e}") from e

        logger.info(f"Started engine {self.command[0]!r} (pid={self.process.pid})")

        readers = [
            asyncio.create_task(self._read_lines(self.process.stdout, "stdout")),
            asyncio.create_task(self._read_lines(self.process.stderr, "stderr")),
        ]
        self._tasks = [*readers, asyncio.create_task(self._watch_exit(readers))]

        self.state = EngineState.AWAITING_HANDSHAKE
        self.send("uci")
        self._apply_options(threads=self.threads, hash_mb=self.hash_mb, multi_pv=self.multi_pv)
        await self._probe()

        logger.info(f"Engine ready: {self.engine_name or self.command[0]}")
        self.events.put_nowait(ReadyEvent())

    async def configure(
        self,
        *,
        threads: float | None = None,
        hash_mb: float | None = None,
        multi_pv: float | None = None,
    ) -> None:
        """Apply engine options. Values that are not positive finite numbers are ignored."""
        self._require_alive()

        if self.is_analyzing:
            await self.stop_search()

        self._apply_options(threads=threads, hash_mb=hash_mb, multi_pv=multi_pv)
        await self._probe()

    async def start_search(
        self,
        fen: str,
        mode: SearchMode | str,
        bound: float,
        perspective: Perspective | str = Perspective.WHITE,
    ) -> int:
        """Start a bounded search of ``fen`` and return its search id.

        Args:
            fen: Position to analyse
            mode: "depth" for a fixed ply bound, "time" for a fixed time in ms
            bound: The depth or the time in milliseconds
            perspective: Perspective reported scores are converted to

        Returns:
            Id carried by the info and bestmove events of this search
        """
        if not fen or not isinstance(fen, str):
            raise InvalidRequest("Invalid FEN")
        try:
            mode = SearchMode(mode)
        except ValueError as e:
            raise InvalidRequest('Invalid mode. Use "depth" or "time".') from e
        if not _is_positive(bound):
            raise InvalidRequest("Value must be positive number")
        try:
            perspective = Perspective(perspective)
        except ValueError as e:
            raise InvalidRequest('Invalid evalView. Use "white" or "turn".') from e

        self._require_alive()

        await self.stop_search()

        self.send("ucinewgame")
        await self._probe()

        self.send(f"position fen {fen}")

        self._last_search_id += 1
        search = _Search(
            search_id=self._last_search_id,
            fen=fen,
            turn=side_to_move(fen),
            perspective=perspective,
            mode=mode,
        )
        self._searches.append(search)

        if mode == SearchMode.DEPTH:
            self.send(f"go depth {int(bound)}")
        else:
            self.send(f"go movetime {int(bound)}")

        self.state = EngineState.ANALYZING
        return search.search_id

    async def stop_search(self) -> None:
        """Ask the engine to stop and give it a short grace period.

        This does not wait for ``bestmove``: lines of the stopped search may still
        arrive after it returns.
        """
        if self.state != EngineState.ANALYZING:
            return

        self.send("stop")
        self.state = EngineState.STOPPING_SEARCH
        await asyncio.sleep(self.stop_grace)
        if self.state == EngineState.STOPPING_SEARCH:
            self.state = EngineState.READY

    async def terminate(self) -> None:
        """Quit and kill the engine process. Safe to call more than once."""
        process = self.process
        if process is None:
            self.state = EngineState.TERMINATED
            return

        self.state = EngineState.TERMINATING
        with contextlib.suppress(OSError, RuntimeError):
            self.send("quit")

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        with contextlib.suppress(ProcessLookupError):
            process.kill()
        with contextlib.suppress(TimeoutError):
            self.returncode = await asyncio.wait_for(process.wait(), timeout=self.ready_timeout)

        self.process = None
        self._searches.clear()
        self.state = EngineState.TERMINATED
        logger.info(f"Engine terminated (returncode={self.returncode})")

    def send(self, command: str) -> None:
        """Write one command line to the engine, or drop it if stdin is not writable."""
        stdin = self.process.stdin if self.process is not None else None
        if stdin is None or stdin.is_closing():
            logger.debug(f"Dropping command, engine input is closed: {command}")
            return
        logger.debug(f">> {command.strip()}")
        stdin.write(f"{command.strip()}\n".encode())

    def _require_alive(self) -> None:
        if self.process is None:
            raise EngineProcessError("Engine not initialized")
        if not self.is_alive:
            raise EngineProcessError("Engine process is not running")

    def _apply_options(
        self,
        *,
        threads: float | None,
        hash_mb: float | None,
        multi_pv: float | None,
    ) -> None:
        if _is_positive(threads):
            self.threads = int(threads)  # type: ignore[arg-type]
            self.send(f"setoption name Threads value {self.threads}")
        if _is_positive(hash_mb):
            self.hash_mb = int(hash_mb)  # type: ignore[arg-type]
            self.send(f"setoption name Hash value {self.hash_mb}")
        if _is_positive(multi_pv):
            self.multi_pv = int(multi_pv)  # type: ignore[arg-type]
            self.send(f"setoption name MultiPV value {self.multi_pv}")

    async def _probe(self) -> None:
        """Send ``isready`` and wait for ``readyok``."""
        previous = self.state
        self.state = EngineState.AWAITING_HANDSHAKE
        self._ready.clear()
        self.send("isready")
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=self.ready_timeout)
        except TimeoutError as e:
            raise EngineTimeout("Timeout waiting for engine readyok") from e

        # a running search keeps running while the engine answers isready
        if previous in (EngineState.ANALYZING, EngineState.STOPPING_SEARCH):
            self.state = previous
        else:
            self.state = EngineState.READY

    async def _read_lines(self, stream: asyncio.StreamReader | None, name: str) -> None:
        if stream is None:
            return
        try:
            while True:
                try:
                    raw = await stream.readline()
                except ValueError:
                    logger.warning(f"Discarding oversized line on engine {name}")
                    continue
                if not raw:
                    break
                self._handle_line(raw.decode("utf-8", errors="replace"))
        except (ConnectionError, OSError) as e:
            logger.warning(f"Engine {name} reader failed: {e}")
            self.events.put_nowait(ErrorEvent(message=f"Engine {name} read error: {e}"))

    async def _watch_exit(self, readers: list[asyncio.Task]) -> None:
        assert self.process is not None
        # drain both streams first so the exit event comes after the last line
        await asyncio.gather(*readers, return_exceptions=True)
        self.returncode = await self.process.wait()
        if self.state in (EngineState.TERMINATING, EngineState.TERMINATED):
            return

        logger.warning(f"Engine exited (returncode={self.returncode})")
        self.state = EngineState.TERMINATED
        self._searches.clear()
        self.events.put_nowait(ExitEvent(returncode=self.returncode))

    def _handle_line(self, line: str) -> None:
        trimmed = line.strip()
        if not trimmed:
            return
        logger.debug(f"<< {trimmed}")

        if trimmed == "readyok":
            self._ready.set()
            return

        if (name := parse_id_name(trimmed)) is not None:
            self.engine_name = name
            return

        if (record := parse_info_line(trimmed)) is not None:
            self._emit_info(record)
            return

        if (best := parse_bestmove_line(trimmed)) is not None:
            self._finish_search(best)

    def _emit_info(self, record: InfoRecord) -> None:
        if not self._searches:
            logger.debug("Ignoring info line outside of a search")
            return

        search = self._searches[0]
        normalized = msgspec.structs.replace(
            record,
            eval_value=normalize_eval(
                record.eval_type,
                record.eval_value,
                search.turn,
                search.perspective,
            ),
        )
        self.events.put_nowait(
            InfoEvent(
                search_id=search.search_id,
                record=normalized,
                perspective=search.perspective,
                turn=search.turn,
            ),
        )

    def _finish_search(self, best: BestMove) -> None:
        if not self._searches:
            logger.debug("Ignoring bestmove without an open search")
            return

        search = self._searches.popleft()
        if not self._searches and self.state in (
            EngineState.ANALYZING,
            EngineState.STOPPING_SEARCH,
        ):
            self.state = EngineState.READY
        self.events.put_nowait(BestMoveEvent(search_id=search.search_id, best=best))
