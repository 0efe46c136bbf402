"""Per-connection analysis session.

Client requests and engine events are put on one queue and handled strictly
one at a time by :meth:`AnalysisSession.run`, so no locking is needed inside a
session. The only state shared between sessions lives in the governor.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import msgspec

from uci_stream.analysis_request import SessionConfig, decode_start_request, resolve_start_request
from uci_stream.config import ServerConfig
from uci_stream.engine import EngineProcess
from uci_stream.errors import EngineProcessError, InvalidRequest, ServerBusy, StreamError
from uci_stream.governor import ConcurrencyGovernor, SlotLease
from uci_stream.grouping import GroupedResults
from uci_stream.models import (
    BestMoveEvent,
    ErrorEvent,
    ExitEvent,
    InfoEvent,
    ReadyEvent,
    info_payload,
)
from uci_stream.throttle import UpdateThrottler
from uci_stream.utils import now_ms

logger = logging.getLogger(__name__)

Emit = Callable[[str, dict], Awaitable[None]]


class ClientMessage(msgspec.Struct):
    """An inbound ``{"event": ..., "data": ...}`` frame"""

    event: str
    data: Any = None


class InvalidFrame(msgspec.Struct):
    """An inbound frame that could not be decoded"""

    reason: str


class Disconnect(msgspec.Struct):
    pass


class AnalysisSession:
    """Connects one client to one engine process.

    Args:
        cfg: Server configuration (defaults and limits)
        governor: Process wide concurrency limits
        emit: Coroutine delivering an event to the client
        engine_lease: Engine slot reserved for this connection, released on close
        clock: Millisecond clock used for throttling
    """

    def __init__(
        self,
        *,
        cfg: ServerConfig,
        governor: ConcurrencyGovernor,
        emit: Emit,
        engine_lease: SlotLease | None = None,
        clock: Callable[[], float] = now_ms,
    ) -> None:
        self.cfg = cfg
        self.governor = governor
        self._emit = emit
        self._engine_lease = engine_lease

        self.queue: asyncio.Queue = asyncio.Queue()
        self.engine = EngineProcess(
            cfg.engine_path,
            self.queue,
            threads=cfg.default_threads,
            hash_mb=cfg.default_hash_mb,
            multi_pv=cfg.default_multipv,
        )

        self.config: SessionConfig | None = None
        self.throttler = UpdateThrottler(clock=clock)
        self.grouped = GroupedResults()

        self._search_lease: SlotLease | None = None
        self._search_id: int | None = None
        self._closed = False

    @property
    def search_id(self) -> int | None:
        """Id of the search whose results are currently forwarded"""
        return self._search_id

    def submit(self, event: str, data: Any = None) -> None:
        self.queue.put_nowait(ClientMessage(event=event, data=data))

    def reject(self, reason: str) -> None:
        self.queue.put_nowait(InvalidFrame(reason=reason))

    def disconnect(self) -> None:
        self.queue.put_nowait(Disconnect())

    async def run(self) -> None:
        """Start the engine and handle queued messages until the client disconnects."""
        try:
            await self.open()
            while True:
                item = await self.queue.get()
                if isinstance(item, Disconnect):
                    break
                try:
                    await self.handle(item)
                except StreamError as e:
                    await self._emit_error(e)
                except Exception:
                    logger.exception(f"Failed to handle {type(item).__name__}")
                    await self._emit_error(EngineProcessError("Internal session error"))
        finally:
            await self.close()

    async def open(self) -> None:
        """Start the engine; ``engine:ready`` is sent once it has acknowledged the handshake."""
        try:
            await self.engine.initialize()
        except StreamError as e:
            logger.error(f"Failed to initialize engine: {e.message}")
            await self._emit("engine:ready", {"ok": False, "message": e.message, "kind": e.kind})

    async def close(self) -> None:
        """Release every slot held by this session and terminate its engine. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._finish_search()
        await self.engine.terminate()
        if self._engine_lease is not None:
            self._engine_lease.release()

    async def handle(self, item: object) -> None:
        if isinstance(item, ClientMessage):
            if item.event == "analysis:start":
                await self.start_analysis(item.data)
            elif item.event == "analysis:stop":
                await self.stop_analysis()
            else:
                raise InvalidRequest(f"Unknown event: {item.event}")
        elif isinstance(item, InvalidFrame):
            raise InvalidRequest(f"Malformed message: {item.reason}")
        elif isinstance(item, InfoEvent):
            await self._on_info(item)
        elif isinstance(item, BestMoveEvent):
            await self._on_best_move(item)
        elif isinstance(item, ReadyEvent):
            await self._on_ready()
        elif isinstance(item, ErrorEvent):
            await self._on_engine_error(item.message)
        elif isinstance(item, ExitEvent):
            await self._on_exit(item.returncode)
        else:
            logger.warning(f"Ignoring unexpected session item: {item!r}")

    async def start_analysis(self, data: Any) -> None:
        request = decode_start_request(data)
        config = resolve_start_request(request, self.cfg)

        if not self.engine.is_alive:
            raise EngineProcessError("Engine is not running, reconnect to start a new engine")

        # a search superseded by this request hands its slot over
        lease = self._search_lease
        if lease is None or lease.released:
            lease = self.governor.acquire_search()
        if lease is None:
            raise ServerBusy("Server busy (analysis limit reached). Try again later.")

        self._search_lease = lease
        self._search_id = None
        self.config = config

        options = config.options
        self.throttler.reset(
            min_interval_ms=options.min_interval_ms,
            eval_delta=options.eval_delta,
            depth_step=options.depth_step,
        )
        self.grouped.reset(config.fen)

        try:
            await self.engine.configure(
                threads=config.engine.threads,
                hash_mb=config.engine.hash_mb,
                multi_pv=config.engine.multi_pv,
            )
            self._search_id = await self.engine.start_search(
                config.fen,
                config.mode,
                config.value,
                config.eval_view,
            )
        except StreamError:
            self._finish_search()
            raise

        logger.info(f"Analysis started: {config.mode}={config.value} fen={config.fen}")
        await self._emit("analysis:started", config.started_payload())

    async def stop_analysis(self) -> None:
        await self.engine.stop_search()
        self._finish_search()
        await self._emit("analysis:stopped", {"ok": True})

    def _finish_search(self) -> None:
        """Forget the current search and give its slot back (once)."""
        self._search_id = None
        if self._search_lease is not None:
            self._search_lease.release()
            self._search_lease = None

    async def _on_ready(self) -> None:
        await self._emit(
            "engine:ready",
            {
                "ok": True,
                "engine": self.engine.engine_name,
                "defaults": self.cfg.defaults(),
                "limits": self.cfg.limits(),
            },
        )

    async def _on_info(self, event: InfoEvent) -> None:
        config = self.config
        if config is None or event.search_id != self._search_id:
            return

        if config.options.smart_updates and not self.throttler.should_emit(event.record, config.mode):
            return

        if config.options.group_pv:
            await self._emit("analysis:updateGrouped", self.grouped.accept(event))
        else:
            await self._emit("analysis:update", info_payload(event))

    async def _on_best_move(self, event: BestMoveEvent) -> None:
        config = self.config
        if config is None or event.search_id != self._search_id:
            logger.debug(f"Dropping bestmove of superseded search {event.search_id}")
            return

        grouped = self.grouped.snapshot() if config.options.group_pv else None
        self._finish_search()
        logger.info(f"Analysis done: bestmove {event.best.move}")
        await self._emit(
            "analysis:done",
            {"bestMove": event.best.move, "ponder": event.best.ponder, "grouped": grouped},
        )

    async def _on_engine_error(self, message: str) -> None:
        logger.error(f"Engine error: {message}")
        self._finish_search()
        await self._emit_error(EngineProcessError(message))

    async def _on_exit(self, returncode: int | None) -> None:
        logger.info(f"Engine exited (code={returncode})")
        self._finish_search()
        await self._emit_error(EngineProcessError(f"Engine process exited (code={returncode})"))

    async def _emit_error(self, error: StreamError) -> None:
        await self._emit("analysis:error", error.to_payload())
