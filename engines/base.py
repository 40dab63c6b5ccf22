"""Shared run driver for AGUI-emitting engines"""
import asyncio
import inspect
import logging
import time
import uuid
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from core.events import Event, RunErrorEvent, is_terminal
from core.telemetry import telemetry
from engines.adapter import AGUIAdapter
from engines.protocol import (
    EngineCapabilities,
    EngineConfig,
    EngineError,
    EventCallback,
    ModelInfo,
    SendResult,
    SessionNotFoundError,
)

logger = logging.getLogger(__name__)

_DONE = object()

Emit = Callable[[List[Event]], None]


class ActiveRun:
    """Bookkeeping for one in-flight run"""

    def __init__(self, session_id: str, adapter: AGUIAdapter, config: EngineConfig):
        self.session_id = session_id
        self.adapter = adapter
        self.config = config
        self.task: Optional[asyncio.Task] = None
        self.handle: Any = None  # backend resource (process, SDK session)
        self.interrupted = False
        self.result: Any = None
        self.started_at = time.monotonic()


class BaseEngine:
    """Common lifecycle for engines.

    Subclasses implement ``_create_adapter``, ``_execute`` and ``_abort``.
    ``_execute`` runs in its own task under the run timeout and reports
    progress through ``emit``; this class guarantees the event stream opens
    with RUN_STARTED and ends with exactly one RUN_FINISHED or RUN_ERROR,
    with all open blocks closed before the terminal event.
    """

    engine_type = "base"
    error_code = "ENGINE_ERROR"
    capabilities = EngineCapabilities()
    default_timeout: float = 600.0

    def __init__(self):
        self.active_runs: Dict[str, ActiveRun] = {}

    # Subclass hooks

    def _create_adapter(self, session_id: str) -> AGUIAdapter:
        raise NotImplementedError

    async def _execute(self, message: str, config: EngineConfig, run: ActiveRun, emit: Emit) -> None:
        raise NotImplementedError

    async def _abort(self, run: ActiveRun) -> None:
        """Release the backend resource of a run (kill process, disconnect)"""

    def _new_session_id(self) -> str:
        return str(uuid.uuid4())

    async def get_supported_models(self) -> List[ModelInfo]:
        raise NotImplementedError

    # Public API

    async def stream_message(self, message: str, config: EngineConfig) -> AsyncIterator[Event]:
        session_id = config.session_id or self._new_session_id()
        adapter = self._create_adapter(session_id)
        run = ActiveRun(session_id, adapter, config)
        self.active_runs[session_id] = run

        queue: asyncio.Queue = asyncio.Queue()
        # The task exists before RUN_STARTED is delivered so an interrupt
        # issued from the consumer's first callback can cancel it
        run.task = asyncio.create_task(self._drive(message, config, run, queue))
        run.task.add_done_callback(lambda task: self._on_drive_done(task, run, queue))
        try:
            yield adapter.run_started({"message": message, "engine": self.engine_type, "model": config.model})
            while True:
                event = await queue.get()
                if event is _DONE:
                    break
                yield event
        finally:
            if not run.task.done():
                logger.info(f"Consumer left run {run.session_id} early, aborting")
                run.interrupted = True
                await self._abort(run)
                run.task.cancel()
                await asyncio.gather(run.task, return_exceptions=True)
            self._release(run)

    async def send_message(
        self,
        message: str,
        config: EngineConfig,
        on_event: Optional[EventCallback] = None
    ) -> SendResult:
        """Run one turn, delivering every event to ``on_event`` in order"""
        session_id = config.session_id or ""
        status = "finished"
        error = None

        async for event in self.stream_message(message, config):
            if event.type == "RUN_STARTED" or is_terminal(event):
                session_id = event.thread_id
            if isinstance(event, RunErrorEvent):
                status = "error"
                error = event.error

            if on_event is not None:
                result = on_event(event)
                if inspect.isawaitable(result):
                    await result

        return SendResult(session_id=session_id, status=status, error=error)

    async def interrupt_session(self, session_id: str) -> None:
        run = self.active_runs.get(session_id)
        if run is None:
            raise SessionNotFoundError(session_id)

        logger.info(f"Interrupting {self.engine_type} session {session_id}")
        run.interrupted = True
        await self._abort(run)
        if run.task and not run.task.done():
            run.task.cancel()

    async def cleanup_stale_sessions(self, max_age: float) -> int:
        """Interrupt runs older than ``max_age`` seconds"""
        now = time.monotonic()
        stale = [sid for sid, run in self.active_runs.items() if now - run.started_at > max_age]
        for session_id in stale:
            logger.warning(f"Cleaning up stale {self.engine_type} session {session_id}")
            await self.interrupt_session(session_id)
        return len(stale)

    def get_active_session_count(self) -> int:
        return len(self.active_runs)

    def get_active_sessions(self) -> List[str]:
        return list(self.active_runs)

    async def close(self) -> None:
        for session_id in list(self.active_runs):
            await self.interrupt_session(session_id)

    # Internals

    async def _drive(self, message: str, config: EngineConfig, run: ActiveRun, queue: asyncio.Queue) -> None:
        adapter = run.adapter

        def emit(events: List[Event]) -> None:
            for event in events:
                queue.put_nowait(event)
            if adapter.thread_id != run.session_id:
                self._rebind(run, adapter.thread_id)

        timeout = config.timeout or self.default_timeout
        terminal: Event

        try:
            async with telemetry.trace_task("engine.run", engine=self.engine_type, session_id=run.session_id):
                await asyncio.wait_for(self._execute(message, config, run, emit), timeout=timeout)
            terminal = adapter.run_finished(run.result)

        except asyncio.TimeoutError:
            logger.warning(f"{self.engine_type} run {run.session_id} timed out after {timeout}s")
            await self._abort(run)
            terminal = adapter.run_error(f"Run timed out after {timeout}s", "TIMEOUT")

        except asyncio.CancelledError:
            terminal = adapter.run_error("Run interrupted", "INTERRUPTED")

        except EngineError as e:
            code = "INTERRUPTED" if run.interrupted else e.code
            terminal = adapter.run_error(str(e), code)

        except Exception as e:
            logger.error(f"Error in {self.engine_type} run {run.session_id}: {e}", exc_info=True)
            code = "INTERRUPTED" if run.interrupted else self.error_code
            terminal = adapter.run_error(str(e) or type(e).__name__, code)

        for event in adapter.finalize():
            queue.put_nowait(event)
        queue.put_nowait(terminal)
        queue.put_nowait(_DONE)

    def _on_drive_done(self, task: asyncio.Task, run: ActiveRun, queue: asyncio.Queue) -> None:
        # Cancelled before the driver could report; terminate the stream here
        if not task.cancelled():
            return
        for event in run.adapter.finalize():
            queue.put_nowait(event)
        queue.put_nowait(run.adapter.run_error("Run interrupted", "INTERRUPTED"))
        queue.put_nowait(_DONE)

    def _rebind(self, run: ActiveRun, session_id: str) -> None:
        """Re-key an active run under the backend's authoritative session id"""
        if self.active_runs.get(run.session_id) is run:
            del self.active_runs[run.session_id]
        logger.info(f"Session {run.session_id} rebound to {session_id}")
        run.session_id = session_id
        self.active_runs[session_id] = run

    def _release(self, run: ActiveRun) -> None:
        if self.active_runs.get(run.session_id) is run:
            del self.active_runs[run.session_id]
