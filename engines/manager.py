"""Engine registry and selection"""
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from core.events import Event
from core.settings import AppSettings
from engines.claude_engine import ClaudeEngine
from engines.cursor_engine import CursorEngine
from engines.protocol import (
    AgentEngine,
    EngineConfig,
    EngineNotFoundError,
    EventCallback,
    ModelInfo,
    SendResult,
    dump_capabilities,
)

logger = logging.getLogger(__name__)


class EngineManager:
    """Routes requests to registered engines by type.

    Registering a second engine under an existing type replaces the first
    (last registration wins).
    """

    def __init__(self):
        self.engines: Dict[str, AgentEngine] = {}
        self.default_engine_type: Optional[str] = None

    def register_engine(self, engine: AgentEngine) -> None:
        if engine.engine_type in self.engines:
            logger.warning(f"Replacing registered engine: {engine.engine_type}")
        self.engines[engine.engine_type] = engine
        if self.default_engine_type is None:
            self.default_engine_type = engine.engine_type
        logger.info(f"Registered engine: {engine.engine_type}")

    def set_default_engine_type(self, engine_type: str) -> None:
        if engine_type not in self.engines:
            raise EngineNotFoundError(engine_type)
        self.default_engine_type = engine_type
        logger.info(f"Default engine set to {engine_type}")

    def get_default_engine_type(self) -> Optional[str]:
        return self.default_engine_type

    def get_registered_engines(self) -> List[str]:
        return list(self.engines)

    def get_engine(self, engine_type: Optional[str] = None) -> AgentEngine:
        """Look up an engine; None means the default engine"""
        resolved = engine_type or self.default_engine_type
        engine = self.engines.get(resolved) if resolved else None
        if engine is None:
            raise EngineNotFoundError(resolved or "<default>")
        return engine

    async def send_message(
        self,
        engine_type: Optional[str],
        message: str,
        config: EngineConfig,
        on_event: Optional[EventCallback] = None
    ) -> SendResult:
        # Resolved before the run starts so an unknown type emits nothing
        engine = self.get_engine(engine_type)
        return await engine.send_message(message, config, on_event)

    def stream_message(
        self,
        engine_type: Optional[str],
        message: str,
        config: EngineConfig
    ) -> AsyncIterator[Event]:
        engine = self.get_engine(engine_type)
        return engine.stream_message(message, config)

    async def interrupt_session(self, engine_type: Optional[str], session_id: str) -> None:
        await self.get_engine(engine_type).interrupt_session(session_id)

    async def get_supported_models(self, engine_type: Optional[str] = None) -> List[ModelInfo]:
        return await self.get_engine(engine_type).get_supported_models()

    async def cleanup_stale_sessions(self, max_age: float) -> int:
        removed = 0
        for engine in self.engines.values():
            cleanup = getattr(engine, "cleanup_stale_sessions", None)
            if cleanup is not None:
                removed += await cleanup(max_age)
        return removed

    def get_status(self) -> Dict[str, Any]:
        """Read-only snapshot of registered engines"""
        engines = []
        for engine_type, engine in self.engines.items():
            engines.append({
                "type": engine_type,
                "isDefault": engine_type == self.default_engine_type,
                "activeSessions": engine.get_active_session_count(),
                "capabilities": dump_capabilities(engine.capabilities),
            })
        return {
            "defaultEngine": self.default_engine_type,
            "engines": engines,
            "totalActiveSessions": sum(e["activeSessions"] for e in engines),
        }

    async def close(self) -> None:
        for engine in self.engines.values():
            await engine.close()


def initialize_engines(settings: AppSettings, manager: Optional[EngineManager] = None) -> EngineManager:
    """Register the Claude and Cursor engines and apply the configured default"""
    manager = manager or EngineManager()
    manager.register_engine(ClaudeEngine(settings.claude))
    manager.register_engine(CursorEngine(settings.cursor))

    try:
        manager.set_default_engine_type(settings.default_engine)
    except EngineNotFoundError:
        logger.warning(f"Unknown default engine '{settings.default_engine}', keeping claude")
        manager.set_default_engine_type("claude")
    return manager
